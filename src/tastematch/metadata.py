"""
Content metadata lookups (genres and credits).

A lookup returns None when the content is unknown or the backing service
fails; profile building treats that as "no metadata" for the item.
"""
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from .config import (
    TMDB_BASE_URL,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
    MAX_CAST_CONSIDERED,
    DIRECTOR_JOB,
    MEDIA_TYPES,
    METADATA_CACHE_TTL_SECONDS,
    METADATA_NEGATIVE_TTL_SECONDS,
)
from .database import get_db, load_json, dump_json, now_iso
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CastMember:
    name: str
    id: int | str | None = None


@dataclass(frozen=True)
class CrewMember:
    name: str
    job: str
    id: int | str | None = None


@dataclass
class ContentMetadata:
    genres: list[str] = field(default_factory=list)
    cast: list[CastMember] = field(default_factory=list)
    crew: list[CrewMember] = field(default_factory=list)

    @property
    def directors(self) -> list[str]:
        return [c.name for c in self.crew if c.job == DIRECTOR_JOB]

    def to_dict(self) -> dict:
        return {
            'genres': list(self.genres),
            'cast': [{'id': c.id, 'name': c.name} for c in self.cast],
            'crew': [{'id': c.id, 'name': c.name, 'job': c.job} for c in self.crew],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ContentMetadata":
        return cls(
            genres=[str(g) for g in data.get('genres') or []],
            cast=[CastMember(name=c['name'], id=c.get('id')) for c in data.get('cast') or [] if c.get('name')],
            crew=[
                CrewMember(name=c['name'], job=c.get('job', ''), id=c.get('id'))
                for c in data.get('crew') or [] if c.get('name')
            ],
        )


class MetadataProvider(Protocol):
    def lookup(self, content_id: str, media_type: str) -> ContentMetadata | None: ...


class TMDBMetadataProvider:
    """Fetches genres and credits from the TMDB v3 API."""

    def __init__(
        self,
        api_key: str,
        client: httpx.Client | None = None,
        base_url: str = TMDB_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
    ):
        self.api_key = api_key
        self.client = client or httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self.client.close()

    @retry_with_backoff(
        max_retries=MAX_HTTP_RETRIES,
        initial_delay=0.5,
        exceptions=(httpx.TransportError, httpx.HTTPStatusError),
    )
    def _fetch(self, content_id: str, media_type: str) -> dict | None:
        response = self.client.get(
            f"/{media_type}/{content_id}",
            params={"api_key": self.api_key, "append_to_response": "credits"},
        )
        if response.status_code == 404:
            return None
        if 400 <= response.status_code < 500 and response.status_code != 429:
            # Not retryable (bad key, malformed id)
            logger.warning(f"TMDB rejected {media_type}/{content_id}: HTTP {response.status_code}")
            return None
        response.raise_for_status()
        return response.json()

    def lookup(self, content_id: str, media_type: str) -> ContentMetadata | None:
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"Unknown media type '{media_type}'")
        try:
            payload = self._fetch(content_id, media_type)
        except httpx.HTTPError as e:
            logger.warning(f"Metadata lookup failed for {media_type}/{content_id}: {e}")
            return None
        if payload is None:
            logger.debug(f"No TMDB entry for {media_type}/{content_id}")
            return None
        return self.parse_details(payload)

    @staticmethod
    def parse_details(payload: dict) -> ContentMetadata:
        credits = payload.get('credits') or {}
        cast = [
            CastMember(name=c['name'], id=c.get('id'))
            for c in (credits.get('cast') or [])[:MAX_CAST_CONSIDERED]
            if c.get('name')
        ]
        crew = [
            CrewMember(name=c['name'], job=c['job'], id=c.get('id'))
            for c in credits.get('crew') or []
            if c.get('name') and c.get('job') == DIRECTOR_JOB
        ]
        genres = [g['name'] for g in payload.get('genres') or [] if g.get('name')]
        return ContentMetadata(genres=genres, cast=cast, crew=crew)


class StoredMetadataProvider:
    """Metadata persisted in the `content_metadata` table."""

    def lookup(self, content_id: str, media_type: str) -> ContentMetadata | None:
        with get_db(read_only=True) as conn:
            row = conn.execute("""
                SELECT genres, cast_members, crew_members FROM content_metadata
                WHERE content_id = ? AND media_type = ?
            """, (str(content_id), media_type)).fetchone()
        if not row:
            return None
        return ContentMetadata.from_dict({
            'genres': load_json(row['genres']),
            'cast': load_json(row['cast_members']),
            'crew': load_json(row['crew_members']),
        })

    def store(self, content_id: str, media_type: str, metadata: ContentMetadata) -> None:
        self.store_many([(content_id, media_type, metadata)])

    def store_many(self, entries: list[tuple[str, str, ContentMetadata]]) -> int:
        timestamp = now_iso()
        rows = []
        for content_id, media_type, metadata in entries:
            data = metadata.to_dict()
            rows.append((
                str(content_id), media_type,
                dump_json(data['genres']), dump_json(data['cast']), dump_json(data['crew']),
                timestamp,
            ))
        with get_db() as conn:
            conn.executemany("""
                INSERT OR REPLACE INTO content_metadata
                (content_id, media_type, genres, cast_members, crew_members, fetched_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, rows)
        return len(rows)


class CachedMetadataProvider:
    """
    Read-through cache in front of another provider.

    Misses are cached too (for a shorter TTL) so an unknown id is not
    re-requested for every profile rebuild. Errors raised by the inner
    provider are not cached.
    """

    def __init__(
        self,
        inner: MetadataProvider,
        cache,
        ttl_seconds: int = METADATA_CACHE_TTL_SECONDS,
        negative_ttl_seconds: int = METADATA_NEGATIVE_TTL_SECONDS,
    ):
        self.inner = inner
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.negative_ttl_seconds = negative_ttl_seconds

    @staticmethod
    def _key(content_id: str, media_type: str) -> str:
        return f"metadata:{media_type}:{content_id}"

    def lookup(self, content_id: str, media_type: str) -> ContentMetadata | None:
        key = self._key(content_id, media_type)
        cached = self.cache.get(key)
        if cached is not None:
            if cached.get('missing'):
                return None
            return ContentMetadata.from_dict(cached)

        metadata = self.inner.lookup(content_id, media_type)
        if metadata is None:
            self.cache.set(key, {'missing': True}, self.negative_ttl_seconds)
        else:
            self.cache.set(key, metadata.to_dict(), self.ttl_seconds)
        return metadata

    def forget(self, content_id: str, media_type: str) -> None:
        self.cache.invalidate(self._key(content_id, media_type))


class ChainedMetadataProvider:
    """Tries each provider in order; the first non-None answer wins."""

    def __init__(self, *providers: MetadataProvider):
        self.providers = providers

    def lookup(self, content_id: str, media_type: str) -> ContentMetadata | None:
        for provider in self.providers:
            metadata = provider.lookup(content_id, media_type)
            if metadata is not None:
                return metadata
        return None
