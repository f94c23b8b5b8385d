"""
Watch-history source.

The profiling engine only reads history through the `WatchHistory` protocol;
`WatchHistoryStore` is the SQLite implementation shipped with the package.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Protocol, Sequence

from .config import ALL_STATUSES, COMPLETED_STATUSES, MEDIA_TYPES, STATUS_REWATCHED, RATING_SCALE_MAX
from .database import get_db, now_iso, parse_timestamp_naive
from .metadata import CastMember, CrewMember

logger = logging.getLogger(__name__)


@dataclass
class WatchedItem:
    """One user/content interaction, enriched with metadata before profiling."""
    content_id: str
    media_type: str = "movie"
    status: str = "watched"
    user_rating: float | None = None
    fallback_rating: float | None = None
    watch_count: int = 1
    added_at: str | None = None
    updated_at: str | None = None

    genres: list[str] = field(default_factory=list)
    cast: list[CastMember] = field(default_factory=list)
    crew: list[CrewMember] = field(default_factory=list)

    @property
    def effective_rating(self) -> float | None:
        return self.user_rating if self.user_rating is not None else self.fallback_rating

    @property
    def has_metadata(self) -> bool:
        return bool(self.genres or self.cast or self.crew)


@dataclass(frozen=True)
class SharedRating:
    """A completed item both users have an effective rating for."""
    content_id: str
    rating_a: float
    rating_b: float
    rewatched_a: bool = False
    rewatched_b: bool = False


class WatchHistory(Protocol):
    def load_items(self, user_id: str, statuses: Sequence[str] | None = None) -> list[WatchedItem]: ...

    def status_counts(self, user_id: str) -> dict[str, int]: ...

    def shared_ratings(self, user_a: str, user_b: str) -> list[SharedRating]: ...

    def updated_since(self, user_id: str, since: datetime) -> bool: ...


def _validate_item(status: str, media_type: str, user_rating: float | None) -> None:
    if status not in ALL_STATUSES:
        raise ValueError(f"Unknown status '{status}', expected one of {ALL_STATUSES}")
    if media_type not in MEDIA_TYPES:
        raise ValueError(f"Unknown media type '{media_type}', expected one of {MEDIA_TYPES}")
    if user_rating is not None and not (0 < user_rating <= RATING_SCALE_MAX):
        raise ValueError(f"Rating {user_rating} outside (0, {RATING_SCALE_MAX}]")


class WatchHistoryStore:
    """SQLite-backed watch history (table `watch_items`)."""

    def record_item(
        self,
        user_id: str,
        content_id: str,
        status: str,
        media_type: str = "movie",
        user_rating: float | None = None,
        fallback_rating: float | None = None,
        watch_count: int = 1,
        added_at: str | None = None,
    ) -> None:
        """
        Insert or update one interaction.

        `added_at` is kept from the first insert so activity windows are not
        reset by later rating edits; `updated_at` always moves forward.
        """
        self.record_items([{
            'user_id': user_id,
            'content_id': content_id,
            'status': status,
            'media_type': media_type,
            'user_rating': user_rating,
            'fallback_rating': fallback_rating,
            'watch_count': watch_count,
            'added_at': added_at,
        }])

    def record_items(self, rows: Iterable[dict]) -> int:
        timestamp = now_iso()
        params = []
        for row in rows:
            media_type = row.get('media_type') or "movie"
            _validate_item(row['status'], media_type, row.get('user_rating'))
            params.append((
                str(row['user_id']), str(row['content_id']), media_type,
                row.get('user_rating'), row.get('fallback_rating'), row['status'],
                max(1, int(row.get('watch_count') or 1)),
                row.get('added_at') or timestamp, timestamp,
            ))

        if not params:
            return 0

        with get_db() as conn:
            conn.executemany("""
                INSERT INTO watch_items
                (user_id, content_id, media_type, user_rating, fallback_rating, status,
                 watch_count, added_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, content_id, media_type) DO UPDATE SET
                    user_rating = excluded.user_rating,
                    fallback_rating = excluded.fallback_rating,
                    status = excluded.status,
                    watch_count = excluded.watch_count,
                    updated_at = excluded.updated_at
            """, params)
        return len(params)

    def remove_item(self, user_id: str, content_id: str, media_type: str = "movie") -> bool:
        with get_db() as conn:
            cursor = conn.execute("""
                DELETE FROM watch_items
                WHERE user_id = ? AND content_id = ? AND media_type = ?
            """, (user_id, content_id, media_type))
            return cursor.rowcount > 0

    def load_items(self, user_id: str, statuses: Sequence[str] | None = None) -> list[WatchedItem]:
        statuses = tuple(statuses or ALL_STATUSES)
        placeholders = ','.join('?' * len(statuses))
        with get_db(read_only=True) as conn:
            rows = conn.execute(f"""
                SELECT content_id, media_type, status, user_rating, fallback_rating,
                       watch_count, added_at, updated_at
                FROM watch_items
                WHERE user_id = ? AND status IN ({placeholders})
                ORDER BY added_at, content_id
            """, (user_id, *statuses)).fetchall()

        return [WatchedItem(**dict(row)) for row in rows]

    def status_counts(self, user_id: str) -> dict[str, int]:
        counts = dict.fromkeys(ALL_STATUSES, 0)
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT status, COUNT(*) AS n
                FROM watch_items
                WHERE user_id = ?
                GROUP BY status
            """, (user_id,)).fetchall()
        for row in rows:
            counts[row['status']] = row['n']
        return counts

    def shared_ratings(self, user_a: str, user_b: str) -> list[SharedRating]:
        """Completed items both users have an effective rating for, ordered by content id."""
        placeholders = ','.join('?' * len(COMPLETED_STATUSES))
        with get_db(read_only=True) as conn:
            rows = conn.execute(f"""
                SELECT a.content_id,
                       COALESCE(a.user_rating, a.fallback_rating) AS rating_a,
                       COALESCE(b.user_rating, b.fallback_rating) AS rating_b,
                       a.status = ? AS rewatched_a,
                       b.status = ? AS rewatched_b
                FROM watch_items a
                JOIN watch_items b
                  ON a.content_id = b.content_id AND a.media_type = b.media_type
                WHERE a.user_id = ? AND b.user_id = ?
                  AND a.status IN ({placeholders}) AND b.status IN ({placeholders})
                  AND COALESCE(a.user_rating, a.fallback_rating) IS NOT NULL
                  AND COALESCE(b.user_rating, b.fallback_rating) IS NOT NULL
                ORDER BY a.content_id, a.media_type
            """, (STATUS_REWATCHED, STATUS_REWATCHED, user_a, user_b,
                  *COMPLETED_STATUSES, *COMPLETED_STATUSES)).fetchall()

        return [
            SharedRating(
                content_id=row['content_id'],
                rating_a=row['rating_a'],
                rating_b=row['rating_b'],
                rewatched_a=bool(row['rewatched_a']),
                rewatched_b=bool(row['rewatched_b']),
            )
            for row in rows
        ]

    def updated_since(self, user_id: str, since: datetime) -> bool:
        with get_db(read_only=True) as conn:
            row = conn.execute(
                "SELECT MAX(updated_at) AS last_update FROM watch_items WHERE user_id = ?",
                (user_id,)
            ).fetchone()
        if not row or not row['last_update']:
            return False
        return parse_timestamp_naive(row['last_update']) > since

    def users_with_content(self, keys: Iterable[tuple[str, str]]) -> list[str]:
        """Users holding any of the (content_id, media_type) pairs, whatever the status."""
        pairs = sorted({(str(content_id), media_type) for content_id, media_type in keys})
        users: set[str] = set()
        with get_db(read_only=True) as conn:
            for content_id, media_type in pairs:
                users.update(r['user_id'] for r in conn.execute(
                    "SELECT DISTINCT user_id FROM watch_items WHERE content_id = ? AND media_type = ?",
                    (content_id, media_type)
                ))
        return sorted(users)

    def user_ids(self) -> list[str]:
        with get_db(read_only=True) as conn:
            return [r['user_id'] for r in conn.execute(
                "SELECT DISTINCT user_id FROM watch_items ORDER BY user_id"
            )]
