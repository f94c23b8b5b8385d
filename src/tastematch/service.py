"""
Public operation surface: wires history, metadata, cache, profiles,
similarity storage, batch scheduling and background refresh together.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from .cache import Cache, TTLCache, make_cache
from .candidates import CandidateSelector
from .config import (
    REDIS_URL,
    TMDB_API_KEY,
    METADATA_CACHE_MAX_ENTRIES,
    BATCH_MAX_WORKERS,
    DEFAULT_BATCH_LIMIT,
    DEFAULT_SIMILAR_USERS_LIMIT,
    DEFAULT_MAX_AGE_HOURS,
    MIN_USER_HISTORY,
)
from .history import SharedRating, WatchHistory, WatchHistoryStore
from .metadata import (
    CachedMetadataProvider,
    ChainedMetadataProvider,
    MetadataProvider,
    StoredMetadataProvider,
    TMDBMetadataProvider,
)
from .profile import ProfileBuilder, TasteMap
from .profile_cache import ProfileCache
from .scheduler import BatchScheduler, BatchSummary
from .similarity import PersonComparison, SimilarityResult, compare_person_profiles, compare_taste_maps, is_similar
from .storage import SimilarityStore
from .worker import ProfileRefreshWorker

logger = logging.getLogger(__name__)


@dataclass
class SimilarUser:
    user_id: str
    result: SimilarityResult
    computed_at: str | None = None


@dataclass
class UserComparison:
    user_a: str
    user_b: str
    result: SimilarityResult
    persons: PersonComparison
    shared: list[SharedRating] = field(default_factory=list)


def default_metadata_provider(api_key: str = TMDB_API_KEY) -> MetadataProvider:
    """Local metadata table first, TMDB second when a key is configured, behind a bounded cache."""
    providers: list[MetadataProvider] = [StoredMetadataProvider()]
    if api_key:
        providers.append(TMDBMetadataProvider(api_key))
    return CachedMetadataProvider(ChainedMetadataProvider(*providers), TTLCache(max_entries=METADATA_CACHE_MAX_ENTRIES))


class TasteMatchService:
    def __init__(
        self,
        history: WatchHistory | None = None,
        metadata: MetadataProvider | None = None,
        cache: Cache | None = None,
        clock: Callable[[], datetime] = datetime.now,
        max_workers: int = BATCH_MAX_WORKERS,
    ):
        self.history = history if history is not None else WatchHistoryStore()
        self.metadata = metadata if metadata is not None else default_metadata_provider()
        self.cache = cache if cache is not None else make_cache(REDIS_URL)

        self.builder = ProfileBuilder(self.history, self.metadata, clock)
        self.profile_cache = ProfileCache(self.builder, self.cache)
        self.selector = CandidateSelector(clock)
        self.store = SimilarityStore(self.profile_cache, self.history, clock)
        self.scheduler = BatchScheduler(self.selector, self.store, max_workers=max_workers)
        self.worker = ProfileRefreshWorker(self.profile_cache)

    def get_or_compute_taste_map(self, user_id: str) -> TasteMap:
        return self.profile_cache.get_or_compute(user_id)

    def compute_similarity(self, user_a: str, user_b: str, include_detail: bool = False) -> SimilarityResult:
        return self.store.compute_similarity(user_a, user_b, include_detail=include_detail)

    def compute_and_store_similarity_score(self, user_a: str, user_b: str, source: str = "on-demand") -> SimilarityResult:
        return self.store.compute_and_store_similarity_score(user_a, user_b, source)

    def get_similar_users(
        self,
        user_id: str,
        limit: int = DEFAULT_SIMILAR_USERS_LIMIT,
        fresh_only: bool = False,
    ) -> list[SimilarUser]:
        """
        Users whose taste similarity clears the threshold, best overall match first.

        Served from stored scores when the user has any; otherwise scored on
        demand against the user's candidates, storing the similar pairs.
        With `fresh_only`, stored scores older than DEFAULT_MAX_AGE_HOURS are
        ignored, so a user with only stale scores is rescored on demand.
        Users with fewer than MIN_USER_HISTORY watch-list entries get no matches.
        """
        history_size = sum(self.history.status_counts(user_id).values())
        if history_size < MIN_USER_HISTORY:
            logger.info(
                f"Not enough watch history for {user_id} "
                f"({history_size} < {MIN_USER_HISTORY}), skipping similar users"
            )
            return []

        max_age_hours = DEFAULT_MAX_AGE_HOURS if fresh_only else None
        stored = self.store.scores_for_user(user_id, max_age_hours=max_age_hours)
        if stored:
            matches = [
                SimilarUser(record.other_user(user_id), record.result, record.computed_at)
                for record in stored
                if is_similar(record.result)
            ]
        else:
            logger.info(f"No stored scores for {user_id}, computing against candidates")
            matches = self._compute_similar_users(user_id)

        matches.sort(key=lambda m: (-m.result.overall_match, m.user_id))
        return matches[:limit]

    def _compute_similar_users(self, user_id: str) -> list[SimilarUser]:
        matches = []
        for other in self.selector.candidate_ids_for(user_id):
            try:
                result = self.store.compute_similarity(user_id, other)
                if not is_similar(result):
                    continue
                stored = self.store.compute_and_store_similarity_score(user_id, other, "on-demand")
            except Exception as e:
                logger.warning(f"Skipping candidate {other} for {user_id}: {e}")
                continue
            matches.append(SimilarUser(other, stored))
        return matches

    def compare_users(self, user_a: str, user_b: str) -> UserComparison:
        """Detailed comparison in the caller's orientation (user_a's ratings are rating_a)."""
        if user_a == user_b:
            raise ValueError(f"Cannot compare user '{user_a}' with themselves")
        map_a = self.profile_cache.get_or_compute(user_a)
        map_b = self.profile_cache.get_or_compute(user_b)
        shared = self.history.shared_ratings(user_a, user_b)
        return UserComparison(
            user_a=user_a,
            user_b=user_b,
            result=compare_taste_maps(map_a, map_b, shared, include_detail=True),
            persons=compare_person_profiles(map_a.person_profiles, map_b.person_profiles),
            shared=shared,
        )

    def run_batch_similarity_computation(
        self,
        limit: int = DEFAULT_BATCH_LIMIT,
        offset: int = 0,
        on_progress: Callable[[dict], None] | None = None,
        show_progress: bool = False,
    ) -> BatchSummary:
        return self.scheduler.compute_all_similarity_scores(
            limit=limit,
            offset=offset,
            on_progress=on_progress,
            show_progress=show_progress,
        )

    def history_changed(self, user_id: str) -> bool:
        """
        Call after any watch-history mutation for the user. Drops cached
        entries immediately and hands recomputation to the refresh worker.
        """
        self.profile_cache.invalidate(user_id)
        self.worker.start()
        return self.worker.submit(user_id)

    def metadata_changed(self, content_keys: Iterable[tuple[str, str]]) -> list[str]:
        """
        Call after metadata for (content_id, media_type) pairs was added or
        replaced. Drops cached taste maps of every user holding one of them
        and returns those user ids. Maps are rebuilt lazily on next read.
        """
        if not isinstance(self.history, WatchHistoryStore):
            raise TypeError("metadata_changed requires a WatchHistoryStore to find affected users")
        keys = list(content_keys)
        if isinstance(self.metadata, CachedMetadataProvider):
            for content_id, media_type in keys:
                self.metadata.forget(content_id, media_type)

        users = self.history.users_with_content(keys)
        for user_id in users:
            self.profile_cache.invalidate(user_id)
        logger.info(f"Metadata changed for {len(keys)} titles, invalidated {len(users)} taste maps")
        return users

    def record_watch(self, user_id: str, content_id: str, status: str, **fields) -> None:
        if not isinstance(self.history, WatchHistoryStore):
            raise TypeError("record_watch requires a writable WatchHistoryStore")
        self.history.record_item(user_id, content_id, status, **fields)
        self.history_changed(user_id)

    def remove_watch(self, user_id: str, content_id: str, media_type: str = "movie") -> bool:
        if not isinstance(self.history, WatchHistoryStore):
            raise TypeError("remove_watch requires a writable WatchHistoryStore")
        removed = self.history.remove_item(user_id, content_id, media_type)
        if removed:
            self.history_changed(user_id)
        return removed

    def close(self) -> None:
        self.worker.stop()
