import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from tqdm import tqdm

from .candidates import CandidateSelector
from .config import (
    ACTIVE_MIN_WATCHED,
    ACTIVE_DAYS_BACK,
    ACTIVE_USERS_LIMIT,
    CANDIDATES_PER_USER,
    DEFAULT_BATCH_LIMIT,
    BATCH_MAX_WORKERS,
    PROGRESS_EVERY_USERS,
    MAX_REPORTED_ERRORS,
)
from .storage import SimilarityStore

logger = logging.getLogger(__name__)


@dataclass
class PairError:
    user_a: str
    user_b: str | None  # None when the user-level step (candidate lookup) failed
    error: str


@dataclass
class BatchSummary:
    processed: int = 0
    computed: int = 0
    errors: int = 0
    errors_list: list[PairError] = field(default_factory=list)
    duration_seconds: float = 0.0
    pairs_per_second: float = 0.0
    timestamp: str = ""
    total_users: int = 0

    def to_dict(self) -> dict:
        return {
            'processed': self.processed,
            'computed': self.computed,
            'errors': self.errors,
            'errors_list': [vars(e).copy() for e in self.errors_list],
            'duration_seconds': self.duration_seconds,
            'pairs_per_second': self.pairs_per_second,
            'timestamp': self.timestamp,
            'total_users': self.total_users,
        }


class BatchScheduler:
    """
    Recomputes stored scores for a page of active users and their candidates.

    Runs are resumable by (limit, offset) and every write is an upsert, so a
    crashed run can simply be repeated. No single pair or user failure
    aborts the run.
    """

    def __init__(
        self,
        selector: CandidateSelector,
        store: SimilarityStore,
        candidates_per_user: int = CANDIDATES_PER_USER,
        max_workers: int = BATCH_MAX_WORKERS,
    ):
        self.selector = selector
        self.store = store
        self.candidates_per_user = candidates_per_user
        self.max_workers = max_workers

    def _record_error(self, summary: BatchSummary, user_a: str, user_b: str | None, exc: Exception) -> None:
        summary.errors += 1
        if len(summary.errors_list) < MAX_REPORTED_ERRORS:
            summary.errors_list.append(PairError(user_a=user_a, user_b=user_b, error=str(exc)))

    def _notify(self, on_progress, summary: BatchSummary, current: list[str]) -> None:
        if on_progress is None:
            return
        try:
            on_progress({
                'processed': summary.processed,
                'total': summary.total_users,
                'current': list(current),
                'errors': summary.errors,
            })
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def compute_all_similarity_scores(
        self,
        limit: int = DEFAULT_BATCH_LIMIT,
        offset: int = 0,
        on_progress: Callable[[dict], None] | None = None,
        max_workers: int | None = None,
        show_progress: bool = False,
        min_watch_count: int = ACTIVE_MIN_WATCHED,
        days_back: int = ACTIVE_DAYS_BACK,
    ) -> BatchSummary:
        """
        Score every (active user, candidate) pair for one page of active users.

        Listing active users failing is fatal (nothing has been done yet);
        everything after that is recorded in the summary instead of raised.
        """
        started = time.time()
        workers = max_workers or self.max_workers
        summary = BatchSummary(timestamp=datetime.now().isoformat())

        active = self.selector.active_users(min_watch_count, days_back, ACTIVE_USERS_LIMIT)
        page = active[offset:offset + limit]
        summary.total_users = len(page)
        logger.info(f"Computing similarity scores for {len(page)} users (offset {offset}, {len(active)} active)")

        recent: list[str] = []
        with ThreadPoolExecutor(max_workers=workers) as executor:
            for user_id in tqdm(page, desc="Users", unit="user", disable=not show_progress):
                recent.append(user_id)
                try:
                    candidates = self.selector.candidate_ids_for(user_id, self.candidates_per_user)
                except Exception as e:
                    logger.warning(f"Candidate lookup failed for {user_id}: {e}")
                    self._record_error(summary, user_id, None, e)
                    candidates = []

                futures = {
                    executor.submit(self.store.compute_and_store_similarity_score, user_id, other, "scheduler"): other
                    for other in candidates
                }
                for future in as_completed(futures):
                    other = futures[future]
                    try:
                        future.result()
                        summary.computed += 1
                    except Exception as e:
                        self._record_error(summary, user_id, other, e)

                summary.processed += 1
                if summary.processed % PROGRESS_EVERY_USERS == 0:
                    self._notify(on_progress, summary, recent)
                    recent = []

        if recent:
            self._notify(on_progress, summary, recent)

        summary.duration_seconds = round(time.time() - started, 3)
        summary.pairs_per_second = (
            round(summary.computed / summary.duration_seconds, 2) if summary.duration_seconds > 0 else 0.0
        )
        logger.info(
            f"Similarity batch done: {summary.processed} users, {summary.computed} pairs, "
            f"{summary.errors} errors in {summary.duration_seconds:.1f}s ({summary.pairs_per_second}/s)"
        )
        return summary
