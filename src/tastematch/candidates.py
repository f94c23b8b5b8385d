import logging
from datetime import datetime, timedelta
from typing import Callable

from .config import (
    COMPLETED_STATUSES,
    ACTIVE_MIN_WATCHED,
    ACTIVE_DAYS_BACK,
    ACTIVE_USERS_LIMIT,
    CANDIDATES_PER_USER,
)
from .database import get_db

logger = logging.getLogger(__name__)


class CandidateSelector:
    """
    Narrows the set of user pairs worth scoring.

    Only users who share at least one completed item are ever compared, and
    each user gets a bounded candidate list, so batch work grows roughly
    linearly with the number of active users.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    def active_users(
        self,
        min_watch_count: int = ACTIVE_MIN_WATCHED,
        days_back: int = ACTIVE_DAYS_BACK,
        limit: int = ACTIVE_USERS_LIMIT,
    ) -> list[str]:
        """
        Users with at least `min_watch_count` completed items, one of which
        was added within the last `days_back` days. Ordered by user id so
        paging with an offset is stable between runs.
        """
        cutoff = (self.clock() - timedelta(days=days_back)).isoformat()
        placeholders = ','.join('?' * len(COMPLETED_STATUSES))
        with get_db(read_only=True) as conn:
            rows = conn.execute(f"""
                SELECT user_id
                FROM watch_items
                WHERE status IN ({placeholders})
                GROUP BY user_id
                HAVING COUNT(*) >= ? AND MAX(added_at) >= ?
                ORDER BY user_id
                LIMIT ?
            """, (*COMPLETED_STATUSES, min_watch_count, cutoff, limit)).fetchall()
        return [r['user_id'] for r in rows]

    def candidates_for(self, user_id: str, limit: int = CANDIDATES_PER_USER) -> list[tuple[str, int]]:
        """Other users ranked by how many completed items they share with `user_id`."""
        placeholders = ','.join('?' * len(COMPLETED_STATUSES))
        with get_db(read_only=True) as conn:
            rows = conn.execute(f"""
                SELECT other.user_id AS user_id, COUNT(*) AS shared
                FROM watch_items mine
                JOIN watch_items other
                  ON other.content_id = mine.content_id
                 AND other.media_type = mine.media_type
                 AND other.user_id != mine.user_id
                WHERE mine.user_id = ?
                  AND mine.status IN ({placeholders})
                  AND other.status IN ({placeholders})
                GROUP BY other.user_id
                ORDER BY shared DESC, other.user_id
                LIMIT ?
            """, (user_id, *COMPLETED_STATUSES, *COMPLETED_STATUSES, limit)).fetchall()
        return [(r['user_id'], r['shared']) for r in rows]

    def candidate_ids_for(self, user_id: str, limit: int = CANDIDATES_PER_USER) -> list[str]:
        return [candidate for candidate, _ in self.candidates_for(user_id, limit)]
