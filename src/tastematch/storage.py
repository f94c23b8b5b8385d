"""
Durable storage of pairwise similarity scores.

Each unordered user pair is stored once, under the canonical ordering
(user_a < user_b), together with snapshots of both users' genre and person
profiles at computation time so a stored score can be explained later.
Scores are kept as fixed-point decimal strings to avoid float drift between
writes and reads.
"""
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Mapping

from .config import (
    COMPUTED_BY_SOURCES,
    DEFAULT_MAX_AGE_HOURS,
    SCORE_DECIMAL_PLACES,
    SCORE_RETENTION_DAYS,
)
from .database import get_db, dump_json, load_json, parse_timestamp_naive
from .history import WatchHistory
from .profile import TasteMap, validate_score_map
from .profile_cache import ProfileCache
from .similarity import RatingPatterns, SimilarityResult, compare_taste_maps

logger = logging.getLogger(__name__)

_QUANTUM = Decimal(1).scaleb(-SCORE_DECIMAL_PLACES)


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    if user_a == user_b:
        raise ValueError(f"Cannot compare user '{user_a}' with themselves")
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


def to_fixed(value: float) -> str:
    """Format a score with SCORE_DECIMAL_PLACES decimals, half-up."""
    quantized = Decimal(repr(float(value))).quantize(_QUANTUM, rounding=ROUND_HALF_UP)
    if quantized.is_zero():
        quantized = abs(quantized)
    return str(quantized)


def _fixed_float(value: float) -> float:
    return float(to_fixed(value))


@dataclass(frozen=True)
class TasteMapSnapshot:
    """The parts of a TasteMap a stored score was computed from."""
    genre_profile: Mapping[str, int]
    actors: Mapping[str, int]
    directors: Mapping[str, int]

    @classmethod
    def from_taste_map(cls, taste_map: TasteMap) -> "TasteMapSnapshot":
        return cls(
            genre_profile=dict(taste_map.genre_profile),
            actors=dict(taste_map.person_profiles.actors),
            directors=dict(taste_map.person_profiles.directors),
        )

    def to_dict(self) -> dict:
        return {
            'genre_profile': dict(self.genre_profile),
            'person_profiles': {
                'actors': dict(self.actors),
                'directors': dict(self.directors),
            },
        }

    @classmethod
    def from_dict(cls, data) -> "TasteMapSnapshot":
        if not isinstance(data, Mapping):
            raise ValueError("Snapshot must be a mapping")
        persons = data.get('person_profiles')
        if not isinstance(persons, Mapping):
            raise ValueError("Snapshot is missing person_profiles")
        return cls(
            genre_profile=validate_score_map(data.get('genre_profile')),
            actors=validate_score_map(persons.get('actors')),
            directors=validate_score_map(persons.get('directors')),
        )


@dataclass
class SimilarityScoreRecord:
    user_a: str
    user_b: str
    result: SimilarityResult
    snapshot_a: TasteMapSnapshot
    snapshot_b: TasteMapSnapshot
    computed_at: str
    updated_at: str
    computed_by: str

    def other_user(self, user_id: str) -> str:
        return self.user_b if user_id == self.user_a else self.user_a


def _result_from_row(row) -> SimilarityResult:
    patterns = None
    if row['rating_patterns']:
        patterns = RatingPatterns(**load_json(row['rating_patterns'], default={}))
    genre_similarity = row['genre_rating_similarity']
    return SimilarityResult(
        taste_similarity=float(row['taste_similarity']),
        rating_correlation=float(row['rating_correlation']),
        person_overlap=float(row['person_overlap']),
        overall_match=float(row['overall_match']),
        genre_rating_similarity=float(genre_similarity) if genre_similarity is not None else None,
        rating_patterns=patterns,
    )


def _record_from_row(row) -> SimilarityScoreRecord:
    try:
        snapshot_a = TasteMapSnapshot.from_dict(json.loads(row['snapshot_a']))
        snapshot_b = TasteMapSnapshot.from_dict(json.loads(row['snapshot_b']))
    except (json.JSONDecodeError, TypeError) as e:
        raise ValueError(f"Unreadable snapshot for {row['user_a']}/{row['user_b']}: {e}") from e
    return SimilarityScoreRecord(
        user_a=row['user_a'],
        user_b=row['user_b'],
        result=_result_from_row(row),
        snapshot_a=snapshot_a,
        snapshot_b=snapshot_b,
        computed_at=row['computed_at'],
        updated_at=row['updated_at'],
        computed_by=row['computed_by'],
    )


class SimilarityStore:
    """Computes, persists and serves pairwise similarity scores."""

    def __init__(
        self,
        profile_cache: ProfileCache,
        history: WatchHistory,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.profile_cache = profile_cache
        self.history = history
        self.clock = clock

    def compute_similarity(self, user_a: str, user_b: str, include_detail: bool = False) -> SimilarityResult:
        """Score a pair without persisting it. Orientation follows the canonical pair."""
        first, second = canonical_pair(user_a, user_b)
        map_a = self.profile_cache.get_or_compute(first)
        map_b = self.profile_cache.get_or_compute(second)
        shared = self.history.shared_ratings(first, second)
        return compare_taste_maps(map_a, map_b, shared, include_detail=include_detail)

    def compute_and_store_similarity_score(
        self,
        user_a: str,
        user_b: str,
        source: str = "on-demand",
    ) -> SimilarityResult:
        """
        Compute the pair's score and upsert it.

        Re-running with unchanged inputs rewrites identical scores and
        snapshots; only computed_at/updated_at move. The returned result
        carries the values at stored precision. Failures are logged and
        re-raised.
        """
        if source not in COMPUTED_BY_SOURCES:
            raise ValueError(f"Unknown source '{source}', expected one of {COMPUTED_BY_SOURCES}")
        first, second = canonical_pair(user_a, user_b)

        try:
            map_a = self.profile_cache.get_or_compute(first)
            map_b = self.profile_cache.get_or_compute(second)
            shared = self.history.shared_ratings(first, second)
            result = compare_taste_maps(map_a, map_b, shared, include_detail=True)
            self._upsert(
                first, second, result,
                TasteMapSnapshot.from_taste_map(map_a),
                TasteMapSnapshot.from_taste_map(map_b),
                source,
            )
        except Exception as e:
            logger.error(f"Failed to compute similarity for {first}/{second}: {e}")
            raise

        logger.debug(f"Stored similarity {first}/{second}: overall={result.overall_match:.4f} ({source})")
        return SimilarityResult(
            taste_similarity=_fixed_float(result.taste_similarity),
            rating_correlation=_fixed_float(result.rating_correlation),
            person_overlap=_fixed_float(result.person_overlap),
            overall_match=_fixed_float(result.overall_match),
            genre_rating_similarity=_fixed_float(result.genre_rating_similarity or 0.0),
            rating_patterns=result.rating_patterns,
        )

    def _upsert(
        self,
        user_a: str,
        user_b: str,
        result: SimilarityResult,
        snapshot_a: TasteMapSnapshot,
        snapshot_b: TasteMapSnapshot,
        source: str,
    ) -> None:
        timestamp = self.clock().isoformat()
        patterns = dump_json(asdict(result.rating_patterns)) if result.rating_patterns else None
        with get_db() as conn:
            conn.execute("""
                INSERT INTO similarity_scores
                (user_a, user_b, overall_match, taste_similarity, rating_correlation, person_overlap,
                 genre_rating_similarity, rating_patterns, snapshot_a, snapshot_b,
                 computed_at, updated_at, computed_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_a, user_b) DO UPDATE SET
                    overall_match = excluded.overall_match,
                    taste_similarity = excluded.taste_similarity,
                    rating_correlation = excluded.rating_correlation,
                    person_overlap = excluded.person_overlap,
                    genre_rating_similarity = excluded.genre_rating_similarity,
                    rating_patterns = excluded.rating_patterns,
                    snapshot_a = excluded.snapshot_a,
                    snapshot_b = excluded.snapshot_b,
                    computed_at = excluded.computed_at,
                    updated_at = excluded.updated_at,
                    computed_by = excluded.computed_by
            """, (
                user_a, user_b,
                to_fixed(result.overall_match),
                to_fixed(result.taste_similarity),
                to_fixed(result.rating_correlation),
                to_fixed(result.person_overlap),
                to_fixed(result.genre_rating_similarity) if result.genre_rating_similarity is not None else None,
                patterns,
                dump_json(snapshot_a.to_dict()),
                dump_json(snapshot_b.to_dict()),
                timestamp, timestamp, source,
            ))

    def _is_fresh(self, computed_at: str, max_age_hours: float) -> bool:
        age = self.clock() - parse_timestamp_naive(computed_at)
        return age <= timedelta(hours=max_age_hours)

    def load_record(self, user_a: str, user_b: str) -> SimilarityScoreRecord | None:
        first, second = canonical_pair(user_a, user_b)
        with get_db(read_only=True) as conn:
            row = conn.execute(
                "SELECT * FROM similarity_scores WHERE user_a = ? AND user_b = ?",
                (first, second)
            ).fetchone()
        return _record_from_row(row) if row else None

    def get_similarity_score_from_db(
        self,
        user_a: str,
        user_b: str,
        max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
    ) -> SimilarityResult | None:
        """Stored result for the pair, or None when absent or older than max_age_hours."""
        first, second = canonical_pair(user_a, user_b)
        with get_db(read_only=True) as conn:
            row = conn.execute("""
                SELECT overall_match, taste_similarity, rating_correlation, person_overlap,
                       genre_rating_similarity, rating_patterns, computed_at
                FROM similarity_scores
                WHERE user_a = ? AND user_b = ?
            """, (first, second)).fetchone()

        if not row:
            return None
        if not self._is_fresh(row['computed_at'], max_age_hours):
            logger.debug(f"Stored similarity {first}/{second} is stale (computed {row['computed_at']})")
            return None
        return _result_from_row(row)

    def scores_for_user(
        self,
        user_id: str,
        limit: int | None = None,
        max_age_hours: float | None = None,
    ) -> list[SimilarityScoreRecord]:
        """Stored scores involving the user, best overall match first."""
        with get_db(read_only=True) as conn:
            rows = conn.execute("""
                SELECT *,
                       CASE WHEN user_a = ? THEN user_b ELSE user_a END AS other_user
                FROM similarity_scores
                WHERE user_a = ? OR user_b = ?
                ORDER BY CAST(overall_match AS REAL) DESC, other_user
            """, (user_id, user_id, user_id)).fetchall()

        records = []
        for row in rows:
            if max_age_hours is not None and not self._is_fresh(row['computed_at'], max_age_hours):
                continue
            records.append(_record_from_row(row))
            if limit is not None and len(records) >= limit:
                break
        return records

    def delete_old_similarity_scores(self, max_age_days: int = SCORE_RETENTION_DAYS) -> int:
        cutoff = (self.clock() - timedelta(days=max_age_days)).isoformat()
        with get_db() as conn:
            cursor = conn.execute("DELETE FROM similarity_scores WHERE computed_at < ?", (cutoff,))
            deleted = cursor.rowcount
        logger.info(f"Deleted {deleted} similarity scores computed before {cutoff}")
        return deleted

    def delete_scores_for_user(self, user_id: str) -> int:
        with get_db() as conn:
            cursor = conn.execute(
                "DELETE FROM similarity_scores WHERE user_a = ? OR user_b = ?",
                (user_id, user_id)
            )
            return cursor.rowcount

    def get_similarity_score_stats(self) -> dict:
        with get_db(read_only=True) as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS total,
                       AVG(CAST(overall_match AS REAL)) AS average_match,
                       MAX(computed_at) AS last_computed
                FROM similarity_scores
            """).fetchone()
            unique_users = conn.execute("""
                SELECT COUNT(*) FROM (
                    SELECT user_a AS user_id FROM similarity_scores
                    UNION
                    SELECT user_b FROM similarity_scores
                )
            """).fetchone()[0]
            scheduler_row = conn.execute(
                "SELECT MAX(computed_at) AS last_run FROM similarity_scores WHERE computed_by = 'scheduler'"
            ).fetchone()

        average = row['average_match']
        return {
            'total_scores': row['total'],
            'unique_users': unique_users,
            'average_match': _fixed_float(average) if average is not None else None,
            'last_computed': row['last_computed'],
            'scheduler_last_run': scheduler_row['last_run'],
        }
