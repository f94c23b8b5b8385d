import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable, Mapping

from .config import (
    ALL_STATUSES,
    COMPLETED_STATUSES,
    MAX_CAST_CONSIDERED,
    TOP_PERSONS_LIMIT,
    DIRECTOR_JOB,
    HIGH_RATING_MIN,
    MEDIUM_RATING_MIN,
    DIVERSITY_GENRE_MIN_SCORE,
    DIVERSITY_POINTS_PER_GENRE,
    STATUS_WANT,
    STATUS_WATCHED,
    STATUS_REWATCHED,
    STATUS_DROPPED,
    STATUS_IN_PROGRESS,
)
from .history import WatchedItem, WatchHistory
from .metadata import MetadataProvider
from .utils import clamp, percentage, round_half_up

logger = logging.getLogger(__name__)

PERSON_TYPES = ("actor", "director")


@dataclass
class PersonProfiles:
    actors: dict[str, int] = field(default_factory=dict)
    directors: dict[str, int] = field(default_factory=dict)


@dataclass
class RatingDistribution:
    """Share of rated items per bracket, in whole percent."""
    high: int = 0
    medium: int = 0
    low: int = 0


@dataclass
class BehaviorProfile:
    rewatch_rate: int = 0
    drop_rate: int = 0
    completion_rate: int = 100


@dataclass
class TypeProfile:
    movie: int = 0
    tv: int = 0


@dataclass
class ComputedMetrics:
    positive_intensity: int = 0
    negative_intensity: int = 0
    consistency: int = 0
    diversity: int = 0


@dataclass
class TasteMap:
    """Aggregated, serializable summary of one user's completed watch history."""
    user_id: str
    genre_profile: dict[str, int] = field(default_factory=dict)
    person_profiles: PersonProfiles = field(default_factory=PersonProfiles)
    rating_distribution: RatingDistribution = field(default_factory=RatingDistribution)
    average_rating: float = 0.0
    behavior_profile: BehaviorProfile = field(default_factory=BehaviorProfile)
    type_profile: TypeProfile = field(default_factory=TypeProfile)
    computed_metrics: ComputedMetrics = field(default_factory=ComputedMetrics)
    item_count: int = 0
    updated_at: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.item_count == 0

    def to_dict(self) -> dict:
        return {
            'user_id': self.user_id,
            'genre_profile': dict(self.genre_profile),
            'person_profiles': {
                'actors': dict(self.person_profiles.actors),
                'directors': dict(self.person_profiles.directors),
            },
            'rating_distribution': vars(self.rating_distribution).copy(),
            'average_rating': self.average_rating,
            'behavior_profile': vars(self.behavior_profile).copy(),
            'type_profile': vars(self.type_profile).copy(),
            'computed_metrics': vars(self.computed_metrics).copy(),
            'item_count': self.item_count,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "TasteMap":
        """
        Rebuild a TasteMap from `to_dict` output.

        Raises ValueError on anything malformed so a corrupt cache entry is
        treated as a miss instead of flowing into similarity math.
        """
        try:
            persons = data['person_profiles']
            return cls(
                user_id=str(data['user_id']),
                genre_profile=validate_score_map(data['genre_profile']),
                person_profiles=PersonProfiles(
                    actors=validate_score_map(persons['actors']),
                    directors=validate_score_map(persons['directors']),
                ),
                rating_distribution=RatingDistribution(**data['rating_distribution']),
                average_rating=float(data['average_rating']),
                behavior_profile=BehaviorProfile(**data['behavior_profile']),
                type_profile=TypeProfile(**data.get('type_profile', {})),
                computed_metrics=ComputedMetrics(**data['computed_metrics']),
                item_count=int(data['item_count']),
                updated_at=data.get('updated_at'),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed taste map payload: {e}") from e


def validate_score_map(raw) -> dict[str, int]:
    if not isinstance(raw, Mapping):
        raise ValueError(f"Expected a mapping of scores, got {type(raw).__name__}")
    scores = {}
    for name, score in raw.items():
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ValueError(f"Score for '{name}' is not a number: {score!r}")
        if not 0 <= score <= 100:
            raise ValueError(f"Score for '{name}' out of range: {score}")
        scores[str(name)] = int(score)
    return scores


def _to_score(mean_rating: float) -> int:
    """Mean 1-10 rating onto the 0-100 score scale."""
    return int(clamp(round_half_up(mean_rating * 10), 0, 100))


def compute_genre_profile(items: Iterable[WatchedItem]) -> dict[str, int]:
    """
    Score each genre by the mean effective rating of items carrying it.

    Items without an effective rating add nothing, so a genre only seen on
    unrated items is absent rather than scored 0.
    """
    totals: dict[str, float] = defaultdict(float)
    counts: dict[str, int] = defaultdict(int)

    for item in items:
        rating = item.effective_rating
        if rating is None:
            continue
        for genre in dict.fromkeys(item.genres):
            totals[genre] += rating
            counts[genre] += 1

    return {genre: _to_score(totals[genre] / counts[genre]) for genre in totals}


def _person_names(item: WatchedItem, person_type: str) -> list[str]:
    if person_type == "actor":
        names = [c.name for c in item.cast[:MAX_CAST_CONSIDERED]]
    else:
        names = [c.name for c in item.crew if c.job == DIRECTOR_JOB]
    return [n for n in dict.fromkeys(names) if n]


def compute_person_profile(items: Iterable[WatchedItem], person_type: str) -> dict[str, int]:
    """
    Score actors or directors by mean effective rating and keep the top
    TOP_PERSONS_LIMIT.

    Ranking uses the rating weighted by watch count (rewatches pull a person
    up), ties broken by name. The returned dict is in rank order.
    """
    if person_type not in PERSON_TYPES:
        raise ValueError(f"Unknown person type '{person_type}', expected one of {PERSON_TYPES}")

    rating_sum: dict[str, float] = defaultdict(float)
    count: dict[str, int] = defaultdict(int)
    weighted_sum: dict[str, float] = defaultdict(float)
    weight_total: dict[str, float] = defaultdict(float)

    for item in items:
        rating = item.effective_rating
        if rating is None:
            continue
        weight = max(1, item.watch_count or 1)
        for name in _person_names(item, person_type):
            rating_sum[name] += rating
            count[name] += 1
            weighted_sum[name] += rating * weight
            weight_total[name] += weight

    ranked = sorted(rating_sum, key=lambda n: (-(weighted_sum[n] / weight_total[n]), n))
    return {name: _to_score(rating_sum[name] / count[name]) for name in ranked[:TOP_PERSONS_LIMIT]}


def compute_person_profiles(items: list[WatchedItem]) -> PersonProfiles:
    return PersonProfiles(
        actors=compute_person_profile(items, "actor"),
        directors=compute_person_profile(items, "director"),
    )


def compute_rating_distribution(items: Iterable[WatchedItem]) -> RatingDistribution:
    ratings = [i.effective_rating for i in items if i.effective_rating is not None]
    if not ratings:
        return RatingDistribution()

    high = sum(1 for r in ratings if r >= HIGH_RATING_MIN)
    medium = sum(1 for r in ratings if MEDIUM_RATING_MIN <= r < HIGH_RATING_MIN)
    low = len(ratings) - high - medium
    return RatingDistribution(
        high=percentage(high, len(ratings)),
        medium=percentage(medium, len(ratings)),
        low=percentage(low, len(ratings)),
    )


def compute_average_rating(items: list[WatchedItem]) -> float:
    """Mean of the user's own ratings; falls back to community ratings only when the user rated nothing."""
    ratings = [i.user_rating for i in items if i.user_rating is not None]
    if not ratings:
        ratings = [i.fallback_rating for i in items if i.fallback_rating is not None]
    if not ratings:
        return 0.0
    return round_half_up(sum(ratings) / len(ratings), 1)


def compute_behavior_profile(status_counts: Mapping[str, int]) -> BehaviorProfile:
    watched = status_counts.get(STATUS_WATCHED, 0)
    rewatched = status_counts.get(STATUS_REWATCHED, 0)
    dropped = status_counts.get(STATUS_DROPPED, 0)
    want = status_counts.get(STATUS_WANT, 0)
    in_progress = status_counts.get(STATUS_IN_PROGRESS, 0)

    completion_base = watched + in_progress
    return BehaviorProfile(
        rewatch_rate=percentage(rewatched, watched + rewatched),
        drop_rate=percentage(dropped, want + dropped + in_progress),
        completion_rate=percentage(watched, completion_base) if completion_base else 100,
    )


def compute_type_profile(items: list[WatchedItem]) -> TypeProfile:
    movies = sum(1 for i in items if i.media_type == "movie")
    shows = sum(1 for i in items if i.media_type == "tv")
    return TypeProfile(movie=percentage(movies, len(items)), tv=percentage(shows, len(items)))


def compute_metrics(genre_profile: Mapping[str, int], distribution: RatingDistribution) -> ComputedMetrics:
    liked_genres = sum(1 for score in genre_profile.values() if score > DIVERSITY_GENRE_MIN_SCORE)
    return ComputedMetrics(
        positive_intensity=distribution.high,
        negative_intensity=distribution.low,
        consistency=distribution.medium,
        diversity=min(100, liked_genres * DIVERSITY_POINTS_PER_GENRE),
    )


def empty_taste_map(user_id: str, updated_at: str | None = None) -> TasteMap:
    return TasteMap(user_id=user_id, updated_at=updated_at)


def build_taste_map(
    user_id: str,
    items: list[WatchedItem],
    status_counts: Mapping[str, int] | None = None,
    updated_at: str | None = None,
) -> TasteMap:
    """Assemble a TasteMap from already-enriched completed items."""
    if status_counts is None:
        status_counts = dict.fromkeys(ALL_STATUSES, 0)
        for item in items:
            status_counts[item.status] = status_counts.get(item.status, 0) + 1

    behavior = compute_behavior_profile(status_counts)
    if not items:
        taste_map = empty_taste_map(user_id, updated_at)
        taste_map.behavior_profile = behavior
        return taste_map

    genre_profile = compute_genre_profile(items)
    distribution = compute_rating_distribution(items)
    return TasteMap(
        user_id=user_id,
        genre_profile=genre_profile,
        person_profiles=compute_person_profiles(items),
        rating_distribution=distribution,
        average_rating=compute_average_rating(items),
        behavior_profile=behavior,
        type_profile=compute_type_profile(items),
        computed_metrics=compute_metrics(genre_profile, distribution),
        item_count=len(items),
        updated_at=updated_at,
    )


class ProfileBuilder:
    """Loads a user's history, attaches metadata and aggregates it into a TasteMap."""

    def __init__(
        self,
        history: WatchHistory,
        metadata: MetadataProvider | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.history = history
        self.metadata = metadata
        self.clock = clock

    def enrich(self, item: WatchedItem) -> WatchedItem:
        """
        Return the item with genres and credits attached.

        A failed lookup leaves the item bare: its rating still counts toward
        distribution and average, but it adds nothing to genre or person
        profiles.
        """
        if item.has_metadata or self.metadata is None:
            return item
        try:
            metadata = self.metadata.lookup(item.content_id, item.media_type)
        except Exception as e:
            logger.warning(f"Metadata lookup raised for {item.media_type}/{item.content_id}: {e}")
            return item
        if metadata is None:
            logger.debug(f"No metadata for {item.media_type}/{item.content_id}")
            return item
        return replace(item, genres=list(metadata.genres), cast=list(metadata.cast), crew=list(metadata.crew))

    def compute_behavior_profile(self, user_id: str) -> BehaviorProfile:
        return compute_behavior_profile(self.history.status_counts(user_id))

    def build(self, user_id: str) -> TasteMap:
        items = self.history.load_items(user_id, COMPLETED_STATUSES)
        enriched = [self.enrich(item) for item in items]
        missing = sum(1 for item in enriched if not item.has_metadata)

        taste_map = build_taste_map(
            user_id,
            enriched,
            status_counts=self.history.status_counts(user_id),
            updated_at=self.clock().isoformat(),
        )
        logger.debug(
            f"Built taste map for {user_id}: {len(enriched)} items, "
            f"{len(taste_map.genre_profile)} genres, {missing} without metadata"
        )
        return taste_map
