"""
Similarity metrics between two users' taste maps.

Everything here is a pure function of its inputs:

- cosine similarity of genre profiles (taste, 0..1)
- Pearson correlation of ratings on shared items (-1..1)
- Jaccard overlap of actor/director sets (0..1)

combined into one overall match by fixed weights.
"""
import logging
from dataclasses import dataclass, field, asdict
from typing import Mapping, Sequence

import numpy as np

from .config import (
    MATCH_WEIGHTS,
    SIMILARITY_THRESHOLD,
    PERFECT_MATCH_DIFF,
    CLOSE_MATCH_MAX_DIFF,
    MODERATE_MATCH_MAX_DIFF,
    POSITIVE_RATING_MIN,
    INTENSITY_BRACKETS,
    GENRE_MATCH_MAX_DIFF,
    RATING_SCALE_MAX,
)
from .history import SharedRating
from .profile import PersonProfiles, TasteMap
from .utils import clamp, percentage, round_half_up

logger = logging.getLogger(__name__)


@dataclass
class RatingPatterns:
    """How two users' ratings line up on the items they both completed."""
    perfect_matches: int = 0
    close_matches: int = 0
    moderate_matches: int = 0
    large_difference: int = 0
    same_category: int = 0
    different_intensity: int = 0
    avg_rating_a: float = 0.0
    avg_rating_b: float = 0.0
    intensity_match: float = 0.0
    pearson_correlation: float = 0.0
    total_shared: int = 0
    avg_rating_difference: float = 0.0
    positive_ratings_percentage: int = 0
    both_rewatched_count: int = 0
    overall_movie_match: float = 0.0


@dataclass
class SimilarityResult:
    taste_similarity: float = 0.0
    rating_correlation: float = 0.0
    person_overlap: float = 0.0
    overall_match: float = 0.0
    genre_rating_similarity: float | None = None
    rating_patterns: RatingPatterns | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PersonMatch:
    name: str
    score_a: int | None = None
    score_b: int | None = None

    @property
    def average(self) -> float:
        scores = [s for s in (self.score_a, self.score_b) if s is not None]
        return sum(scores) / len(scores) if scores else 0.0


@dataclass
class PersonSetComparison:
    mutual: list[PersonMatch] = field(default_factory=list)
    only_in_a: list[PersonMatch] = field(default_factory=list)
    only_in_b: list[PersonMatch] = field(default_factory=list)
    jaccard_index: float = 0.0


@dataclass
class PersonComparison:
    actors: PersonSetComparison
    directors: PersonSetComparison

    @property
    def overall_match(self) -> float:
        return (self.actors.jaccard_index + self.directors.jaccard_index) / 2


def cosine_similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine of the two score vectors over the union of keys (absent = 0)."""
    keys = sorted(set(a) | set(b))
    if not keys:
        return 0.0
    va = np.array([a.get(k, 0) for k in keys], dtype=float)
    vb = np.array([b.get(k, 0) for k in keys], dtype=float)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.clip(va.dot(vb) / denom, 0.0, 1.0))


def pearson_correlation(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson r of paired ratings; 0 for mismatched, short or constant series."""
    if len(xs) != len(ys) or len(xs) < 2:
        return 0.0
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    # x - x.mean() leaves rounding residue on constant series
    if np.ptp(x) == 0 or np.ptp(y) == 0:
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denom = np.sqrt((dx ** 2).sum() * (dy ** 2).sum())
    return float(np.clip((dx * dy).sum() / denom, -1.0, 1.0))


def _positive_names(profile: Mapping[str, float]) -> set[str]:
    return {name for name, score in profile.items() if score > 0}


def jaccard_person_overlap(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """
    |A ∩ B| / |A ∪ B| over names with a positive score.

    Two empty sets are a vacuous full match (1.0) on every code path.
    """
    set_a = _positive_names(a)
    set_b = _positive_names(b)
    union = set_a | set_b
    if not union:
        return 1.0
    return len(set_a & set_b) / len(union)


def person_overlap(a: PersonProfiles, b: PersonProfiles) -> float:
    return (jaccard_person_overlap(a.actors, b.actors) + jaccard_person_overlap(a.directors, b.directors)) / 2


def overall_match(taste_similarity: float, rating_correlation: float, person_overlap_score: float) -> float:
    correlation_unit = (rating_correlation + 1) / 2
    score = (
        MATCH_WEIGHTS['taste'] * taste_similarity
        + MATCH_WEIGHTS['rating'] * correlation_unit
        + MATCH_WEIGHTS['person'] * person_overlap_score
    )
    return clamp(score, 0.0, 1.0)


def is_similar(result: SimilarityResult) -> bool:
    return result.taste_similarity > SIMILARITY_THRESHOLD


def genre_match_percentage(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Fraction of genres (union, absent = 0) whose scores are within GENRE_MATCH_MAX_DIFF of the 0-100 scale."""
    keys = set(a) | set(b)
    if not keys:
        return 0.0
    tolerance = GENRE_MATCH_MAX_DIFF * 100
    matching = sum(1 for k in keys if abs(a.get(k, 0) - b.get(k, 0)) <= tolerance)
    return matching / len(keys)


def intensity_bracket(rating: float) -> int:
    """Index into INTENSITY_BRACKETS for a 1-10 rating (1-3, 4-5, 6-7, 8-9, 10)."""
    whole = round_half_up(rating)
    for index, upper in enumerate(INTENSITY_BRACKETS):
        if whole <= upper:
            return index
    return len(INTENSITY_BRACKETS) - 1


def compute_rating_patterns(shared: Sequence[SharedRating]) -> RatingPatterns:
    if not shared:
        return RatingPatterns()

    patterns = RatingPatterns(total_shared=len(shared))
    diffs = []
    for pair in shared:
        diff = abs(pair.rating_a - pair.rating_b)
        diffs.append(diff)
        if diff == PERFECT_MATCH_DIFF:
            patterns.perfect_matches += 1
        elif diff <= CLOSE_MATCH_MAX_DIFF:
            patterns.close_matches += 1
        elif diff <= MODERATE_MATCH_MAX_DIFF:
            patterns.moderate_matches += 1
        else:
            patterns.large_difference += 1

        if intensity_bracket(pair.rating_a) == intensity_bracket(pair.rating_b):
            patterns.same_category += 1
        else:
            patterns.different_intensity += 1

        if pair.rewatched_a and pair.rewatched_b:
            patterns.both_rewatched_count += 1

    ratings_a = [p.rating_a for p in shared]
    ratings_b = [p.rating_b for p in shared]
    mean_a = sum(ratings_a) / len(ratings_a)
    mean_b = sum(ratings_b) / len(ratings_b)
    both_positive = sum(1 for p in shared if p.rating_a >= POSITIVE_RATING_MIN and p.rating_b >= POSITIVE_RATING_MIN)

    patterns.avg_rating_a = round_half_up(mean_a, 1)
    patterns.avg_rating_b = round_half_up(mean_b, 1)
    patterns.intensity_match = clamp(1 - abs(mean_a - mean_b) / RATING_SCALE_MAX, 0.0, 1.0)
    patterns.pearson_correlation = pearson_correlation(ratings_a, ratings_b)
    patterns.avg_rating_difference = round_half_up(sum(diffs) / len(diffs), 1)
    patterns.positive_ratings_percentage = percentage(both_positive, len(shared))
    patterns.overall_movie_match = (patterns.perfect_matches + patterns.close_matches) / len(shared)
    return patterns


def compare_taste_maps(
    map_a: TasteMap | None,
    map_b: TasteMap | None,
    shared: Sequence[SharedRating] = (),
    include_detail: bool = False,
) -> SimilarityResult:
    """
    Score two users against each other.

    A missing or empty taste map on either side yields an all-zero result
    rather than an error.
    """
    if map_a is None or map_b is None or map_a.is_empty or map_b.is_empty:
        result = SimilarityResult()
        if include_detail:
            result.genre_rating_similarity = 0.0
            result.rating_patterns = RatingPatterns()
        return result

    taste = cosine_similarity(map_a.genre_profile, map_b.genre_profile)
    correlation = pearson_correlation([s.rating_a for s in shared], [s.rating_b for s in shared])
    overlap = person_overlap(map_a.person_profiles, map_b.person_profiles)

    result = SimilarityResult(
        taste_similarity=taste,
        rating_correlation=correlation,
        person_overlap=overlap,
        overall_match=overall_match(taste, correlation, overlap),
    )
    if include_detail:
        result.genre_rating_similarity = genre_match_percentage(map_a.genre_profile, map_b.genre_profile)
        result.rating_patterns = compute_rating_patterns(shared)
    return result


def _compare_person_set(a: Mapping[str, int], b: Mapping[str, int]) -> PersonSetComparison:
    names_a = _positive_names(a)
    names_b = _positive_names(b)

    mutual = [PersonMatch(n, a[n], b[n]) for n in names_a & names_b]
    mutual.sort(key=lambda m: (-m.average, m.name))
    only_a = sorted((PersonMatch(n, score_a=a[n]) for n in names_a - names_b), key=lambda m: (-m.score_a, m.name))
    only_b = sorted((PersonMatch(n, score_b=b[n]) for n in names_b - names_a), key=lambda m: (-m.score_b, m.name))

    return PersonSetComparison(
        mutual=mutual,
        only_in_a=only_a,
        only_in_b=only_b,
        jaccard_index=jaccard_person_overlap(a, b),
    )


def compare_person_profiles(a: PersonProfiles, b: PersonProfiles) -> PersonComparison:
    """Breakdown of shared and exclusive actors/directors between two users."""
    return PersonComparison(
        actors=_compare_person_set(a.actors, b.actors),
        directors=_compare_person_set(a.directors, b.directors),
    )
