import pytest

from tastematch.history import SharedRating
from tastematch.profile import PersonProfiles, TasteMap
from tastematch.similarity import (
    RatingPatterns,
    SimilarityResult,
    compare_person_profiles,
    compare_taste_maps,
    compute_rating_patterns,
    cosine_similarity,
    genre_match_percentage,
    intensity_bracket,
    is_similar,
    jaccard_person_overlap,
    overall_match,
    pearson_correlation,
    person_overlap,
)


def _map(user_id, genres, actors=None, directors=None, item_count=10):
    return TasteMap(
        user_id=user_id,
        genre_profile=genres,
        person_profiles=PersonProfiles(actors=actors or {}, directors=directors or {}),
        item_count=item_count,
    )


def _shared(pairs, rewatched=()):
    return [
        SharedRating(str(i), a, b, rewatched_a=i in rewatched, rewatched_b=i in rewatched)
        for i, (a, b) in enumerate(pairs)
    ]


def test_cosine_identity_and_symmetry():
    a = {"action": 80, "comedy": 60, "drama": 10}
    b = {"action": 20, "horror": 90}

    assert cosine_similarity(a, a) == pytest.approx(1.0)
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))


def test_cosine_empty_profiles_score_zero():
    assert cosine_similarity({}, {}) == 0.0
    assert cosine_similarity({"action": 50}, {}) == 0.0
    assert cosine_similarity({"action": 0}, {"action": 0}) == 0.0


def test_cosine_worked_example():
    a = {"action": 80, "comedy": 60}
    b = {"action": 85, "comedy": 30}

    # 8600 / (100 * sqrt(8125))
    assert cosine_similarity(a, b) == pytest.approx(0.9541, abs=1e-4)


def test_cosine_disjoint_genres_score_zero():
    assert cosine_similarity({"action": 80}, {"drama": 70}) == 0.0


def test_pearson_identity():
    xs = [1, 4, 6, 9, 10]
    assert pearson_correlation(xs, xs) == pytest.approx(1.0)
    assert pearson_correlation(xs, [11 - x for x in xs]) == pytest.approx(-1.0)


@pytest.mark.parametrize("xs, ys", [
    ([], []),
    ([5], [5]),
    ([1, 2, 3], [1, 2]),
    ([5, 5, 5], [1, 2, 3]),
])
def test_pearson_degenerate_inputs_score_zero(xs, ys):
    assert pearson_correlation(xs, ys) == 0.0


@pytest.mark.parametrize("c", [0.3, 0.6, 0.7, 1.1, 7.7])
def test_pearson_constant_series_is_exactly_zero(c):
    ramp = list(range(1, 11)) + [1]
    assert pearson_correlation([c] * 11, ramp) == 0.0
    assert pearson_correlation(ramp, [c] * 11) == 0.0


def test_jaccard_overlap():
    a = {"Alice": 80, "Bob": 70, "Zero": 0}
    b = {"Bob": 60, "Carol": 90, "Zero": 50}

    # Zero only counts on one side; union is Alice, Bob, Carol, Zero
    assert jaccard_person_overlap(a, b) == pytest.approx(1 / 4)
    assert jaccard_person_overlap(a, a) == 1.0


def test_jaccard_both_empty_is_full_match():
    assert jaccard_person_overlap({}, {}) == 1.0
    assert jaccard_person_overlap({"Nobody": 0}, {}) == 1.0
    assert jaccard_person_overlap({"Someone": 50}, {}) == 0.0


def test_person_overlap_averages_actor_and_director_sets():
    a = PersonProfiles(actors={"A": 80}, directors={})
    b = PersonProfiles(actors={"B": 80}, directors={})

    # actors 0.0, directors vacuous 1.0
    assert person_overlap(a, b) == pytest.approx(0.5)


def test_overall_match_weights():
    assert overall_match(1.0, 1.0, 1.0) == pytest.approx(1.0)
    assert overall_match(0.0, -1.0, 0.0) == pytest.approx(0.0)
    assert overall_match(0.5, 0.0, 0.5) == pytest.approx(0.25 + 0.15 + 0.1)


@pytest.mark.parametrize("component", [0, 1, 2])
def test_overall_match_is_monotone_in_each_component(component):
    base = [0.4, 0.1, 0.3]
    previous = None
    lows = [0.0, -1.0, 0.0]
    for step in range(11):
        args = list(base)
        args[component] = lows[component] + (1.0 - lows[component]) * step / 10
        score = overall_match(*args)
        if previous is not None:
            assert score >= previous
        previous = score


def test_is_similar_threshold_is_strict():
    assert is_similar(SimilarityResult(taste_similarity=0.71))
    assert not is_similar(SimilarityResult(taste_similarity=0.7))


def test_genre_match_percentage():
    assert genre_match_percentage({"action": 80, "comedy": 60}, {"action": 85, "comedy": 30}) == 1.0
    assert genre_match_percentage({"action": 80, "comedy": 10}, {"action": 85, "comedy": 60}) == 0.5
    # Absent genres count as 0; a 40 point gap is still a match
    assert genre_match_percentage({"drama": 40}, {}) == 1.0
    assert genre_match_percentage({"drama": 41}, {}) == 0.0
    assert genre_match_percentage({}, {}) == 0.0


def test_intensity_brackets():
    assert [intensity_bracket(r) for r in (1, 3, 4, 5, 6, 7, 8, 9, 10)] == [0, 0, 1, 1, 2, 2, 3, 3, 4]


def test_rating_patterns_worked_example():
    pairs = [(8, 8)] * 6 + [(7, 8), (9, 8)] + [(3, 6), (10, 7)]

    patterns = compute_rating_patterns(_shared(pairs))

    assert patterns.total_shared == 10
    assert patterns.perfect_matches == 6
    assert patterns.close_matches == 2
    assert patterns.moderate_matches == 0
    assert patterns.large_difference == 2
    assert patterns.overall_movie_match == pytest.approx(0.8)


def test_rating_patterns_detail_fields():
    shared = _shared([(9, 9), (8, 6), (2, 5), (10, 8)], rewatched={0, 3})

    patterns = compute_rating_patterns(shared)

    assert patterns.perfect_matches == 1
    assert patterns.moderate_matches == 2
    assert patterns.large_difference == 1
    assert patterns.same_category == 1  # only (9, 9); (8, 6) and (10, 8) cross brackets
    assert patterns.different_intensity == 3
    assert patterns.avg_rating_a == 7.3
    assert patterns.avg_rating_b == 7.0
    assert patterns.avg_rating_difference == 1.8
    assert patterns.positive_ratings_percentage == 50
    assert patterns.both_rewatched_count == 2
    assert patterns.intensity_match == pytest.approx(1 - 0.25 / 10)
    assert -1.0 <= patterns.pearson_correlation <= 1.0


def test_rating_patterns_empty():
    assert compute_rating_patterns([]) == RatingPatterns()


def test_compare_taste_maps_combines_metrics():
    a = _map("a", {"action": 80, "comedy": 60}, actors={"X": 80}, directors={"D": 90})
    b = _map("b", {"action": 85, "comedy": 30}, actors={"X": 70, "Y": 60}, directors={"D": 70})
    shared = _shared([(8, 8), (6, 5), (3, 4)])

    result = compare_taste_maps(a, b, shared, include_detail=True)

    assert result.taste_similarity == pytest.approx(0.9541, abs=1e-4)
    assert result.person_overlap == pytest.approx((0.5 + 1.0) / 2)
    assert result.rating_correlation > 0.9
    assert result.overall_match == pytest.approx(
        overall_match(result.taste_similarity, result.rating_correlation, result.person_overlap)
    )
    assert result.genre_rating_similarity == 1.0
    assert result.rating_patterns.total_shared == 3


def test_compare_taste_maps_without_detail_omits_breakdown():
    a = _map("a", {"action": 80})
    result = compare_taste_maps(a, a)

    assert result.genre_rating_similarity is None
    assert result.rating_patterns is None


@pytest.mark.parametrize("missing_side", ["a", "b"])
def test_missing_or_empty_taste_map_scores_zero(missing_side):
    full = _map("full", {"action": 80})
    empty = _map("empty", {}, item_count=0)

    for other in (None, empty):
        maps = (other, full) if missing_side == "a" else (full, other)
        result = compare_taste_maps(*maps, include_detail=True)
        assert result.overall_match == 0.0
        assert result.taste_similarity == 0.0
        assert result.person_overlap == 0.0
        assert result.rating_patterns == RatingPatterns()


def test_compare_person_profiles_breakdown():
    a = PersonProfiles(actors={"Shared": 80, "OnlyA": 90}, directors={})
    b = PersonProfiles(actors={"Shared": 60, "OnlyB": 70}, directors={})

    comparison = compare_person_profiles(a, b)

    assert [m.name for m in comparison.actors.mutual] == ["Shared"]
    assert comparison.actors.mutual[0].average == 70
    assert [m.name for m in comparison.actors.only_in_a] == ["OnlyA"]
    assert [m.name for m in comparison.actors.only_in_b] == ["OnlyB"]
    assert comparison.actors.jaccard_index == pytest.approx(1 / 3)
    assert comparison.directors.jaccard_index == 1.0
    assert comparison.overall_match == pytest.approx((1 / 3 + 1.0) / 2)
