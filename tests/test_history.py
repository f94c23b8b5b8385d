from datetime import datetime, timedelta

import pytest

from tastematch.history import SharedRating, WatchHistoryStore


def test_record_item_upserts_and_keeps_added_at(fresh_db):
    history = WatchHistoryStore()
    history.record_item("alice", "m1", "watched", user_rating=6, added_at="2024-01-01T10:00:00")
    history.record_item("alice", "m1", "rewatched", user_rating=9, watch_count=2, added_at="2024-06-01T10:00:00")

    items = history.load_items("alice")

    assert len(items) == 1
    item = items[0]
    assert item.status == "rewatched"
    assert item.user_rating == 9
    assert item.watch_count == 2
    assert item.added_at == "2024-01-01T10:00:00"
    assert item.updated_at > item.added_at


@pytest.mark.parametrize("kwargs", [
    {"status": "liked"},
    {"status": "watched", "media_type": "book"},
    {"status": "watched", "user_rating": 0},
    {"status": "watched", "user_rating": 10.5},
])
def test_record_item_validates_input(fresh_db, kwargs):
    with pytest.raises(ValueError):
        WatchHistoryStore().record_item("alice", "m1", **kwargs)


def test_record_items_is_all_or_nothing_on_validation(fresh_db):
    history = WatchHistoryStore()
    rows = [
        {"user_id": "alice", "content_id": "m1", "status": "watched"},
        {"user_id": "alice", "content_id": "m2", "status": "bogus"},
    ]

    with pytest.raises(ValueError):
        history.record_items(rows)

    assert history.load_items("alice") == []


def test_load_items_filters_statuses(fresh_db):
    history = WatchHistoryStore()
    history.record_item("alice", "m1", "watched", user_rating=7)
    history.record_item("alice", "m2", "dropped")
    history.record_item("alice", "t1", "rewatched", media_type="tv", user_rating=9)

    completed = history.load_items("alice", ("watched", "rewatched"))

    assert sorted(i.content_id for i in completed) == ["m1", "t1"]
    assert len(history.load_items("alice")) == 3


def test_status_counts_include_zero_statuses(fresh_db):
    history = WatchHistoryStore()
    history.record_item("alice", "m1", "watched")
    history.record_item("alice", "m2", "watched")
    history.record_item("alice", "m3", "want")

    counts = history.status_counts("alice")

    assert counts == {"want": 1, "watched": 2, "rewatched": 0, "dropped": 0, "in_progress": 0}
    assert sum(history.status_counts("nobody").values()) == 0


def test_shared_ratings_use_completed_items_with_ratings(fresh_db):
    history = WatchHistoryStore()
    history.record_item("alice", "m1", "watched", user_rating=8)
    history.record_item("bob", "m1", "rewatched", user_rating=6)
    # fallback ratings stand in for missing user ratings
    history.record_item("alice", "m2", "watched", fallback_rating=7.5)
    history.record_item("bob", "m2", "watched", user_rating=7)
    # unrated, not completed, or other media type: not shared
    history.record_item("alice", "m3", "watched")
    history.record_item("bob", "m3", "watched", user_rating=5)
    history.record_item("alice", "m4", "dropped", user_rating=3)
    history.record_item("bob", "m4", "watched", user_rating=3)
    history.record_item("alice", "m5", "watched", user_rating=5, media_type="tv")
    history.record_item("bob", "m5", "watched", user_rating=5)

    shared = history.shared_ratings("alice", "bob")

    assert shared == [
        SharedRating("m1", 8, 6, rewatched_a=False, rewatched_b=True),
        SharedRating("m2", 7.5, 7),
    ]
    assert [(s.rating_a, s.rating_b) for s in history.shared_ratings("bob", "alice")] == [(6, 8), (7, 7.5)]


def test_remove_item(fresh_db):
    history = WatchHistoryStore()
    history.record_item("alice", "m1", "watched")

    assert history.remove_item("alice", "m1") is True
    assert history.remove_item("alice", "m1") is False
    assert history.load_items("alice") == []


def test_updated_since_and_user_ids(fresh_db):
    history = WatchHistoryStore()
    assert history.updated_since("alice", datetime.now()) is False

    before = datetime.now() - timedelta(minutes=1)
    history.record_item("bob", "m1", "watched")
    history.record_item("alice", "m1", "watched")

    assert history.updated_since("alice", before) is True
    assert history.updated_since("alice", datetime.now() + timedelta(minutes=1)) is False
    assert history.user_ids() == ["alice", "bob"]


def test_users_with_content_matches_id_and_media_type(fresh_db):
    history = WatchHistoryStore()
    history.record_item("bob", "m1", "watched", user_rating=7)
    history.record_item("alice", "m1", "want")
    history.record_item("carol", "m1", "watched", media_type="tv")
    history.record_item("dave", "m2", "dropped")

    assert history.users_with_content([("m1", "movie")]) == ["alice", "bob"]
    assert history.users_with_content([("m1", "tv"), ("m2", "movie"), ("m2", "movie")]) == ["carol", "dave"]
    assert history.users_with_content([]) == []
