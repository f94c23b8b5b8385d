import importlib
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("TASTEMATCH_DB", str(db_path))
    import tastematch.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB, create the schema and
    cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("TASTEMATCH_DB", str(db_path))

    import tastematch.config as config
    import tastematch.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


@pytest.fixture
def recent():
    """ISO timestamp a few days in the past (inside the default activity window)."""
    return (datetime.now() - timedelta(days=2)).isoformat()


@pytest.fixture
def catalog(fresh_db):
    """
    Store genre metadata for movie ids, e.g. catalog({"m1": ["Drama"]}).
    Returns the StoredMetadataProvider holding it.
    """
    from tastematch.metadata import ContentMetadata, StoredMetadataProvider

    store = StoredMetadataProvider()

    def _catalog(entries):
        store.store_many([
            (content_id, "movie", ContentMetadata(genres=list(genres)))
            for content_id, genres in entries.items()
        ])
        return store

    return _catalog


@pytest.fixture
def watch(fresh_db, recent):
    """
    Record completed watches, e.g. watch("alice", {"m1": 9, "m2": 7}).
    Returns the WatchHistoryStore used.
    """
    from tastematch.history import WatchHistoryStore

    history = WatchHistoryStore()

    def _watch(user_id, ratings, status="watched", added_at=None):
        history.record_items([
            {
                'user_id': user_id,
                'content_id': content_id,
                'status': status,
                'user_rating': rating,
                'added_at': added_at or recent,
            }
            for content_id, rating in ratings.items()
        ])
        return history

    return _watch


@pytest.fixture
def three_users(catalog, watch):
    """
    alice and bob rate the same dramas alike; carol mostly watches comedies.
    Each also has unrated watchlist entries so their history is long enough
    for similar-user listings.
    """
    catalog({
        "m1": ["Drama"],
        "m2": ["Drama", "Crime"],
        "m3": ["Comedy"],
        "m4": ["Comedy"],
    })
    watch("alice", {"m1": 9, "m2": 8, "m3": 3})
    watch("bob", {"m1": 9, "m2": 7, "m3": 4})
    watch("carol", {"m3": 9, "m4": 10})
    watch("alice", {"w1": None, "w2": None}, status="want")
    watch("bob", {"w1": None, "w2": None}, status="want")
    return watch("carol", {"w1": None, "w2": None, "w3": None}, status="want")
