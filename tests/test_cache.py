import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tastematch.cache import RedisCache, TTLCache


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeRedis:
    """Just enough of redis.Redis for RedisCache (decode_responses=True)."""

    def __init__(self, fail=False):
        self.data = {}
        self.ttls = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    def get(self, name):
        self._check()
        return self.data.get(name)

    def set(self, name, value, ex=None):
        self._check()
        self.data[name] = value
        self.ttls[name] = ex

    def delete(self, *names):
        self._check()
        return sum(1 for n in names if self.data.pop(n, None) is not None)

    def scan_iter(self, match=None, count=None):
        self._check()
        prefix = match.rstrip("*").replace("\\", "")
        return iter([k for k in list(self.data) if k.startswith(prefix)])


def test_ttl_cache_expires_entries():
    clock = FakeClock()
    cache = TTLCache(max_entries=10, clock=clock)

    cache.set("k", {"v": 1}, ttl_seconds=60)
    assert cache.get("k") == {"v": 1}

    clock.now = 61
    assert cache.get("k") is None
    assert len(cache) == 0


def test_ttl_cache_evicts_least_recently_used():
    cache = TTLCache(max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("a") == 1
    assert cache.get("b") is None
    assert cache.get("c") == 3
    assert cache.stats()["evictions"] == 1


def test_ttl_cache_returns_copies():
    cache = TTLCache()
    value = {"genres": {"drama": 80}}
    cache.set("k", value)

    value["genres"]["drama"] = 10
    fetched = cache.get("k")
    fetched["genres"]["drama"] = 0

    assert cache.get("k") == {"genres": {"drama": 80}}


def test_ttl_cache_prefix_invalidation():
    cache = TTLCache()
    cache.set("user:1:taste-map", 1)
    cache.set("user:1:other", 2)
    cache.set("user:10:taste-map", 3)

    assert cache.invalidate("user:1:") == 2
    assert cache.get("user:10:taste-map") == 3
    assert cache.invalidate("user:10:taste-map") == 1
    assert cache.invalidate("missing") == 0


def test_ttl_cache_rejects_zero_capacity():
    with pytest.raises(ValueError):
        TTLCache(max_entries=0)


def test_redis_cache_round_trips_json_with_namespace():
    client = FakeRedis()
    cache = RedisCache(client, namespace="tm:")

    cache.set("user:1:taste-map", {"genre_profile": {"drama": 80}}, ttl_seconds=86400)

    assert json.loads(client.data["tm:user:1:taste-map"]) == {"genre_profile": {"drama": 80}}
    assert client.ttls["tm:user:1:taste-map"] == 86400
    assert cache.get("user:1:taste-map") == {"genre_profile": {"drama": 80}}


def test_redis_cache_prefix_invalidation():
    client = FakeRedis()
    cache = RedisCache(client, namespace="tm:")
    cache.set("user:1:taste-map", 1)
    cache.set("user:1:genre-profile", 2)
    cache.set("user:2:taste-map", 3)

    assert cache.invalidate("user:1:") == 2
    assert list(client.data) == ["tm:user:2:taste-map"]


def test_redis_cache_discards_undecodable_values(caplog):
    client = FakeRedis()
    client.data["tm:k"] = "{not json"
    cache = RedisCache(client, namespace="tm:")

    with caplog.at_level("WARNING"):
        assert cache.get("k") is None
    assert "undecodable" in caplog.text


def test_redis_failures_degrade_to_miss(caplog):
    cache = RedisCache(FakeRedis(fail=True))

    with caplog.at_level("WARNING"):
        assert cache.get("k") is None
        cache.set("k", 1)
        assert cache.invalidate("user:1:") == 0

    assert caplog.text.count("connection refused") == 3
