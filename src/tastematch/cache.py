"""
Key/value caches with expiry.

Both implementations speak JSON-compatible values. A key ending in ':' passed
to `invalidate` is treated as a prefix and removes every key under it.
"""
import copy
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Protocol

import redis
from redis.exceptions import RedisError

from .config import CACHE_MAX_ENTRIES, REDIS_NAMESPACE

logger = logging.getLogger(__name__)

PREFIX_SEPARATOR = ":"


class Cache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None: ...

    def invalidate(self, key_or_prefix: str) -> int: ...


def is_prefix(key_or_prefix: str) -> bool:
    return key_or_prefix.endswith(PREFIX_SEPARATOR)


class TTLCache:
    """
    Thread-safe in-process cache bounded by entry count.

    Entries expire `ttl_seconds` after being set; when full, the least
    recently used entry is evicted.
    """

    def __init__(
        self,
        max_entries: int = CACHE_MAX_ENTRIES,
        default_ttl: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[float | None, Any]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, value = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._entries[key] = (expires_at, copy.deepcopy(value))
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1

    def invalidate(self, key_or_prefix: str) -> int:
        with self._lock:
            if not is_prefix(key_or_prefix):
                return 1 if self._entries.pop(key_or_prefix, None) is not None else 0
            doomed = [k for k in self._entries if k.startswith(key_or_prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            return {
                'entries': len(self._entries),
                'max_entries': self._max_entries,
                'hits': self._hits,
                'misses': self._misses,
                'evictions': self._evictions,
            }


def _escape_glob(text: str) -> str:
    return "".join(f"\\{ch}" if ch in "*?[]\\" else ch for ch in text)


class RedisCache:
    """
    Redis-backed cache. Values are stored as JSON strings under
    `{namespace}{key}`.

    Redis failures are logged and degrade to a miss (reads) or a no-op
    (writes/invalidation); callers never see a RedisError.
    """

    def __init__(self, client: redis.Redis, namespace: str = REDIS_NAMESPACE, default_ttl: int | None = None):
        # client must be created with decode_responses=True so get() returns str
        self._r = client
        self._ns = namespace
        self._default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: str, namespace: str = REDIS_NAMESPACE, default_ttl: int | None = None) -> "RedisCache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            health_check_interval=10,
            socket_connect_timeout=2,
            socket_timeout=5,
        )
        return cls(client, namespace=namespace, default_ttl=default_ttl)

    def _key(self, key: str) -> str:
        return f"{self._ns}{key}"

    def get(self, key: str) -> Any | None:
        try:
            raw = self._r.get(self._key(key))
        except RedisError as e:
            logger.warning(f"Redis get failed for '{key}': {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Discarding undecodable cache value for '{key}': {e}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        try:
            self._r.set(self._key(key), payload, ex=ttl)
        except RedisError as e:
            logger.warning(f"Redis set failed for '{key}': {e}")

    def invalidate(self, key_or_prefix: str) -> int:
        try:
            if not is_prefix(key_or_prefix):
                return int(self._r.delete(self._key(key_or_prefix)))

            pattern = f"{_escape_glob(self._key(key_or_prefix))}*"
            deleted = 0
            batch = []
            for name in self._r.scan_iter(match=pattern, count=500):
                batch.append(name)
                if len(batch) >= 500:
                    deleted += int(self._r.delete(*batch))
                    batch.clear()
            if batch:
                deleted += int(self._r.delete(*batch))
            return deleted
        except RedisError as e:
            logger.warning(f"Redis invalidate failed for '{key_or_prefix}': {e}")
            return 0


def make_cache(redis_url: str = "", max_entries: int = CACHE_MAX_ENTRIES) -> Cache:
    """Redis when a URL is configured, otherwise an in-process TTL cache."""
    if redis_url:
        logger.info("Using Redis cache backend")
        return RedisCache.from_url(redis_url)
    return TTLCache(max_entries=max_entries)
