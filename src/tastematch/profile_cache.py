import logging

from .cache import Cache
from .config import TASTE_MAP_TTL_SECONDS
from .profile import ProfileBuilder, TasteMap

logger = logging.getLogger(__name__)


def user_prefix(user_id: str) -> str:
    return f"user:{user_id}:"


def taste_map_key(user_id: str) -> str:
    return f"{user_prefix(user_id)}taste-map"


class ProfileCache:
    """
    Cache-aside access to taste maps.

    The cache is an optimization only: any failure talking to it is logged
    and the map is computed directly. Concurrent misses for the same user
    may both recompute; the results are identical so the last write wins.
    """

    def __init__(self, builder: ProfileBuilder, cache: Cache, ttl_seconds: int = TASTE_MAP_TTL_SECONDS):
        self.builder = builder
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def _read(self, user_id: str) -> TasteMap | None:
        key = taste_map_key(user_id)
        try:
            payload = self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if payload is None:
            return None
        try:
            return TasteMap.from_dict(payload)
        except ValueError as e:
            logger.warning(f"Discarding corrupt cached taste map for {user_id}: {e}")
            return None

    def _write(self, taste_map: TasteMap) -> None:
        key = taste_map_key(taste_map.user_id)
        try:
            self.cache.set(key, taste_map.to_dict(), self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def get_or_compute(self, user_id: str) -> TasteMap:
        cached = self._read(user_id)
        if cached is not None:
            logger.debug(f"Taste map cache hit for {user_id}")
            return cached

        taste_map = self.builder.build(user_id)
        self._write(taste_map)
        return taste_map

    def invalidate(self, user_id: str) -> None:
        """Drop every cached entry for the user (taste map and derived keys)."""
        prefix = user_prefix(user_id)
        try:
            removed = self.cache.invalidate(prefix)
            logger.debug(f"Invalidated {removed} cache entries under {prefix}")
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {prefix}: {e}")

    def refresh(self, user_id: str) -> TasteMap:
        """Recompute now and overwrite the cached copy."""
        self.invalidate(user_id)
        taste_map = self.builder.build(user_id)
        self._write(taste_map)
        return taste_map
