"""In-memory TTL cache and the API cache facade built on it."""

import logging
import time
from typing import Any, Awaitable, Callable, Optional

from .config import CACHE_TTL_SECONDS, DEDUP_MAX_CACHE_SIZE
from .database import get_database

logger = logging.getLogger(__name__)


class CacheEntry:
    """Cache entry with TTL."""

    __slots__ = ("data", "timestamp", "expires_at")

    def __init__(self, data: Any, timestamp: float, ttl_seconds: float):
        self.data = data
        self.timestamp = timestamp
        self.expires_at = timestamp + ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def ttl_remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


class TTLCache:
    """
    Map of key -> value where every value expires after its own TTL.

    Expired entries stay readable as stale data (``get_entry(allow_stale=True)``)
    until ``cleanup_expired`` runs. When the map grows past ``max_size`` the
    oldest entries by insertion time are evicted first.
    """

    def __init__(
        self,
        default_ttl: float = CACHE_TTL_SECONDS,
        max_size: int = DEDUP_MAX_CACHE_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def keys(self) -> list[str]:
        return list(self._entries)

    def get_entry(self, key: str, allow_stale: bool = False) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not allow_stale and entry.is_expired(self._clock()):
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        """Get cached data if not expired."""
        entry = self.get_entry(key)
        return entry.data if entry is not None else default

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> CacheEntry:
        entry = CacheEntry(data, self._clock(), self.default_ttl if ttl is None else ttl)
        # Re-insert so dict order tracks insertion time
        self._entries.pop(key, None)
        self._entries[key] = entry
        if len(self._entries) > self.max_size:
            self.evict_oldest(self.max_size)
        return entry

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate(self, pattern: Optional[str] = None) -> list[str]:
        """Drop every key containing ``pattern``, or everything when no pattern is given."""
        if pattern is None:
            removed = list(self._entries)
            self._entries.clear()
            return removed

        removed = [key for key in self._entries if pattern in key]
        for key in removed:
            del self._entries[key]
        return removed

    def cleanup_expired(self) -> list[str]:
        now = self._clock()
        removed = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in removed:
            del self._entries[key]

        if len(self._entries) > self.max_size:
            removed += self.evict_oldest(self.max_size)
        return removed

    def evict_oldest(self, target_size: int) -> list[str]:
        """Evict the oldest entries until at most ``target_size`` remain."""
        excess = len(self._entries) - target_size
        if excess <= 0:
            return []

        oldest = sorted(self._entries.items(), key=lambda item: item[1].timestamp)[:excess]
        removed = [key for key, _ in oldest]
        for key in removed:
            del self._entries[key]
        return removed

    def handle_memory_pressure(self) -> list[str]:
        """Shrink to half of ``max_size``."""
        return self.evict_oldest(self.max_size // 2)

    def clear(self):
        self._entries.clear()


class ApiCache:
    """
    Get-or-set cache for upstream API responses with hit/miss metrics.

    Values are kept in a TTLCache and, when a persistent ``store`` is given,
    written through to it so a restarted process can pick them back up.
    A failing store never prevents the fetch.
    """

    def __init__(self, store=None, default_ttl: float = CACHE_TTL_SECONDS, memory: Optional[TTLCache] = None):
        self.memory = memory if memory is not None else TTLCache(default_ttl=default_ttl)
        self.store = store
        self.default_ttl = default_ttl
        self.reset_metrics()

    def reset_metrics(self):
        self.hits = 0
        self.misses = 0
        self.total_requests = 0

    async def get(self, key: str) -> Any:
        entry = self.memory.get_entry(key)
        if entry is not None:
            return entry.data

        if self.store is None:
            return None

        try:
            stored = await self.store.get_cache_entry(key)
        except Exception as e:
            logger.warning("Persistent cache read failed for %s: %s", key, e)
            return None

        if stored is None:
            return None

        data, ttl_remaining = stored
        self.memory.set(key, data, ttl_remaining)
        return data

    async def set(self, key: str, data: Any, ttl: Optional[float] = None):
        ttl = self.default_ttl if ttl is None else ttl
        self.memory.set(key, data, ttl)

        if self.store is not None:
            try:
                await self.store.set_cache_entry(key, data, ttl)
            except Exception as e:
                logger.warning("Failed to store cache entry %s: %s", key, e)

    async def delete(self, key: str):
        self.memory.delete(key)
        if self.store is not None:
            try:
                await self.store.delete_cache_entry(key)
            except Exception as e:
                logger.warning("Failed to delete stored cache entry %s: %s", key, e)

    async def get_or_set(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> tuple[Any, bool]:
        """
        Return ``(data, cached)``; on a miss ``fetch`` is awaited and its result stored.
        """
        self.total_requests += 1

        cached = await self.get(key)
        if cached is not None:
            self.hits += 1
            logger.debug("Cache hit: %s", key)
            return cached, True

        self.misses += 1
        logger.debug("Cache miss: %s - fetching fresh data", key)

        data = await fetch()
        await self.set(key, data, ttl)
        return data, False

    async def cleanup_expired(self) -> int:
        removed = len(self.memory.cleanup_expired())
        if self.store is not None:
            try:
                removed += await self.store.cleanup_expired_cache()
            except Exception as e:
                logger.warning("Persistent cache cleanup failed: %s", e)
        if removed:
            logger.info("Cleaned up %d expired cache entries", removed)
        return removed

    def metrics(self) -> dict:
        hit_ratio = (self.hits / self.total_requests) * 100 if self.total_requests else 0
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total_requests": self.total_requests,
            "hit_ratio": round(hit_ratio, 2),
            "total_keys": len(self.memory),
        }


# Singleton instance
_api_cache: Optional[ApiCache] = None


def get_api_cache() -> ApiCache:
    """Get or create the singleton ApiCache, persisted to the application database."""
    global _api_cache
    if _api_cache is None:
        _api_cache = ApiCache(store=get_database())
    return _api_cache
