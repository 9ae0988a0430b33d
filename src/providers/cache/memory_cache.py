"""In-memory cache provider using cachetools.TTLCache.

Simple, fast cache suitable for development and single-process deployments.
Can be swapped for Redis or another backend via the ICacheProvider interface.

``TTLCache`` evicts the least-recently-used entry once ``max_size`` is
reached and drops entries ``ttl`` seconds after their last write.  It is not
thread-safe, so every access goes through an ``RLock``; the lock is only
ever held for the synchronous dictionary operation, never across an await.
"""

from __future__ import annotations

import threading
from typing import Any

import structlog
from cachetools import TTLCache

from src.interfaces.cache_provider import ICacheProvider

logger = structlog.get_logger(logger_name=__name__)


class MemoryCacheProvider(ICacheProvider):
    """In-memory TTL cache backed by ``cachetools.TTLCache``.

    Parameters
    ----------
    max_size:
        Maximum number of entries before the least-recently-used entry
        is evicted.
    ttl:
        Time-to-live in seconds for cache entries.
    """

    def __init__(self, max_size: int = 1000, ttl: int = 900) -> None:
        self._default_ttl = ttl
        self._cache: TTLCache[str, Any] = TTLCache(maxsize=max_size, ttl=ttl)
        self._lock = threading.RLock()

    @property
    def max_size(self) -> int:
        return int(self._cache.maxsize)

    @property
    def ttl(self) -> int:
        return self._default_ttl

    # ------------------------------------------------------------------
    # ICacheProvider implementation
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Retrieve the cached value for *key*, or ``None`` if missing/expired."""
        with self._lock:
            value = self._cache.get(key)
        if value is not None:
            logger.debug("cache_hit", key=key)
        else:
            logger.debug("cache_miss", key=key)
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store *value* under *key*.

        The per-item *ttl* parameter is noted but the underlying
        ``TTLCache`` applies a uniform TTL set at construction time.
        """
        with self._lock:
            self._cache[key] = value
        logger.debug("cache_set", key=key)

    async def delete(self, key: str) -> None:
        """Remove *key* from the cache (no-op if absent)."""
        with self._lock:
            self._cache.pop(key, None)
        logger.debug("cache_delete", key=key)

    async def exists(self, key: str) -> bool:
        """Return ``True`` if *key* is present and not expired."""
        with self._lock:
            return key in self._cache

    async def keys(self) -> list[str]:
        with self._lock:
            self._cache.expire()
            return list(self._cache.keys())

    async def clear(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.debug("cache_cleared")
