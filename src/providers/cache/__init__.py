"""Cache providers.

MemoryCacheProvider backs the response cache with a ``cachetools.TTLCache``:
fast, bounded, and local to one process.  For multi-worker deployments a
shared backend (e.g. Redis) can implement ICacheProvider without changing
the response cache.
"""

from src.providers.cache.memory_cache import MemoryCacheProvider

__all__ = ["MemoryCacheProvider"]
