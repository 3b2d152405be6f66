"""Short-lived caching in front of the persistence collaborator.

Public API:
    CacheBackend          - Abstract base for all backends
    RedisCacheBackend     - Redis-backed production cache
    InMemoryCacheBackend  - Dict-backed cache for dev/testing
    get_cache_backend     - Factory: selects backend from settings
"""

from chatbroker.cache.backend import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)

__all__ = [
    "CacheBackend",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "get_cache_backend",
]
