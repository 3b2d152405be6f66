"""Short-lived cache in front of the ChatStore.

The memory engine keeps each user's non-expired memories here for a few
seconds so that hint retrieval on every chat turn does not hit the
database. Two backends:

- RedisCacheBackend: shared between workers, values stored as JSON
- InMemoryCacheBackend: per-process, TTL plus a size bound (LRU eviction)

Losing the cache only costs a store read, so backend failures are logged
and reported as a miss instead of being raised.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from chatbroker.config import Settings

log = structlog.get_logger(__name__)

KEY_PREFIX = "chatbroker"


class CacheBackend(ABC):
    """Key/value cache with per-entry TTL. Values must be JSON-compatible."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Cached value, or None on miss, expiry or backend failure."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value for ttl seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    async def close(self) -> None:
        return None


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache. The connection pool is opened on first use."""

    def __init__(self, redis_url: str, *, prefix: str = KEY_PREFIX) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._client: aioredis.Redis | None = None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as exc:
            log.warning("cache.redis_unavailable", op="get", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("cache.corrupt_entry", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.client.set(self._key(key), json.dumps(value, default=str), ex=ttl)
        except RedisError as exc:
            log.warning("cache.redis_unavailable", op="set", key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except RedisError as exc:
            log.warning("cache.redis_unavailable", op="delete", key=key, error=str(exc))

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()


class InMemoryCacheBackend(CacheBackend):
    """Process-local cache for dev and tests.

    Entries are (monotonic deadline, value). The oldest entry is evicted once
    max_entries is reached.
    """

    def __init__(self, *, max_entries: int = 10_000) -> None:
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._max_entries = max_entries
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > time.monotonic():
                self._entries.move_to_end(key)
                self.hits += 1
                return entry[1]
            self._entries.pop(key, None)
            self.misses += 1
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            self._entries[key] = (time.monotonic() + ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


def get_cache_backend(settings: Settings) -> CacheBackend:
    """Redis when REDIS_URL is set, otherwise the in-process cache."""
    if settings.redis_url:
        log.info("cache.backend_selected", backend="redis", url=settings.redis_url.split("@")[-1])
        return RedisCacheBackend(settings.redis_url)
    log.info("cache.backend_selected", backend="memory")
    return InMemoryCacheBackend()
