"""Key-value cache clients (get / set-with-ttl).

Two backends share one small async interface:

- ``RedisCacheBackend``: shared ``redis.asyncio`` connection pool, used in
  every deployed environment so all API workers see the same entries.
- ``MemoryCacheBackend``: process-local dict with expiry, for development
  and tests.

Backends translate driver failures into ``CacheError``; deciding whether a
failure matters is left to the caller.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from functools import lru_cache
from typing import Protocol

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import get_settings
from app.core.exceptions import CacheError
from app.core.logging import get_logger

logger = get_logger(__name__)


class CacheBackend(Protocol):
    """Minimal async key-value contract used by the result cache."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def ping(self) -> bool: ...


class RedisCacheBackend:
    """Redis-backed cache client.

    Values are written with a single ``SET key value EX ttl`` so an entry is
    either fully present or absent.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, max_connections: int = 20) -> RedisCacheBackend:
        pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        return cls(aioredis.Redis(connection_pool=pool))

    async def get(self, key: str) -> bytes | None:
        try:
            value: bytes | None = await self.client.get(key)
        except RedisError as exc:
            raise CacheError("Redis GET failed", details={"key": key, "error": str(exc)}) from exc
        return value

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise CacheError("Redis SET failed", details={"key": key, "error": str(exc)}) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise CacheError("Redis DEL failed", details={"key": key, "error": str(exc)}) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            raise CacheError("Redis PING failed", details={"error": str(exc)}) from exc

    async def close(self) -> None:
        await self.client.aclose()


class MemoryCacheBackend:
    """In-process cache with per-entry expiry.

    Entries are immutable bytes replaced as whole values, which keeps
    concurrent readers from ever observing a partial write.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._entries: dict[str, tuple[bytes, float]] = {}
        self._clock = clock or time.monotonic

    async def get(self, key: str) -> bytes | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        now = self._clock()
        self._sweep(now)
        self._entries[key] = (value, now + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def ping(self) -> bool:
        return True

    def _sweep(self, now: float) -> None:
        """Drop expired entries; keys never read again would otherwise stay forever."""
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    async def close(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@lru_cache
def get_cache_backend() -> CacheBackend:
    """Return the process-wide cache backend selected by settings."""
    settings = get_settings()
    if settings.cache_backend == "memory":
        logger.info("cache.backend_initialized", backend="memory")
        return MemoryCacheBackend()
    logger.info("cache.backend_initialized", backend="redis")
    return RedisCacheBackend.from_url(settings.redis_url)
