"""Tests for the key-value cache backends."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.cache import MemoryCacheBackend, RedisCacheBackend
from app.core.exceptions import CacheError


class TestMemoryCacheBackend:
    """Tests for MemoryCacheBackend."""

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        backend = MemoryCacheBackend()

        await backend.set("k", b"payload", 60)

        assert await backend.get("k") == b"payload"
        assert len(backend) == 1

    @pytest.mark.asyncio
    async def test_entry_expires(self):
        clock = [0.0]
        backend = MemoryCacheBackend(clock=lambda: clock[0])
        await backend.set("k", b"payload", 10)

        clock[0] = 10.0

        assert await backend.get("k") is None
        assert len(backend) == 0

    @pytest.mark.asyncio
    async def test_set_sweeps_expired_entries(self):
        """Expired keys are dropped on write even if never read again."""
        clock = [0.0]
        backend = MemoryCacheBackend(clock=lambda: clock[0])
        await backend.set("old-1", b"v", 10)
        await backend.set("old-2", b"v", 10)
        await backend.set("long", b"v", 100)

        clock[0] = 50.0
        await backend.set("new", b"v", 10)

        assert len(backend) == 2
        assert await backend.get("long") == b"v"

    @pytest.mark.asyncio
    async def test_set_replaces_whole_value(self):
        backend = MemoryCacheBackend()
        await backend.set("k", b"old", 60)

        await backend.set("k", b"new", 60)

        assert await backend.get("k") == b"new"

    @pytest.mark.asyncio
    async def test_delete_and_ping(self):
        backend = MemoryCacheBackend()
        await backend.set("k", b"v", 60)

        await backend.delete("k")
        await backend.delete("absent")

        assert await backend.get("k") is None
        assert await backend.ping() is True


class TestRedisCacheBackend:
    """Tests for RedisCacheBackend with a mocked client."""

    @pytest.mark.asyncio
    async def test_set_uses_expiry(self):
        client = AsyncMock()
        backend = RedisCacheBackend(client)

        await backend.set("k", b"v", 120)

        client.set.assert_awaited_once_with("k", b"v", ex=120)

    @pytest.mark.asyncio
    async def test_get_returns_bytes(self):
        client = AsyncMock()
        client.get.return_value = b"v"

        assert await RedisCacheBackend(client).get("k") == b"v"

    @pytest.mark.asyncio
    async def test_driver_errors_become_cache_errors(self):
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("connection refused")
        client.set.side_effect = RedisConnectionError("connection refused")
        client.ping.side_effect = RedisConnectionError("connection refused")
        backend = RedisCacheBackend(client)

        with pytest.raises(CacheError):
            await backend.get("k")
        with pytest.raises(CacheError):
            await backend.set("k", b"v", 1)
        with pytest.raises(CacheError) as exc_info:
            await backend.ping()

        assert exc_info.value.code == "CACHE_ERROR"

    def test_from_url_builds_pooled_client(self):
        backend = RedisCacheBackend.from_url("redis://localhost:6379/3", max_connections=5)

        pool = backend.client.connection_pool
        assert pool.max_connections == 5
        assert pool.connection_kwargs["db"] == 3
