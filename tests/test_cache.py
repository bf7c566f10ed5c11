"""Tests for the response cache.

Tests:
- Deterministic key derivation and resource prefixes
- TTL expiry on the memory backend
- Prefix invalidation and stale-write protection
- Backend failures degrade to misses
- Redis backend command mapping (mocked client)
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from commerce_gateway.resilience.cache import (
    MISS,
    MemoryCacheBackend,
    RedisCacheBackend,
    ResponseCache,
    cache_key,
    normalize_path,
    resource_of,
    resource_prefix,
)


class TestKeys:
    def test_key_is_deterministic_regardless_of_param_order(self):
        a = cache_key("veeqo", "GET", "/orders", {"page": 1, "status": "shipped"})
        b = cache_key("veeqo", "get", "/orders/", {"status": "shipped", "page": 1})
        assert a == b

    def test_key_differs_by_params_and_provider(self):
        base = cache_key("veeqo", "GET", "/orders", {"page": 1})
        assert base != cache_key("veeqo", "GET", "/orders", {"page": 2})
        assert base != cache_key("easypost", "GET", "/orders", {"page": 1})

    def test_key_is_grouped_under_resource_prefix(self):
        key = cache_key("veeqo", "GET", "/orders/42/notes")
        assert key.startswith("cache:veeqo:orders:")
        assert key.startswith(resource_prefix("veeqo", "/orders"))

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("orders", "/orders"),
            ("/orders/", "/orders"),
            ("//orders//42", "/orders/42"),
            ("/orders?page=2", "/orders"),
            ("/", "/"),
        ],
    )
    def test_normalize_path(self, path, expected):
        assert normalize_path(path) == expected

    def test_resource_of_first_segment(self):
        assert resource_of("/shipments/shp_1/buy") == "shipments"
        assert resource_of("/") == "_root"


class TestMemoryBackend:
    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, fake_clock):
        backend = MemoryCacheBackend(clock=fake_clock)
        await backend.set("k", {"v": 1}, ttl=30)
        assert await backend.get("k") == {"v": 1}

        fake_clock.advance(30)
        assert await backend.get("k") is MISS
        assert len(backend) == 0

    @pytest.mark.asyncio
    async def test_oldest_entry_evicted_when_full(self, fake_clock):
        backend = MemoryCacheBackend(max_keys=2, clock=fake_clock)
        await backend.set("a", 1, ttl=30)
        await backend.set("b", 2, ttl=30)
        await backend.set("c", 3, ttl=30)
        assert await backend.get("a") is MISS
        assert await backend.get("c") == 3

    @pytest.mark.asyncio
    async def test_none_is_a_cacheable_value(self, fake_clock):
        backend = MemoryCacheBackend(clock=fake_clock)
        await backend.set("k", None, ttl=30)
        assert await backend.get("k") is None


class TestResponseCache:
    @pytest.mark.asyncio
    async def test_set_then_get_is_a_hit(self):
        cache = ResponseCache()
        key = cache_key("veeqo", "GET", "/orders")
        assert await cache.get(key) is MISS
        await cache.set(key, {"status": 200, "data": []})
        assert await cache.get(key) == {"status": 200, "data": []}
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1
        assert cache.stats.hit_rate == 50.0

    @pytest.mark.asyncio
    async def test_invalidate_resource_removes_only_that_resource(self):
        cache = ResponseCache()
        orders = cache_key("veeqo", "GET", "/orders")
        order = cache_key("veeqo", "GET", "/orders/42")
        products = cache_key("veeqo", "GET", "/products")
        for key in (orders, order, products):
            await cache.set(key, "value")

        removed = await cache.invalidate_resource("veeqo", "/orders/42")

        assert removed == 2
        assert await cache.get(orders) is MISS
        assert await cache.get(order) is MISS
        assert await cache.get(products) == "value"

    @pytest.mark.asyncio
    async def test_write_started_before_invalidation_is_dropped(self):
        cache = ResponseCache()
        key = cache_key("veeqo", "GET", "/orders/42")
        observed = cache.generation(key)

        # A mutation lands while the read is in flight
        await cache.invalidate_resource("veeqo", "/orders/42")

        stored = await cache.set(key, {"stale": True}, generation=observed)
        assert stored is False
        assert cache.stats.stale_sets_dropped == 1
        assert await cache.get(key) is MISS

    @pytest.mark.asyncio
    async def test_provider_wide_clear_also_fences_writes(self):
        cache = ResponseCache()
        key = cache_key("easypost", "GET", "/shipments")
        observed = cache.generation(key)

        await cache.clear("easypost")

        assert await cache.set(key, "stale", generation=observed) is False

    @pytest.mark.asyncio
    async def test_unrelated_invalidation_does_not_fence_writes(self):
        cache = ResponseCache()
        key = cache_key("veeqo", "GET", "/orders")
        observed = cache.generation(key)

        await cache.invalidate_resource("veeqo", "/products")

        assert await cache.set(key, "fresh", generation=observed) is True

    @pytest.mark.asyncio
    async def test_zero_ttl_is_not_stored(self):
        cache = ResponseCache(default_ttl=0)
        key = cache_key("veeqo", "GET", "/orders")
        assert await cache.set(key, "v") is False
        assert await cache.get(key) is MISS

    @pytest.mark.asyncio
    async def test_backend_read_failure_is_a_miss(self):
        backend = MagicMock()
        backend.get = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = ResponseCache(backend)

        assert await cache.get("cache:veeqo:orders:x") is MISS
        assert cache.stats.errors == 1
        assert cache.stats.misses == 1

    @pytest.mark.asyncio
    async def test_backend_write_failure_is_swallowed(self):
        backend = MagicMock()
        backend.set = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = ResponseCache(backend)

        assert await cache.set("cache:veeqo:orders:x", "v") is False
        assert cache.stats.errors == 1


class _AsyncIter:
    def __init__(self, items):
        self._items = list(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        return self._items.pop(0)


class TestRedisBackend:
    @pytest.mark.asyncio
    async def test_get_miss_and_hit(self):
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=[None, json.dumps({"status": 200})])
        backend = RedisCacheBackend(redis)

        assert await backend.get("k") is MISS
        assert await backend.get("k") == {"status": 200}

    @pytest.mark.asyncio
    async def test_set_uses_setex(self):
        redis = MagicMock()
        redis.setex = AsyncMock()
        backend = RedisCacheBackend(redis)

        await backend.set("k", {"a": 1}, ttl=30)

        redis.setex.assert_awaited_once_with("k", 30, json.dumps({"a": 1}))

    @pytest.mark.asyncio
    async def test_delete_prefix_scans_and_deletes(self):
        redis = MagicMock()
        redis.scan_iter = MagicMock(return_value=_AsyncIter(["cache:veeqo:orders:a", "cache:veeqo:orders:b"]))
        redis.delete = AsyncMock(return_value=2)
        backend = RedisCacheBackend(redis)

        removed = await backend.delete_prefix("cache:veeqo:orders:")

        assert removed == 2
        redis.scan_iter.assert_called_once_with(match="cache:veeqo:orders:*", count=500)
        redis.delete.assert_awaited_once_with("cache:veeqo:orders:a", "cache:veeqo:orders:b")
