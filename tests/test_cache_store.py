"""Unit tests for cache/store.py -- cache-aside reads and invalidation.

Covers:
- miss -> loader runs, result stored with the default or explicit ttl, source "store"
- hit  -> loader not called, source "cache"
- empty results and loader exceptions are never cached
- an undecodable entry is treated as a miss and overwritten
- Redis down: reads fall through, invalidation reports failed keys, nothing raises
- prefix invalidation removes only keys under the prefix
"""

import asyncio
import json

import pytest
from conftest import DownRedis, FakeRedis

from cache.store import SOURCE_CACHE, SOURCE_STORE, RedisCache, ReadThroughCache
from core.errors import CacheBackendUnavailable, ResourceNotFound


class _Loader:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.value


@pytest.mark.asyncio
async def test_miss_then_hit(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis), default_ttl=120)
    loader = _Loader({"id": "p1", "title": "Hello"})

    first = await cache.read("posts:p1", loader)
    second = await cache.read("posts:p1", loader)

    assert first.source == SOURCE_STORE
    assert second.source == SOURCE_CACHE
    assert second.data == first.data == {"id": "p1", "title": "Hello"}
    assert loader.calls == 1
    assert fake_redis.ttls["posts:p1"] == 120
    assert first.elapsed_ms >= 0


@pytest.mark.asyncio
async def test_explicit_ttl_overrides_default(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis), default_ttl=120)
    await cache.read("top:liked:post", _Loader([{"id": "p1"}]), ttl=30)
    assert fake_redis.ttls["top:liked:post"] == 30


@pytest.mark.asyncio
async def test_empty_result_is_not_cached(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis))
    loader = _Loader([])

    await cache.read("top:commented:post", loader)
    result = await cache.read("top:commented:post", loader)

    assert result.source == SOURCE_STORE
    assert loader.calls == 2
    assert "top:commented:post" not in fake_redis.values


@pytest.mark.asyncio
async def test_custom_emptiness_check(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis))
    page = {"page": 1, "total": 0, "items": []}
    await cache.read("posts:all:1:10:", _Loader(page), is_empty=lambda p: not p["items"])
    assert "posts:all:1:10:" not in fake_redis.values


@pytest.mark.asyncio
async def test_loader_error_propagates_and_nothing_is_cached(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis))

    async def missing():
        raise ResourceNotFound("Post not found.")

    with pytest.raises(ResourceNotFound):
        await cache.read("posts:nope", missing)
    assert fake_redis.values == {}


@pytest.mark.asyncio
async def test_corrupt_entry_is_a_miss(fake_redis: FakeRedis):
    fake_redis.values["posts:p1"] = "{not json"
    cache = ReadThroughCache(RedisCache(fake_redis))

    result = await cache.read("posts:p1", _Loader({"id": "p1"}))

    assert result.source == SOURCE_STORE
    assert json.loads(fake_redis.values["posts:p1"]) == {"id": "p1"}


@pytest.mark.asyncio
async def test_invalidate_keys_and_prefixes(fake_redis: FakeRedis):
    fake_redis.values.update(
        {
            "posts:p1": "{}",
            "posts:p2": "{}",
            "posts:all:1:10:": "{}",
            "posts:all:2:10:hello": "{}",
            "users:all:1:10:": "{}",
            "top:liked:post": "[]",
        }
    )
    cache = ReadThroughCache(RedisCache(fake_redis))

    failed = await cache.invalidate(keys=["posts:p1", "top:liked:post"], prefixes=["posts:all:"])

    assert failed == []
    assert set(fake_redis.values) == {"posts:p2", "users:all:1:10:"}


@pytest.mark.asyncio
async def test_invalidating_absent_keys_is_fine(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis))
    assert await cache.invalidate(keys=["posts:ghost"], prefixes=["users:all:"]) == []


# ---------------------------------------------------------------------------
# Fail-open
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_read_falls_through_when_redis_is_down():
    cache = ReadThroughCache(RedisCache(DownRedis()))
    loader = _Loader({"id": "p1"})

    first = await cache.read("posts:p1", loader)
    second = await cache.read("posts:p1", loader)

    assert first.source == second.source == SOURCE_STORE
    assert second.data == {"id": "p1"}
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_invalidate_reports_failures_when_redis_is_down():
    cache = ReadThroughCache(RedisCache(DownRedis()))
    failed = await cache.invalidate(keys=["posts:p1"], prefixes=["posts:all:"])
    assert failed == ["posts:p1", "posts:all:*"]


@pytest.mark.asyncio
async def test_backend_wraps_redis_errors():
    backend = RedisCache(DownRedis())
    with pytest.raises(CacheBackendUnavailable):
        await backend.ping()
    with pytest.raises(CacheBackendUnavailable):
        await backend.delete_prefix("posts:all:")


# ---------------------------------------------------------------------------
# Reads racing invalidation
# ---------------------------------------------------------------------------


class _GatedLoader:
    """Loader that returns its value only after release() is called."""

    def __init__(self, value):
        self.value = value
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self):
        self.entered.set()
        await self.gate.wait()
        return self.value

    def release(self):
        self.gate.set()


@pytest.mark.asyncio
async def test_load_overlapping_key_invalidation_is_not_cached(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis))
    loader = _GatedLoader({"id": "p1", "title": "Old title"})

    reader = asyncio.create_task(cache.read("posts:p1", loader))
    await loader.entered.wait()
    await cache.invalidate(keys=["posts:p1"])
    loader.release()

    result = await reader
    assert result.source == SOURCE_STORE
    assert "posts:p1" not in fake_redis.values


@pytest.mark.asyncio
async def test_load_overlapping_prefix_invalidation_is_not_cached(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis))
    loader = _GatedLoader({"items": [{"id": "p1"}]})

    reader = asyncio.create_task(cache.read("posts:all:1:10:", loader))
    await loader.entered.wait()
    await cache.invalidate(prefixes=["posts:all:"])
    loader.release()
    await reader

    assert "posts:all:1:10:" not in fake_redis.values


@pytest.mark.asyncio
async def test_unrelated_invalidation_does_not_block_caching(fake_redis: FakeRedis):
    cache = ReadThroughCache(RedisCache(fake_redis))
    loader = _GatedLoader({"id": "p1"})

    reader = asyncio.create_task(cache.read("posts:p1", loader))
    await loader.entered.wait()
    await cache.invalidate(keys=["posts:p2"], prefixes=["users:all:"])
    loader.release()
    await reader

    assert "posts:p1" in fake_redis.values
    assert (await cache.read("posts:p1", _Loader({"id": "p1"}))).source == SOURCE_CACHE
