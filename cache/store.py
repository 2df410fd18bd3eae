"""
cache/store.py -- Redis-backed cache-aside layer for Inkwell read paths.

Two classes:

  RedisCache        The cache backend: get, set-with-ttl, delete,
                    delete-by-prefix over redis.asyncio. Every Redis failure
                    (connection refused, timeout, protocol error) is re-raised
                    as CacheBackendUnavailable so callers handle one type.

  ReadThroughCache  The consistency layer on top of it:
                    read()       -- hit: decode and return, source="cache"
                                    miss: run the loader, store non-empty
                                    results with a ttl, source="store"
                    invalidate() -- delete exact keys and whole prefixes after
                                    a store mutation has been acknowledged

The cache is fail-open. If Redis is down, reads fall through to the store and
invalidations are skipped with a warning naming each key; requests never fail
because of the cache. Empty results are not cached so a transient not-found is
not pinned for a full ttl.

Usage:
    backend = RedisCache.from_url("redis://127.0.0.1:6379/0")
    cache = ReadThroughCache(backend, default_ttl=300)
    result = await cache.read("posts:p1", load_post)
    await cache.invalidate(keys=["posts:p1"], prefixes=["posts:all:"])
    await backend.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.errors import CacheBackendUnavailable

logger = logging.getLogger("inkwell.cache")

SOURCE_CACHE = "cache"
SOURCE_STORE = "store"

_SCAN_CHUNK = 500


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class RedisCache:
    """Thin redis.asyncio wrapper exposing the four operations the core needs."""

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 2.0) -> RedisCache:
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheBackendUnavailable(detail=str(exc)) from exc

    async def get(self, key: str) -> str | None:
        try:
            return await self.client.get(key)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheBackendUnavailable(detail=str(exc)) from exc

    async def set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self.client.set(key, value, ex=ttl)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheBackendUnavailable(detail=str(exc)) from exc

    async def delete(self, key: str) -> int:
        try:
            return int(await self.client.delete(key) or 0)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheBackendUnavailable(detail=str(exc)) from exc

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns the number removed.

        SCAN (not KEYS) so a large keyspace does not block Redis; UNLINK in
        chunks so the memory is reclaimed off the main Redis thread.
        """
        pattern = _escape_glob(prefix) + "*"
        deleted = 0
        try:
            chunk: list[str] = []
            async for key in self.client.scan_iter(match=pattern, count=_SCAN_CHUNK):
                chunk.append(key)
                if len(chunk) >= _SCAN_CHUNK:
                    deleted += int(await self.client.unlink(*chunk) or 0)
                    chunk = []
            if chunk:
                deleted += int(await self.client.unlink(*chunk) or 0)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheBackendUnavailable(detail=str(exc)) from exc
        return deleted

    async def close(self) -> None:
        await self.client.aclose()


def _escape_glob(value: str) -> str:
    """Escape Redis MATCH metacharacters so a prefix is matched literally."""
    for ch in ("\\", "*", "?", "[", "]"):
        value = value.replace(ch, "\\" + ch)
    return value


# ---------------------------------------------------------------------------
# Consistency layer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CachedRead:
    """A read result tagged with where it came from and how long it took."""

    data: Any
    source: str
    elapsed_ms: float


def _is_empty(value: Any) -> bool:
    return not value


class ReadThroughCache:
    """Cache-aside reads and write-invalidation over a RedisCache.

    A miss that started loading before an invalidation of its key must not
    write its (possibly pre-mutation) result back afterwards. Every
    invalidate() stamps the keys and prefixes it touches with a sequence
    number; a read remembers the sequence at its start and drops its _set if
    the key or one of its prefixes was stamped later. Stamps are only needed
    while a read is in flight, so they are cleared whenever none is.
    """

    def __init__(self, backend: RedisCache, default_ttl: int = 300) -> None:
        self.backend = backend
        self.default_ttl = default_ttl
        self._seq = 0
        self._key_stamps: dict[str, int] = {}
        self._prefix_stamps: dict[str, int] = {}
        self._reads_in_flight = 0

    async def read(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        *,
        ttl: int | None = None,
        is_empty: Callable[[Any], bool] = _is_empty,
    ) -> CachedRead:
        """Cache-aside read of key. loader must return JSON-serializable data.

        Exceptions raised by the loader (e.g. ResourceNotFound) propagate and
        nothing is cached.
        """
        start = time.perf_counter()
        started_at = self._seq
        self._reads_in_flight += 1
        try:
            cached = await self._get(key)
            if cached is not None:
                logger.debug("Cache HIT: %s", key)
                return CachedRead(cached, SOURCE_CACHE, _elapsed_ms(start))

            logger.debug("Cache MISS: %s", key)
            data = await loader()
            if not is_empty(data):
                await self._set_unless_invalidated(key, data, ttl or self.default_ttl, started_at)
            return CachedRead(data, SOURCE_STORE, _elapsed_ms(start))
        finally:
            self._reads_in_flight -= 1
            if not self._reads_in_flight:
                self._key_stamps.clear()
                self._prefix_stamps.clear()

    async def invalidate(self, keys: Iterable[str] = (), prefixes: Iterable[str] = ()) -> list[str]:
        """Delete exact keys and every key under each prefix.

        Call only after the store mutation has returned. Each delete is tried
        independently; the ones that failed are logged and returned, never
        raised, and the mutation is not rolled back. Runs shielded so a client
        disconnect cannot cancel it halfway.
        """
        keys, prefixes = list(keys), list(prefixes)
        # Stamp before the first await so no in-flight read can slip a set in
        # between the mutation and the deletes.
        self._stamp(keys, prefixes)
        return await asyncio.shield(self._invalidate(keys, prefixes))

    def _stamp(self, keys: list[str], prefixes: list[str]) -> None:
        if not self._reads_in_flight:
            return
        self._seq += 1
        for key in keys:
            self._key_stamps[key] = self._seq
        for prefix in prefixes:
            self._prefix_stamps[prefix] = self._seq

    def _invalidated_since(self, key: str, seq: int) -> bool:
        if self._key_stamps.get(key, 0) > seq:
            return True
        return any(stamp > seq and key.startswith(prefix) for prefix, stamp in self._prefix_stamps.items())

    async def _set_unless_invalidated(self, key: str, data: Any, ttl: int, seq: int) -> None:
        if self._invalidated_since(key, seq):
            logger.debug("Cache SET skipped, %s was invalidated during the load", key)
            return
        await self._set(key, data, ttl)
        # An invalidation that ran while the set was in flight may have
        # deleted before the set landed.
        if self._invalidated_since(key, seq):
            try:
                await self.backend.delete(key)
            except CacheBackendUnavailable as exc:
                logger.warning("Cache invalidation skipped for key %s: %s", key, exc.detail)

    async def _invalidate(self, keys: list[str], prefixes: list[str]) -> list[str]:
        failed: list[str] = []
        removed = 0
        for key in keys:
            try:
                removed += await self.backend.delete(key)
            except CacheBackendUnavailable as exc:
                failed.append(key)
                logger.warning("Cache invalidation skipped for key %s: %s", key, exc.detail)
        for prefix in prefixes:
            try:
                removed += await self.backend.delete_prefix(prefix)
            except CacheBackendUnavailable as exc:
                failed.append(prefix + "*")
                logger.warning("Cache invalidation skipped for prefix %s*: %s", prefix, exc.detail)
        if removed:
            logger.info("Cache INVALIDATE: %d keys (%s)", removed, ", ".join(keys + [p + "*" for p in prefixes]))
        return failed

    async def _get(self, key: str) -> Any | None:
        try:
            raw = await self.backend.get(key)
        except CacheBackendUnavailable as exc:
            logger.warning("Cache get unavailable for key %s, reading from store: %s", key, exc.detail)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def _set(self, key: str, data: Any, ttl: int) -> None:
        try:
            await self.backend.set(key, json.dumps(data), ttl)
        except CacheBackendUnavailable as exc:
            logger.warning("Cache set unavailable for key %s: %s", key, exc.detail)
        else:
            logger.debug("Cache SET: %s (TTL: %ss)", key, ttl)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)
