"""Short-TTL response cache for idempotent provider calls.

Keys are derived deterministically from provider + method + normalized path
+ canonical params/body, and grouped by resource (first path segment):

    cache:{provider}:{resource}:{sha256 digest}

A mutating call invalidates every key under its resource prefix. Each
prefix carries a generation counter; a value computed from a read that
started before an invalidation is dropped instead of stored, so no stale
value can reappear after a write made through the same cache.

Backend failures never propagate: reads degrade to a miss and writes are
skipped, with a warning logged.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

KEY_PREFIX = "cache"
DEFAULT_TTL = 30
DEFAULT_MAX_KEYS = 10_000

_SLASHES = re.compile(r"/{2,}")


class _Miss:
    """Sentinel for a cache miss (``None`` is a cacheable value)."""

    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def normalize_path(path: str) -> str:
    """Strip query string, collapse slashes, force a leading and drop a trailing slash."""
    path = path.split("?", 1)[0].strip()
    path = _SLASHES.sub("/", "/" + path.lstrip("/"))
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def resource_of(path: str) -> str:
    """Resource name of a path: its first segment (``/orders/42`` -> ``orders``)."""
    segments = [s for s in normalize_path(path).split("/") if s]
    return segments[0] if segments else "_root"


def resource_prefix(provider: str, path: str) -> str:
    """Key prefix shared by every cached call on the same resource."""
    return f"{KEY_PREFIX}:{provider}:{resource_of(path)}:"


def cache_key(
    provider: str,
    method: str,
    path: str,
    params: dict[str, Any] | None = None,
    body: Any = None,
) -> str:
    """Generate a deterministic cache key for a request.

    Sorts params/body keys for consistency, then SHA256 hashes the result.
    """
    canonical = json.dumps(
        {
            "method": method.upper(),
            "path": normalize_path(path),
            "params": params or {},
            "body": body,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{resource_prefix(provider, path)}{digest[:32]}"


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class CacheBackend(Protocol):
    """Storage used by ``ResponseCache``."""

    name: str

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl: int) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...

    async def clear(self) -> None: ...


@dataclass
class CacheEntry:
    """A cached value with its storage time and TTL (seconds)."""

    key: str
    value: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


class MemoryCacheBackend:
    """Process-local cache. Expired entries are dropped lazily on read."""

    name = "memory"

    def __init__(
        self,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.max_keys = max_keys
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return MISS
        if entry.expired(self._clock()):
            del self._entries[key]
            return MISS
        return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl=ttl)
        while len(self._entries) > self.max_keys:
            self._entries.popitem(last=False)

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    async def clear(self) -> None:
        self._entries.clear()


class RedisCacheBackend:
    """Redis-backed cache (``SETEX`` per key, ``SCAN`` for prefix deletes)."""

    name = "redis"

    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> Any:
        raw = await self._redis.get(key)
        if raw is None:
            return MISS
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self._redis.setex(key, ttl, json.dumps(value, default=str))

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k async for k in self._redis.scan_iter(match=f"{prefix}*", count=500)]
        if not keys:
            return 0
        return int(await self._redis.delete(*keys))

    async def clear(self) -> None:
        await self.delete_prefix(f"{KEY_PREFIX}:")


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    stale_sets_dropped: int = 0
    invalidations: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "stale_sets_dropped": self.stale_sets_dropped,
            "invalidations": self.invalidations,
            "errors": self.errors,
            "hit_rate": self.hit_rate,
        }


class ResponseCache:
    """TTL cache with prefix invalidation and generation-guarded writes."""

    def __init__(self, backend: CacheBackend | None = None, default_ttl: int = DEFAULT_TTL) -> None:
        self.backend: CacheBackend = backend or MemoryCacheBackend()
        self.default_ttl = default_ttl
        self.stats = CacheStats()
        self._generations: dict[str, int] = {}
        self._write_lock = asyncio.Lock()

    def generation(self, key: str) -> int:
        """Sum of invalidation counters of every prefix covering ``key``.

        Counters only grow, so any invalidation that covers ``key`` changes
        this value.
        """
        return sum(n for p, n in self._generations.items() if key.startswith(p))

    async def get(self, key: str) -> Any:
        """Return the cached value or ``MISS``."""
        try:
            value = await self.backend.get(key)
        except Exception:
            self.stats.errors += 1
            self.stats.misses += 1
            logger.warning("Cache get failed for %s, treating as miss", key, exc_info=True)
            return MISS
        if value is MISS:
            self.stats.misses += 1
        else:
            self.stats.hits += 1
        return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
        *,
        generation: int | None = None,
    ) -> bool:
        """Store ``value`` under ``key``.

        Args:
            generation: Generation observed before the value was fetched. If an
                invalidation happened since, the write is dropped.

        Returns:
            True if the value was stored.
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return False
        async with self._write_lock:
            if generation is not None and generation != self.generation(key):
                self.stats.stale_sets_dropped += 1
                logger.debug("Dropping stale cache write for %s", key)
                return False
            try:
                await self.backend.set(key, value, ttl)
            except Exception:
                self.stats.errors += 1
                logger.warning("Cache set failed for %s", key, exc_info=True)
                return False
        self.stats.sets += 1
        return True

    async def invalidate(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``.

        Bumps the prefix generation first, so in-flight reads under that
        prefix cannot repopulate the cache afterwards.
        """
        async with self._write_lock:
            self._generations[prefix] = self._generations.get(prefix, 0) + 1
            self.stats.invalidations += 1
            try:
                removed = await self.backend.delete_prefix(prefix)
            except Exception:
                self.stats.errors += 1
                logger.warning("Cache invalidate failed for %s", prefix, exc_info=True)
                return 0
        if removed:
            logger.debug("Cache invalidated %s (%d keys)", prefix, removed)
        return removed

    async def invalidate_resource(self, provider: str, path: str) -> int:
        return await self.invalidate(resource_prefix(provider, path))

    async def clear(self, provider: str | None = None) -> int:
        """Drop all entries (or all entries of one provider)."""
        prefix = f"{KEY_PREFIX}:{provider}:" if provider else f"{KEY_PREFIX}:"
        return await self.invalidate(prefix)
