"""Cache backend client -- Redis in production, in-process TTL cache otherwise.

Both backends speak the same small async surface (get / setex / delete /
delete_matching / ping) so ContentCache never needs to know which one is
behind it.  Values are opaque strings; serialisation is the caller's job.
"""

import fnmatch
import logging
import time
from typing import Callable, Protocol

import redis.asyncio as aioredis
from cachetools import TLRUCache

from app.config import settings

logger = logging.getLogger(__name__)

# Keys removed per DEL round-trip when invalidating by pattern
SCAN_BATCH_SIZE = 500


class CacheBackend(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def setex(self, key: str, ttl: int, value: str) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def delete_matching(self, pattern: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisCacheBackend:
    """Thin wrapper over ``redis.asyncio`` using SETEX and incremental SCAN."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        await self._client.setex(key, ttl, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._client.delete(*keys)

    async def delete_matching(self, pattern: str) -> int:
        """Delete every key matching *pattern*.

        Walks the keyspace with SCAN MATCH (never KEYS) so a large cache
        does not block the server, deleting in batches as it goes.
        """
        removed = 0
        batch: list[str] = []
        async for key in self._client.scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
            batch.append(key)
            if len(batch) >= SCAN_BATCH_SIZE:
                removed += await self._client.delete(*batch)
                batch = []
        if batch:
            removed += await self._client.delete(*batch)
        return removed

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class MemoryCacheBackend:
    """Per-process cache with per-entry TTL (``cachetools.TLRUCache``).

    Entries are stored as ``(value, ttl)`` so the time-to-use function can
    expire each one on its own schedule.  Only suitable for a single worker.
    """

    def __init__(
        self,
        maxsize: int = 4096,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TLRUCache[str, tuple[str, int]] = TLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, entry, now: now + entry[1],
            timer=timer,
        )

    async def get(self, key: str) -> str | None:
        entry = self._cache.get(key)
        return entry[0] if entry is not None else None

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._cache[key] = (value, ttl)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._cache.pop(key, None) is not None:
                removed += 1
        return removed

    async def delete_matching(self, pattern: str) -> int:
        self._cache.expire()
        matches = [key for key in list(self._cache.keys()) if fnmatch.fnmatchcase(key, pattern)]
        return await self.delete(*matches)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._cache.clear()


# ── Shared backend handle (created once per process) ────────────────────────

_backend: CacheBackend | None = None


def get_cache_backend() -> CacheBackend:
    """Return (or create) the process-wide cache backend."""
    global _backend
    if _backend is None:
        if settings.REDIS_URL:
            _backend = RedisCacheBackend.from_url(settings.REDIS_URL)
            logger.info("Content cache backed by Redis.")
        else:
            _backend = MemoryCacheBackend(maxsize=settings.CACHE_MEMORY_MAXSIZE)
            logger.warning("REDIS_URL not set — using in-process content cache.")
    return _backend


async def close_client() -> None:
    """Close the shared cache backend.  Called during app shutdown."""
    global _backend
    if _backend is not None:
        await _backend.close()
        _backend = None
