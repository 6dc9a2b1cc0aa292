# =============================================================================
# TTL Caches — Answer Cache and Generic Expiring Map
# =============================================================================
#
# TTLCache is a lock-guarded key → value map whose entries expire after a
# fixed time-to-live. It backs both the vector store cache (vectorstore.py)
# and the in-memory answer cache.
#
# The answer cache is pluggable:
#   ResultCache (Protocol)
#   ├── MemoryResultCache — TTLCache in this process (default)
#   └── RedisResultCache  — shared across processes via redis.asyncio
#   create_result_cache() — factory, reads settings.result_cache_backend
#
# A TTL of 0 disables a cache: every read is a miss and writes are dropped.
#
# The Redis backend degrades gracefully: if Redis is unreachable the read
# is treated as a miss and the write is skipped (logged as a warning).
# =============================================================================

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Generic, Protocol, TypeVar

from citesearch.config import settings
from citesearch.models.responses import SearchResult

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Thread-safe expiring map.

    Expired entries are treated as absent on read and removed lazily.
    When `max_entries` is set and the map grows past it, a write
    evicts every expired entry.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[float, V]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    def get(self, key: str) -> V | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self._ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = (self._clock(), value)
            if self._max_entries is not None and len(self._entries) > self._max_entries:
                self._prune_locked()

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def prune(self) -> int:
        """Drop expired entries, returning how many were removed."""
        with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> int:
        now = self._clock()
        expired = [
            key for key, (stored_at, _) in self._entries.items()
            if now - stored_at >= self._ttl
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


# ---------------------------------------------------------------------------
# Answer cache
# ---------------------------------------------------------------------------


class ResultCache(Protocol):
    """Storage for completed SearchResults, keyed by request key."""

    async def get(self, key: str) -> SearchResult | None: ...

    async def set(self, key: str, result: SearchResult) -> None: ...


class MemoryResultCache:
    """ResultCache held in this process."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: TTLCache[SearchResult] = TTLCache(
            ttl_seconds, max_entries=max_entries, clock=clock,
        )

    async def get(self, key: str) -> SearchResult | None:
        result = self._cache.get(key)
        # Each hit is a private copy, like a Redis hit
        return result.model_copy(deep=True) if result is not None else None

    async def set(self, key: str, result: SearchResult) -> None:
        self._cache.set(key, result.model_copy(deep=True))

    def __len__(self) -> int:
        return len(self._cache)


class RedisResultCache:
    """ResultCache stored in Redis as JSON with a server-side expiry."""

    def __init__(
        self,
        ttl_seconds: float,
        redis_url: str | None = None,
        client=None,
        key_prefix: str = "citesearch:answer:",
    ) -> None:
        self._ttl = ttl_seconds
        self._redis_url = redis_url or settings.redis_url
        self._client = client
        self._prefix = key_prefix

    def _get_client(self):
        """Lazily create and cache the async Redis client."""
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(
                self._redis_url, decode_responses=True,
            )
        return self._client

    async def get(self, key: str) -> SearchResult | None:
        if self._ttl <= 0:
            return None
        try:
            payload = await self._get_client().get(self._prefix + key)
        except Exception as e:
            logger.warning("Answer cache unavailable (Redis error): %s", e)
            return None
        if payload is None:
            return None
        return SearchResult.model_validate_json(payload)

    async def set(self, key: str, result: SearchResult) -> None:
        if self._ttl <= 0:
            return
        try:
            await self._get_client().set(
                self._prefix + key,
                result.model_dump_json(),
                ex=max(1, int(self._ttl)),
            )
        except Exception as e:
            logger.warning("Failed to write answer cache (Redis error): %s", e)


def create_result_cache(
    backend: str | None = None,
    ttl_seconds: float | None = None,
    max_entries: int | None = None,
    redis_url: str | None = None,
) -> MemoryResultCache | RedisResultCache:
    """Build the answer cache selected in settings."""
    backend = backend or settings.result_cache_backend
    ttl = settings.result_cache_ttl_seconds if ttl_seconds is None else ttl_seconds

    if backend == "redis":
        logger.info("Using Redis answer cache (ttl=%ss)", ttl)
        return RedisResultCache(ttl, redis_url=redis_url)

    logger.info("Using in-memory answer cache (ttl=%ss)", ttl)
    return MemoryResultCache(
        ttl, max_entries=max_entries or settings.result_cache_max_entries,
    )
