# =============================================================================
# Unit Tests — TTL Caches
# =============================================================================
#
# Test groups:
#   1. TTLCache (expiry, disabled when ttl=0, pruning)
#   2. MemoryResultCache
#   3. RedisResultCache with a mocked client (no Redis server needed)
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from citesearch.models.responses import SearchResult, SourceItem
from citesearch.services.cache import (
    MemoryResultCache,
    RedisResultCache,
    TTLCache,
    create_result_cache,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _result(answer: str = "Grace abounds[1].") -> SearchResult:
    return SearchResult(
        question="What is grace?",
        answer=answer,
        sources=[SourceItem(index=1, display_name="Institutes", document_handle="file-a")],
        language="en",
    )


# ---------------------------------------------------------------------------
# 1. TTLCache
# ---------------------------------------------------------------------------


class TestTTLCache:

    def test_hit_within_ttl(self):
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(10, clock=clock)
        cache.set("k", "v")
        clock.now = 9.9
        assert cache.get("k") == "v"
        assert "k" in cache

    def test_miss_at_and_after_ttl(self):
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(10, clock=clock)
        cache.set("k", "v")
        clock.now = 10
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_zero_ttl_disables(self):
        cache: TTLCache[str] = TTLCache(0)
        cache.set("k", "v")
        assert not cache.enabled
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_overwrite_refreshes_timestamp(self):
        clock = FakeClock()
        cache: TTLCache[str] = TTLCache(10, clock=clock)
        cache.set("k", "old")
        clock.now = 8
        cache.set("k", "new")
        clock.now = 15
        assert cache.get("k") == "new"

    def test_prune_past_max_entries(self):
        clock = FakeClock()
        cache: TTLCache[int] = TTLCache(10, max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        clock.now = 20
        cache.set("c", 3)
        assert len(cache) == 1
        assert cache.get("c") == 3

    def test_prune_keeps_fresh_entries(self):
        clock = FakeClock()
        cache: TTLCache[int] = TTLCache(10, max_entries=1, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert len(cache) == 2

    def test_delete_and_clear(self):
        cache: TTLCache[int] = TTLCache(10)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0


# ---------------------------------------------------------------------------
# 2. MemoryResultCache
# ---------------------------------------------------------------------------


class TestMemoryResultCache:

    def test_round_trip_and_expiry(self):
        async def scenario():
            clock = FakeClock()
            cache = MemoryResultCache(30, clock=clock)
            await cache.set("key", _result())
            hit = await cache.get("key")
            clock.now = 31
            return hit, await cache.get("key")

        hit, expired = _run(scenario())
        assert hit.answer == "Grace abounds[1]."
        assert expired is None

    def test_hits_do_not_share_state(self):
        async def scenario():
            cache = MemoryResultCache(30)
            stored = _result()
            await cache.set("key", stored)
            stored.sources.clear()

            first = await cache.get("key")
            first.sources.append(
                SourceItem(index=2, display_name="Injected", document_handle=None),
            )
            return await cache.get("key")

        second = _run(scenario())
        assert [s.display_name for s in second.sources] == ["Institutes"]

    def test_factory_defaults_to_memory(self):
        cache = create_result_cache("memory", 60, max_entries=5)
        assert isinstance(cache, MemoryResultCache)


# ---------------------------------------------------------------------------
# 3. RedisResultCache
# ---------------------------------------------------------------------------


class TestRedisResultCache:

    def test_set_serializes_with_expiry(self):
        client = AsyncMock()
        cache = RedisResultCache(1800, client=client)

        _run(cache.set("en||what is grace?", _result()))

        key, payload = client.set.call_args.args
        assert key == "citesearch:answer:en||what is grace?"
        assert client.set.call_args.kwargs["ex"] == 1800
        assert SearchResult.model_validate_json(payload).sources[0].display_name == "Institutes"

    def test_get_deserializes(self):
        client = AsyncMock()
        client.get.return_value = _result().model_dump_json()
        cache = RedisResultCache(1800, client=client)

        result = _run(cache.get("k"))

        assert result.answer == "Grace abounds[1]."
        assert result.sources[0].document_handle == "file-a"

    def test_miss(self):
        client = AsyncMock()
        client.get.return_value = None
        assert _run(RedisResultCache(1800, client=client).get("k")) is None

    def test_redis_down_is_a_miss(self):
        client = AsyncMock()
        client.get.side_effect = ConnectionError("connection refused")
        client.set.side_effect = ConnectionError("connection refused")
        cache = RedisResultCache(1800, client=client)

        assert _run(cache.get("k")) is None
        _run(cache.set("k", _result()))  # must not raise

    def test_zero_ttl_skips_redis(self):
        client = AsyncMock()
        cache = RedisResultCache(0, client=client)

        _run(cache.set("k", _result()))
        assert _run(cache.get("k")) is None
        client.set.assert_not_called()
        client.get.assert_not_called()

    def test_factory_selects_redis(self):
        cache = create_result_cache("redis", 60, redis_url="redis://localhost:6379/9")
        assert isinstance(cache, RedisResultCache)
