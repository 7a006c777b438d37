"""
test_rate_limit.py — Fixed-window limiter and its counter stores.

Run with:
    pytest tests/test_rate_limit.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from safehaven.core.errors import RateLimitError
from safehaven.core.rate_limit import (
    InMemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
    build_counter_store,
)


class _FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_limiter(max_attempts: int = 3, window: int = 60):
    clock = _FakeClock()
    store = InMemoryCounterStore(clock=clock)
    return RateLimiter(store, max_attempts=max_attempts, window_seconds=window, scope="test"), store, clock


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Limiter over in-memory counters
# ═══════════════════════════════════════════════════════════════════════════

class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_allows_up_to_max(self):
        limiter, _, _ = _make_limiter()
        results = [await limiter.check("actor-1") for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    @pytest.mark.asyncio
    async def test_window_resets(self):
        limiter, _, clock = _make_limiter(max_attempts=1, window=10)
        assert (await limiter.check("a")).allowed
        assert not (await limiter.check("a")).allowed
        clock.advance(10)
        result = await limiter.check("a")
        assert result.allowed
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(self):
        limiter, _, _ = _make_limiter(max_attempts=1)
        await limiter.check("a")
        assert (await limiter.check("b")).allowed

    @pytest.mark.asyncio
    async def test_enforce_raises_with_retry_after(self):
        limiter, _, clock = _make_limiter(max_attempts=1, window=30)
        await limiter.enforce("a")
        clock.advance(10)
        with pytest.raises(RateLimitError) as exc_info:
            await limiter.enforce("a")
        assert exc_info.value.status_code == 429
        assert exc_info.value.details["retry_after_seconds"] == 20

    @pytest.mark.asyncio
    async def test_reset(self):
        limiter, _, _ = _make_limiter(max_attempts=1)
        await limiter.check("a")
        await limiter.reset("a")
        assert (await limiter.check("a")).allowed

    @pytest.mark.asyncio
    async def test_purge_evicts_expired(self):
        limiter, store, clock = _make_limiter(window=10)
        await limiter.check("a")
        clock.advance(5)
        await limiter.check("b")
        clock.advance(6)
        assert await store.purge() == 1
        assert len(store) == 1

    def test_rejects_bad_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(InMemoryCounterStore(), max_attempts=0)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Redis counters
# ═══════════════════════════════════════════════════════════════════════════

class TestRedisCounterStore:

    @pytest.mark.asyncio
    async def test_first_hit_sets_expiry(self):
        client = AsyncMock()
        client.incr.return_value = 1
        client.ttl.return_value = 60
        store = RedisCounterStore(client, prefix="rl")

        assert await store.hit("api:a", 60) == (1, 60.0)
        client.incr.assert_awaited_once_with("rl:api:a")
        client.expire.assert_awaited_once_with("rl:api:a", 60)

    @pytest.mark.asyncio
    async def test_repairs_missing_ttl(self):
        client = AsyncMock()
        client.incr.return_value = 4
        client.ttl.return_value = -1
        store = RedisCounterStore(client, prefix="rl")

        assert await store.hit("k", 30) == (4, 30.0)
        client.expire.assert_awaited_once_with("rl:k", 30)

    @pytest.mark.asyncio
    async def test_reset_deletes_key(self):
        client = AsyncMock()
        await RedisCounterStore(client, prefix="rl").reset("k")
        client.delete.assert_awaited_once_with("rl:k")

    def test_factory(self):
        assert isinstance(build_counter_store("memory"), InMemoryCounterStore)
        assert isinstance(build_counter_store("redis", AsyncMock()), RedisCounterStore)
        with pytest.raises(ValueError):
            build_counter_store("redis")
