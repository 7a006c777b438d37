"""
Fixed-window rate limiting with an injectable counter store.

═══════════════════════════════════════════════════════════════════════════
COUNTER STORES
═══════════════════════════════════════════════════════════════════════════

Each server instance must see the same attempt counts, otherwise a
horizontally-scaled deployment multiplies the effective limit by the
number of instances. The limiter therefore never owns its counters; it
talks to a CounterStore:

    Store                   Scope                 Expiry
    ────────────────────    ──────────────────    ─────────────────────
    InMemoryCounterStore    single process        evicted on access / purge()
    RedisCounterStore       shared by instances   Redis EXPIRE on the key

Window semantics (fixed window):

    first hit at t0   → counter = 1, window closes at t0 + window
    hits before close → counter += 1; allowed while counter ≤ max
    first hit ≥ close → counter resets to 1, new window
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from safehaven.core.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate-limit check."""
    allowed: bool
    attempts: int
    remaining: int
    reset_in_seconds: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "allowed": self.allowed,
            "attempts": self.attempts,
            "remaining": self.remaining,
            "reset_in_seconds": round(self.reset_in_seconds, 1),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Counter Stores
# ═══════════════════════════════════════════════════════════════════════════

class CounterStore(abc.ABC):
    """Shared, expiring counters keyed by identifier."""

    @abc.abstractmethod
    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Increment ``key``; return (count in window, seconds until reset)."""

    @abc.abstractmethod
    async def reset(self, key: str) -> None:
        """Drop the counter for ``key``."""


class InMemoryCounterStore(CounterStore):
    """Process-local counters with explicit expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}  # key -> (count, expires_at)
        self._lock = asyncio.Lock()

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        async with self._lock:
            now = self._clock()
            count, expires_at = self._windows.get(key, (0, 0.0))
            if now >= expires_at:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, expires_at)
            return count, expires_at - now

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)

    async def purge(self) -> int:
        """Evict every expired window. Returns the number evicted."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._windows.items() if now >= exp]
            for key in expired:
                del self._windows[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


class RedisCounterStore(CounterStore):
    """Counters shared across server instances via Redis INCR + EXPIRE."""

    def __init__(self, client, prefix: str = "safehaven:ratelimit"):
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        redis_key = self._key(key)
        count = await self._client.incr(redis_key)
        if count == 1:
            await self._client.expire(redis_key, window_seconds)
        ttl = await self._client.ttl(redis_key)
        if ttl is None or ttl < 0:
            # Key lost its expiry (e.g. crash between INCR and EXPIRE)
            await self._client.expire(redis_key, window_seconds)
            ttl = window_seconds
        return int(count), float(ttl)

    async def reset(self, key: str) -> None:
        await self._client.delete(self._key(key))


# ═══════════════════════════════════════════════════════════════════════════
# Limiter
# ═══════════════════════════════════════════════════════════════════════════

class RateLimiter:
    """
    Fixed-window limiter.

    Usage:
        limiter = RateLimiter(InMemoryCounterStore(), max_attempts=10, window_seconds=300)
        result = await limiter.check("actor-1")
        await limiter.enforce("actor-1")   # raises RateLimitError
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        max_attempts: int = 60,
        window_seconds: int = 60,
        scope: str = "default",
    ):
        if max_attempts < 1 or window_seconds < 1:
            raise ValueError("max_attempts and window_seconds must be positive")
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.scope = scope

    async def check(self, identifier: str) -> RateLimitResult:
        count, reset_in = await self.store.hit(f"{self.scope}:{identifier}", self.window_seconds)
        return RateLimitResult(
            allowed=count <= self.max_attempts,
            attempts=count,
            remaining=max(0, self.max_attempts - count),
            reset_in_seconds=reset_in,
        )

    async def enforce(self, identifier: str) -> RateLimitResult:
        result = await self.check(identifier)
        if not result.allowed:
            logger.warning(
                "Rate limit exceeded for %s (%d/%d, resets in %.0fs)",
                identifier, result.attempts, self.max_attempts, result.reset_in_seconds,
            )
            raise RateLimitError(
                f"Too many requests. Try again in {max(1, int(result.reset_in_seconds))} seconds",
                retry_after=max(1, int(result.reset_in_seconds)),
            )
        return result

    async def reset(self, identifier: str) -> None:
        await self.store.reset(f"{self.scope}:{identifier}")


def build_counter_store(backend: str, redis_client=None) -> CounterStore:
    """Select a counter store from configuration."""
    if backend == "redis":
        if redis_client is None:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires a Redis client")
        return RedisCounterStore(redis_client)
    if backend != "memory":
        raise ValueError(f"Unknown rate limit backend: {backend}")
    return InMemoryCounterStore()
