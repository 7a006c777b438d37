"""
Redis connection layer — lazily created async client shared by the
Redis-backed rate-limit counters and the Redis notification bus.

Provides:
    • Async connection pool created on first use
    • JSON helpers for payloads crossing Redis
    • Explicit close for application shutdown

Usage:
    from safehaven.core.redis_pool import get_redis

    client = await get_redis()
    if client is not None:
        await client.incr("ratelimit:actor-1")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

from safehaven.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client, initialised on first use
_redis_client: Optional[aioredis.Redis] = None


async def get_redis(url: Optional[str] = None) -> Optional[aioredis.Redis]:
    """Get or create the async Redis client. Returns None if unavailable."""
    global _redis_client
    if _redis_client is None:
        target = url or settings.REDIS_URL
        try:
            _redis_client = aioredis.from_url(
                target,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis client created: %s", target.split("@")[-1])
        except Exception as e:
            logger.warning("Redis unavailable: %s", e)
            return None
    return _redis_client


def dumps(value: Any) -> str:
    """Serialise a payload for Redis (datetimes become ISO strings)."""
    return json.dumps(value, default=str, sort_keys=True)


def loads(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


async def ping(client: aioredis.Redis) -> bool:
    """True if Redis answers PING."""
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.warning("Redis PING failed: %s", e)
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
