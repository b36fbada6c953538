"""Redis client and per-account rate limiting."""
from __future__ import annotations

import time

import redis.asyncio as redis
from fastapi import HTTPException, status

from src.core.config import settings

_redis_client: redis.Redis | None = None


async def get_redis_client() -> redis.Redis:
    """Return a cached Redis client instance."""

    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            str(settings.REDIS_URI), decode_responses=True
        )
    return _redis_client


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


async def check_rate_limit(account_id: str) -> None:
    """Enforce a simple fixed-window rate limit per account."""

    client = await get_redis_client()
    minute_window = int(time.time() // 60)
    key = f"rl:{account_id}:{minute_window}"
    current = await client.incr(key)
    if current == 1:
        await client.expire(key, 60)
    if current > settings.limits.rate_limit_rpm:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
        )
