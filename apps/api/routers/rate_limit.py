"""Redis-backed rate limiting dependency with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings


logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds)
    finally:
        await redis_client.aclose()
    return current <= limit


def rate_limit(
    prefix: str,
    limit: int,
    window_seconds: int,
    key_func: Optional[Callable[[Request], str]] = None,
) -> Callable[[Request], object]:
    """Return a FastAPI dependency that enforces per-client request quotas."""
    identify = key_func or client_identifier

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"typix:rate:{prefix}:{identify(request)}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.debug("Redis rate limit unavailable, using local quota: %s", exc)
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
