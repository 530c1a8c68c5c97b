"""Per-user request quotas.

Authenticated calls are counted against the session's user, anonymous calls
against the client address. Counters live in Redis; when Redis is unreachable
each process falls back to its own in-memory windows.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from services.session_token import read_session

logger = logging.getLogger(__name__)

KEY_PREFIX = "studio:quota"

# key -> (calls in window, window end)
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _quota_subject(request: Request) -> str:
    authorization = request.headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            return f"user:{read_session(token.strip()).user_id}"
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    now = time.time()
    async with _local_lock:
        count, window_ends = _local_counters.get(key, (0, now + window_seconds))
        if now >= window_ends:
            count, window_ends = 0, now + window_seconds
        _local_counters[key] = (count + 1, window_ends)
    return count + 1 <= limit, max(math.ceil(window_ends - now), 1)


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            current, ttl = await pipe.execute()
        if ttl is None or int(ttl) < 0:
            await client.expire(key, window_seconds)
            ttl = window_seconds
    finally:
        await client.aclose()
    return int(current) <= limit, max(int(ttl), 1)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], Awaitable[None]]:
    """Dependency factory: at most ``limit`` calls per user (or address) per window."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        key = f"{KEY_PREFIX}:{prefix}:{_quota_subject(request)}"
        try:
            allowed, retry_after = await _consume_redis_quota(key, limit, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Redis unavailable for quota %s: %s", prefix, exc)
            allowed, retry_after = await _consume_local_quota(key, limit, window_seconds)
        if not allowed:
            logger.info("Quota exhausted prefix=%s key=%s", prefix, key)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
