"""Per-client HTTP throttle for the purchase endpoints (Redis, in-process fallback)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Tuple

from fastapi import Request
import redis.asyncio as redis

from config import settings
from services.errors import RateLimitedError

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        for stale_key in [k for k, (_, expires_at) in _local_counters.items() if expires_at <= now]:
            del _local_counters[stale_key]
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        _local_counters[key] = (count + 1, reset_at)
        return count + 1 <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return current <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], Awaitable[None]]:
    """Return a FastAPI dependency allowing ``limit`` calls per client per window."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ledger:rate:{prefix}:{_client_identifier(request)}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except Exception as exc:
            logger.debug("Redis throttle unavailable, using local counters: %s", exc)
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise RateLimitedError(
                f"Rate limit exceeded for {prefix}. Try again later.",
                reason="throttled",
                retry_after_seconds=window_seconds,
            )

    return _dependency
