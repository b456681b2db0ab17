"""Per-caller request quotas for the metering endpoints.

Counters live in Redis so every API worker shares them; when Redis is
unreachable each worker falls back to its own in-process counters.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings
from services.session_token import authenticate


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    retry_after: int


def _caller_identifier(request: Request) -> str:
    """Prefer the authenticated user so one user's tabs share a quota."""
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        try:
            return f"user:{authenticate(authorization[7:])}"
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "unknown"


async def _redis_quota(key: str, limit: int, window_seconds: int) -> QuotaDecision:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = await pipe.execute()
        if ttl is None or int(ttl) < 0:
            await client.expire(key, window_seconds)
            ttl = window_seconds
    finally:
        await client.aclose()
    return QuotaDecision(allowed=int(count) <= limit, retry_after=max(int(ttl), 1))


async def _local_quota(key: str, limit: int, window_seconds: int) -> QuotaDecision:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
    return QuotaDecision(allowed=count <= limit, retry_after=max(int(reset_at - now), 1))


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Return a FastAPI dependency allowing ``limit`` calls per caller per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"lexora:rate:{prefix}:{_caller_identifier(request)}"
        try:
            decision = await _redis_quota(key, limit, window_seconds)
        except (redis.RedisError, OSError):
            decision = await _local_quota(key, limit, window_seconds)

        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail={
                    "code": "RATE_LIMITED",
                    "error": f"Too many {prefix} requests. Try again later.",
                    "retry_after": decision.retry_after,
                },
                headers={"Retry-After": str(decision.retry_after)},
            )

    return _dependency
