"""Rate limiting dependency backed by an injectable limiter."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)

# (limit, window_seconds)
RATE_LIMIT_PRESETS: Dict[str, Tuple[int, int]] = {
    "song_creation": (5, 60),
    "default": (30, 60),
    "read": (60, 60),
    "webhook": (10, 60),
}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter(ABC):
    @abstractmethod
    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        ...

    async def backend_status(self) -> str:
        return "local"


class InMemoryRateLimiter(RateLimiter):
    """Fixed-window counters for a single process."""

    def __init__(self, sweep_interval_seconds: float = 60.0, clock: Callable[[], float] = time.time):
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        expired = [key for key, (_, reset_at) in self._counters.items() if reset_at <= now]
        for key in expired:
            del self._counters[key]
        self._last_sweep = now

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        now = self._clock()
        async with self._lock:
            self._sweep(now)
            count, reset_at = self._counters.get(key, (0, now + window_seconds))
            if now >= reset_at:
                count = 0
                reset_at = now + window_seconds
            count += 1
            self._counters[key] = (count, reset_at)
        return RateLimitDecision(allowed=count <= limit, remaining=max(limit - count, 0), reset_at=reset_at)

    def clear(self) -> None:
        self._counters.clear()

    def __len__(self) -> int:
        return len(self._counters)


class RedisRateLimiter(RateLimiter):
    """Shared counters via INCR/EXPIRE; falls back to memory when redis is down."""

    def __init__(self, redis_url: str, fallback: Optional[InMemoryRateLimiter] = None):
        self.redis_url = redis_url
        self.fallback = fallback or InMemoryRateLimiter()

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        try:
            redis_client = redis.from_url(self.redis_url, decode_responses=True)
            try:
                current = await redis_client.incr(key)
                if current == 1:
                    await redis_client.expire(key, window_seconds)
                ttl = await redis_client.ttl(key)
            finally:
                await redis_client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("Redis rate limiter unavailable, using local counters: %s", exc)
            return await self.fallback.check(key, limit, window_seconds)

        reset_at = time.time() + (ttl if ttl and ttl > 0 else window_seconds)
        return RateLimitDecision(allowed=current <= limit, remaining=max(limit - current, 0), reset_at=reset_at)

    async def backend_status(self) -> str:
        try:
            redis_client = redis.from_url(self.redis_url)
            try:
                await redis_client.ping()
            finally:
                await redis_client.aclose()
        except (RedisError, OSError) as exc:
            return f"down: {exc}"
        return "up"


def build_rate_limiter() -> RateLimiter:
    if (settings.RATE_LIMIT_BACKEND or "").strip().lower() == "redis":
        return RedisRateLimiter(settings.REDIS_URL)
    return InMemoryRateLimiter()


def _client_identifier(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _limiter_for(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = build_rate_limiter()
        request.app.state.rate_limiter = limiter
    return limiter


def rate_limit(prefix: str, limit: Optional[int] = None, window_seconds: Optional[int] = None) -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces per-client request quotas.

    ``prefix`` doubles as a preset name when limit/window are omitted.
    """
    preset_limit, preset_window = RATE_LIMIT_PRESETS.get(prefix, RATE_LIMIT_PRESETS["default"])
    effective_limit = int(limit if limit is not None else preset_limit)
    effective_window = int(window_seconds if window_seconds is not None else preset_window)

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{settings.RATE_LIMIT_PREFIX}:{prefix}:{_client_identifier(request)}"
        decision = await _limiter_for(request).check(key, effective_limit, effective_window)
        if not decision.allowed:
            retry_after = max(int(math.ceil(decision.reset_at - time.time())), 1)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
