# infra/ratelimit.py
from __future__ import annotations
import os
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import redis.asyncio as redis

BACKEND = os.getenv("RATELIMIT_BACKEND", "memory").lower()  # 'redis' | 'memory'


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: int


@dataclass
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: float  # epoch seconds when the window closes

    def retry_after(self) -> int:
        return max(1, int(self.reset - time.time() + 0.999))


RATE_LIMITS: Dict[str, RateLimitRule] = {
    "create_payment": RateLimitRule(5, 60),
    "voucher_use": RateLimitRule(3, 60),
    "cleanup_expired": RateLimitRule(10, 60),
    "default": RateLimitRule(20, 60),
}


# ---- keys
def k_window(scope: str, identifier: str, window_start: int) -> str:
    return f"rl:{scope}:{identifier}:{window_start}"


class MemoryRateLimiter:
    """Fixed-window counter kept in process memory (single worker)."""

    def __init__(self) -> None:
        self._windows: Dict[Tuple[str, str], Tuple[int, float]] = {}

    async def hit(self, scope: str, identifier: str,
                  rule: RateLimitRule) -> RateLimitResult:
        now = time.time()
        key = (scope, identifier)
        count, reset = self._windows.get(key, (0, 0.0))
        if reset <= now:
            count, reset = 0, now + rule.window_seconds
        count += 1
        self._windows[key] = (count, reset)
        self._evict(now)
        return RateLimitResult(
            success=count <= rule.max_requests,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - count),
            reset=reset,
        )

    def _evict(self, now: float) -> None:
        if len(self._windows) < 10_000:
            return
        for k in [k for k, (_, r) in self._windows.items() if r <= now]:
            del self._windows[k]

    def reset(self) -> None:
        self._windows.clear()


class RedisRateLimiter:
    """Fixed-window counter shared by all workers through Redis."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def hit(self, scope: str, identifier: str,
                  rule: RateLimitRule) -> RateLimitResult:
        now = time.time()
        window_start = int(now // rule.window_seconds) * rule.window_seconds
        key = k_window(scope, identifier, window_start)
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, rule.window_seconds + 1)
        count, _ = await pipe.execute()
        count = int(count)
        return RateLimitResult(
            success=count <= rule.max_requests,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - count),
            reset=float(window_start + rule.window_seconds),
        )


def new_limiter(*, r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("RateLimiter(redis) requires r=redis.Redis")
        return RedisRateLimiter(r)
    return MemoryRateLimiter()


__all__ = [
    "RateLimitRule", "RateLimitResult", "RATE_LIMITS", "MemoryRateLimiter",
    "RedisRateLimiter", "new_limiter", "BACKEND",
]
