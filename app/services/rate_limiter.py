"""
Midnight Protocol — Sliding-window Rate Limiter

Guards the two shared external quotas of the nightly pipeline:

* ``generation`` — every ``generate`` / ``classify`` call to the LLM
* ``email``      — every outbound morning-report send

The limit is per *bucket*, not per pair or per report: the quota is shared
infrastructure, so every worker draws from the same window.

Two interchangeable implementations:

* ``RateLimiter`` keeps timestamps in an in-process map guarded by an
  ``asyncio.Lock``.  Clock and sleep are injectable so tests can construct
  isolated instances and advance time deterministically.
* ``RedisRateLimiter`` keeps the window in a Redis sorted set updated by an
  atomic Lua script, for deployments that run several worker processes.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import structlog

logger = structlog.get_logger("midnight.rate_limiter")

GENERATION_BUCKET = "generation"
EMAIL_BUCKET = "email"


@dataclass(frozen=True)
class Quota:
    limit: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"Quota limit must be >= 1, got {self.limit}")
        if self.window_seconds <= 0:
            raise ValueError(
                f"Quota window must be positive, got {self.window_seconds}"
            )


def quotas_from_settings(settings: Any) -> dict[str, Quota]:
    """Build the standard bucket map from ``Settings``."""
    return {
        GENERATION_BUCKET: Quota(
            settings.GENERATION_RATE_LIMIT, settings.GENERATION_RATE_WINDOW_SECONDS
        ),
        EMAIL_BUCKET: Quota(
            settings.EMAIL_RATE_LIMIT, settings.EMAIL_RATE_WINDOW_SECONDS
        ),
    }


class RateLimiter:
    """In-process sliding-window limiter keyed by quota bucket.

    Parameters
    ----------
    quotas:
        Bucket name -> ``Quota``.  Acquiring an unknown bucket raises
        ``KeyError``.
    clock:
        Monotonic clock returning seconds.  Defaults to ``time.monotonic``.
    sleep:
        Coroutine used to wait for capacity.  Defaults to ``asyncio.sleep``.
    """

    def __init__(
        self,
        quotas: Mapping[str, Quota],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._quotas = dict(quotas)
        self._clock = clock
        self._sleep = sleep
        self._windows: dict[str, deque[float]] = {
            bucket: deque() for bucket in self._quotas
        }
        self._lock = asyncio.Lock()
        self._total_waits: dict[str, int] = {bucket: 0 for bucket in self._quotas}

    def _quota(self, bucket: str) -> Quota:
        try:
            return self._quotas[bucket]
        except KeyError:
            raise KeyError(f"Unknown rate-limit bucket: {bucket!r}") from None

    def _prune(self, bucket: str, now: float) -> deque[float]:
        window = self._windows[bucket]
        horizon = now - self._quotas[bucket].window_seconds
        while window and window[0] <= horizon:
            window.popleft()
        return window

    def _try_take(self, bucket: str) -> float:
        """Take a slot if one is free; else return seconds until one frees.

        Must be called with ``self._lock`` held.
        """
        quota = self._quota(bucket)
        now = self._clock()
        window = self._prune(bucket, now)
        if len(window) < quota.limit:
            window.append(now)
            return 0.0
        return max(window[0] + quota.window_seconds - now, 0.0)

    async def acquire(self, bucket: str) -> None:
        """Wait until ``bucket`` has capacity, then consume one slot."""
        while True:
            async with self._lock:
                wait = self._try_take(bucket)
                if wait == 0.0:
                    return
                self._total_waits[bucket] += 1
            logger.debug("rate_limit_wait", bucket=bucket, wait_seconds=round(wait, 3))
            await self._sleep(wait)

    async def try_acquire(self, bucket: str) -> bool:
        """Consume one slot if immediately available.  Never waits."""
        async with self._lock:
            return self._try_take(bucket) == 0.0

    def snapshot(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        result: dict[str, dict[str, Any]] = {}
        for bucket, quota in self._quotas.items():
            in_window = sum(
                1 for ts in self._windows[bucket] if ts > now - quota.window_seconds
            )
            result[bucket] = {
                "limit": quota.limit,
                "window_seconds": quota.window_seconds,
                "in_window": in_window,
                "remaining": max(quota.limit - in_window, 0),
                "total_waits": self._total_waits[bucket],
            }
        return result


class RedisRateLimiter:
    """Redis sorted-set sliding window shared across worker processes.

    Same interface as ``RateLimiter``.  The check-and-add is a single Lua
    script so concurrent workers cannot both take the last slot.
    """

    # Returns {allowed (0|1), current_count, oldest_score or 0}
    SLIDING_WINDOW_LUA = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])
    local member = ARGV[4]

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    local current = redis.call('ZCARD', key)

    if current >= limit then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        local oldest_score = 0
        if #oldest > 0 then
            oldest_score = tonumber(oldest[2])
        end
        return {0, current, oldest_score}
    end

    redis.call('ZADD', key, now_ms, member)
    redis.call('PEXPIRE', key, window_ms * 2)
    return {1, current + 1, 0}
    """

    def __init__(
        self,
        redis_client: Any,
        quotas: Mapping[str, Quota],
        key_prefix: str = "midnight:ratelimit",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._redis = redis_client
        self._quotas = dict(quotas)
        self._prefix = key_prefix
        self._sleep = sleep

    def _key(self, bucket: str) -> str:
        return f"{self._prefix}:{bucket}"

    async def _eval(self, bucket: str) -> tuple[bool, int, float]:
        quota = self._quotas.get(bucket)
        if quota is None:
            raise KeyError(f"Unknown rate-limit bucket: {bucket!r}")
        now_ms = int(time.time() * 1000)
        window_ms = int(quota.window_seconds * 1000)
        result = await self._redis.eval(
            self.SLIDING_WINDOW_LUA,
            1,
            self._key(bucket),
            quota.limit,
            window_ms,
            now_ms,
            f"{now_ms}:{uuid.uuid4().hex}",
        )
        allowed = bool(int(result[0]))
        count = int(result[1])
        oldest = float(result[2]) if result[2] else 0.0
        if allowed:
            return True, count, 0.0
        retry_after_ms = (oldest + window_ms - now_ms) if oldest else window_ms
        return False, count, max(retry_after_ms, 1) / 1000.0

    async def acquire(self, bucket: str) -> None:
        while True:
            allowed, _count, wait = await self._eval(bucket)
            if allowed:
                return
            logger.debug("rate_limit_wait", bucket=bucket, wait_seconds=wait, backend="redis")
            await self._sleep(wait)

    async def try_acquire(self, bucket: str) -> bool:
        allowed, _count, _wait = await self._eval(bucket)
        return allowed

    def snapshot(self) -> dict[str, dict[str, Any]]:
        # Live counts would need a round-trip; report configuration only.
        return {
            bucket: {
                "limit": quota.limit,
                "window_seconds": quota.window_seconds,
                "backend": "redis",
            }
            for bucket, quota in self._quotas.items()
        }
