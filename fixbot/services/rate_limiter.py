"""
Rate Limiter
Sliding-window limits per subject, with an optional Redis-backed shared view

Two windows are enforced per (kind, subject): one minute and one hour. A
separate burst detector flags subjects sending more than a handful of
messages within a few seconds.

SlidingWindowRateLimiter keeps timestamps in process memory and only protects
the current instance. DistributedRateLimiter keeps expiring counters in Redis
so every instance sees the same totals; when Redis is unreachable it falls
back to the local limiter instead of blocking traffic.
"""

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)

MINUTE = 60
HOUR = 3600


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    wait_time_seconds: Optional[int] = None
    burst_detected: bool = False
    source: str = "local"


class SlidingWindowRateLimiter:
    """
    In-memory sliding-window limiter.

    Args:
        max_per_minute: Requests allowed in any 60s window
        max_per_hour: Requests allowed in any 3600s window
        burst_window_seconds: Window of the burst detector
        burst_threshold: Burst flagged when the count in the burst window exceeds this
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        max_per_minute: int = 20,
        max_per_hour: int = 100,
        burst_window_seconds: float = 10,
        burst_threshold: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour
        self.burst_window_seconds = burst_window_seconds
        self.burst_threshold = burst_threshold
        self._clock = clock
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}

        self.allowed_count = 0
        self.denied_count = 0
        self.bursts_detected = 0

    def _window(self, subject: str, kind: str, now: float) -> Deque[float]:
        timestamps = self._windows.setdefault((kind, subject), deque())
        while timestamps and timestamps[0] <= now - HOUR:
            timestamps.popleft()
        return timestamps

    @staticmethod
    def _count_since(timestamps: Deque[float], since: float) -> Tuple[int, Optional[float]]:
        """Count timestamps newer than `since`, returning the oldest of them."""
        count = 0
        oldest = None
        for stamp in reversed(timestamps):
            if stamp <= since:
                break
            count += 1
            oldest = stamp
        return count, oldest

    def check_and_record(self, subject: str, kind: str = "message") -> RateLimitDecision:
        """
        Check both windows and record the request if allowed.

        Returns:
            RateLimitDecision; wait_time_seconds is derived from the oldest
            timestamp still inside the denying window
        """
        now = self._clock()
        timestamps = self._window(subject, kind, now)

        minute_count, oldest_in_minute = self._count_since(timestamps, now - MINUTE)
        if minute_count >= self.max_per_minute:
            wait = max(1, math.ceil(oldest_in_minute + MINUTE - now))
            return self._deny(subject, kind, f"Limit of {self.max_per_minute} messages per minute reached", wait)

        hour_count = len(timestamps)
        if hour_count >= self.max_per_hour:
            wait = max(1, math.ceil(timestamps[0] + HOUR - now))
            return self._deny(subject, kind, f"Limit of {self.max_per_hour} messages per hour reached", wait)

        timestamps.append(now)
        self.allowed_count += 1

        burst = self.is_bursting(subject, kind)
        if burst:
            self.bursts_detected += 1
            logger.warning("rate_limit_burst_detected", subject=subject, kind=kind,
                           window_seconds=self.burst_window_seconds, threshold=self.burst_threshold)

        return RateLimitDecision(allowed=True, burst_detected=burst)

    def _deny(self, subject: str, kind: str, reason: str, wait: int) -> RateLimitDecision:
        self.denied_count += 1
        logger.warning("rate_limit_exceeded", subject=subject, kind=kind, reason=reason, wait_time_seconds=wait)
        return RateLimitDecision(allowed=False, reason=reason, wait_time_seconds=wait,
                                 burst_detected=self.is_bursting(subject, kind))

    def is_bursting(self, subject: str, kind: str = "message") -> bool:
        timestamps = self._windows.get((kind, subject))
        if not timestamps:
            return False
        count, _ = self._count_since(timestamps, self._clock() - self.burst_window_seconds)
        return count > self.burst_threshold

    def prune(self) -> int:
        """
        Drop expired timestamps and forget idle subjects.

        Returns:
            Number of subjects removed
        """
        now = self._clock()
        idle = []
        for key, timestamps in self._windows.items():
            while timestamps and timestamps[0] <= now - HOUR:
                timestamps.popleft()
            if not timestamps:
                idle.append(key)
        for key in idle:
            del self._windows[key]
        if idle:
            logger.debug("rate_limiter_pruned", removed_subjects=len(idle), tracked_subjects=len(self._windows))
        return len(idle)

    def subject_stats(self, subject: str, kind: str = "message") -> Dict[str, int]:
        now = self._clock()
        timestamps = self._windows.get((kind, subject), deque())
        minute_count, _ = self._count_since(timestamps, now - MINUTE)
        hour_count, _ = self._count_since(timestamps, now - HOUR)
        return {
            "minute_count": minute_count,
            "hour_count": hour_count,
            "minute_remaining": max(0, self.max_per_minute - minute_count),
            "hour_remaining": max(0, self.max_per_hour - hour_count),
        }

    def reset(self) -> None:
        self._windows.clear()

    def stats(self) -> dict:
        return {
            "mode": "local",
            "tracked_subjects": len(self._windows),
            "tracked_requests": sum(len(t) for t in self._windows.values()),
            "allowed": self.allowed_count,
            "denied": self.denied_count,
            "bursts_detected": self.bursts_detected,
            "max_per_minute": self.max_per_minute,
            "max_per_hour": self.max_per_hour,
        }


class DistributedRateLimiter:
    """
    Redis-backed limiter with local fallback.

    Counters live under `{prefix}:{kind}:{subject}:minute|hour` and expire
    with their window, so the wait time is the counter's remaining TTL.
    Burst detection always uses the local limiter's view.

    Args:
        redis: redis.asyncio client, or None to run local-only
        local: Local limiter used for fallback and burst detection
        key_prefix: Redis key prefix
    """

    WINDOWS = (("minute", MINUTE), ("hour", HOUR))

    def __init__(self, redis, local: SlidingWindowRateLimiter, key_prefix: str = "ratelimit"):
        self.redis = redis
        self.local = local
        self.key_prefix = key_prefix
        self.fallbacks = 0

    def _key(self, subject: str, kind: str, window: str) -> str:
        return f"{self.key_prefix}:{kind}:{subject}:{window}"

    async def check_and_record(self, subject: str, kind: str = "message") -> RateLimitDecision:
        if self.redis is None:
            return self.local.check_and_record(subject, kind)

        try:
            decision = await self._check_redis(subject, kind)
        except (RedisError, OSError) as e:
            self.fallbacks += 1
            logger.warning("rate_limiter_fallback", subject=subject, kind=kind, error=str(e))
            return self.local.check_and_record(subject, kind)

        if decision.allowed:
            # Mirror into local windows so burst detection and fallback stay warm
            local_decision = self.local.check_and_record(subject, kind)
            return RateLimitDecision(allowed=True, burst_detected=local_decision.burst_detected, source="redis")
        return decision

    async def _check_redis(self, subject: str, kind: str) -> RateLimitDecision:
        limits = {"minute": self.local.max_per_minute, "hour": self.local.max_per_hour}
        keys = {window: self._key(subject, kind, window) for window, _ in self.WINDOWS}

        counts = await self.redis.mget([keys["minute"], keys["hour"]])
        for (window, seconds), raw in zip(self.WINDOWS, counts):
            count = int(raw or 0)
            if count >= limits[window]:
                ttl = await self.redis.ttl(keys[window])
                wait = ttl if ttl and ttl > 0 else seconds
                reason = f"Limit of {limits[window]} messages per {window} reached"
                logger.warning("rate_limit_exceeded", subject=subject, kind=kind, reason=reason,
                               wait_time_seconds=wait, source="redis")
                self.local.denied_count += 1
                return RateLimitDecision(allowed=False, reason=reason, wait_time_seconds=wait, source="redis")

        async with self.redis.pipeline(transaction=True) as pipe:
            for window, seconds in self.WINDOWS:
                pipe.set(keys[window], 0, ex=seconds, nx=True)
                pipe.incr(keys[window])
            await pipe.execute()

        return RateLimitDecision(allowed=True, source="redis")

    def prune(self) -> int:
        return self.local.prune()

    def stats(self) -> dict:
        data = self.local.stats()
        data.update(mode="redis" if self.redis is not None else "local", fallbacks=self.fallbacks)
        return data


__all__ = ["RateLimitDecision", "SlidingWindowRateLimiter", "DistributedRateLimiter"]
