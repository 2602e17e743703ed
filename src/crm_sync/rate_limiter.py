"""Per-connection rate limiting for outbound provider calls.

Two buckets must both admit a request:
- TokenBucket: in-process per-second bucket (capacity + refill rate)
- Day bucket: optional per-day counter in Redis keyed by UTC date, shared
  across processes and surviving restarts within the day

acquire() suspends until admitted or until max_wait would be exceeded, in
which case it raises Backpressure. A provider 429 calls penalize(), which
empties the bucket and pushes the next refill out by retry_after.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Protocol

import structlog

from src.crm_sync.config import get_settings
from src.crm_sync.core.monitoring import rate_limiter_backpressure_total, rate_limiter_wait_seconds
from src.crm_sync.errors import Backpressure
from src.crm_sync.schemas import RateLimitConfig

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


# ── Day counter ─────────────────────────────────────────────────────────────


class DayCounter(Protocol):
    """Shared counter backing the per-day bucket."""

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def decr(self, key: str) -> None: ...


class RedisDayCounter:
    """Day bucket counter on Redis INCR with a 2-day expiry."""

    def __init__(self, redis) -> None:
        self._redis = redis

    async def incr(self, key: str, ttl_seconds: int) -> int:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def decr(self, key: str) -> None:
        await self._redis.decr(key)


# ── Token bucket ────────────────────────────────────────────────────────────


class TokenBucket:
    """Refilling token bucket. Waiters are served in arrival order."""

    def __init__(self, capacity: int, refill_per_second: float, clock: Clock) -> None:
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._blocked_until = 0.0
        self.lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        start = max(self._updated, self._blocked_until)
        if now > start:
            self._tokens = min(
                float(self.capacity),
                self._tokens + (now - start) * self.refill_per_second,
            )
        self._updated = max(now, self._updated)

    def try_take(self) -> float:
        """Take a token if available. Returns 0.0 on success, else seconds to wait."""
        now = self._clock()
        self._refill(now)
        if now < self._blocked_until:
            return self._blocked_until - now
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / self.refill_per_second

    def block_for(self, seconds: float) -> None:
        now = self._clock()
        self._refill(now)
        self._tokens = 0.0
        self._blocked_until = max(self._blocked_until, now + seconds)
        self._updated = now

    def reconfigure(self, capacity: int, refill_per_second: float) -> None:
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self._tokens = min(self._tokens, float(capacity))


# ── Limiter ─────────────────────────────────────────────────────────────────


class RateLimiter:
    """Admission control keyed by connection id.

    Args:
        day_counter: Shared counter for day buckets (None disables them).
        max_wait: Default ceiling on time spent waiting for admission.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep, injectable for tests.
    """

    def __init__(
        self,
        day_counter: DayCounter | None = None,
        *,
        max_wait: float | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._day_counter = day_counter
        self._max_wait = max_wait if max_wait is not None else get_settings().RATE_LIMIT_MAX_WAIT
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket] = {}

    def _bucket(self, connection_id: str, config: RateLimitConfig) -> TokenBucket:
        bucket = self._buckets.get(connection_id)
        if bucket is None:
            bucket = TokenBucket(config.capacity, config.requests_per_second, self._clock)
            self._buckets[connection_id] = bucket
        elif (
            bucket.capacity != config.capacity
            or bucket.refill_per_second != config.requests_per_second
        ):
            bucket.reconfigure(config.capacity, config.requests_per_second)
        return bucket

    @staticmethod
    def day_key(connection_id: str, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        return f"crm:ratelimit:day:{connection_id}:{now.strftime('%Y%m%d')}"

    async def acquire(self, connection_id: str, config: RateLimitConfig) -> float:
        """Wait for admission through both buckets.

        Returns:
            Seconds spent waiting.

        Raises:
            Backpressure: If admission would take longer than max_wait, or
                the day bucket is exhausted.
        """
        max_wait = config.max_wait if config.max_wait is not None else self._max_wait
        day_key = None

        if config.daily_limit is not None and self._day_counter is not None:
            day_key = self.day_key(connection_id)
            count = await self._day_counter.incr(day_key, ttl_seconds=2 * 86400)
            if count > config.daily_limit:
                await self._day_counter.decr(day_key)
                rate_limiter_backpressure_total.labels(bucket="day").inc()
                logger.warning(
                    "rate_limiter.day_exhausted",
                    connection_id=connection_id,
                    daily_limit=config.daily_limit,
                )
                raise Backpressure(connection_id, waited=0.0, bucket="day")

        bucket = self._bucket(connection_id, config)
        waited = 0.0
        try:
            async with bucket.lock:
                while True:
                    wait = bucket.try_take()
                    if wait <= 0.0:
                        break
                    if waited + wait > max_wait:
                        rate_limiter_backpressure_total.labels(bucket="second").inc()
                        raise Backpressure(connection_id, waited=waited + wait, bucket="second")
                    await self._sleep(wait)
                    waited += wait
        except Backpressure:
            if day_key is not None:
                await self._day_counter.decr(day_key)  # type: ignore[union-attr]
            raise

        rate_limiter_wait_seconds.observe(waited)
        return waited

    def penalize(self, connection_id: str, retry_after: float | None) -> None:
        """Defer refills after a provider rate-limit response."""
        bucket = self._buckets.get(connection_id)
        if bucket is None:
            return
        delay = retry_after if retry_after is not None else 1.0
        bucket.block_for(delay)
        logger.info("rate_limiter.penalized", connection_id=connection_id, retry_after=delay)
