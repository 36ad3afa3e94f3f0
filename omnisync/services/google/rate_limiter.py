"""
Rate Limiter - in-process token buckets for Google API calls.

Every provider call made by the sync pipeline goes through acquire(), keyed
by (user_id, service), so one user's Gmail backfill cannot starve their
calendar sync or another user's run inside the same worker.

Backoff for retried calls:
- 1s initial delay, doubling per attempt, capped at 60s
- up to 10% random jitter
- 429 responses back off twice as long
"""

import asyncio
import random
import time

from omnisync.config import settings
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2
JITTER_FACTOR = 0.1
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class TokenBucket:
    def __init__(self, capacity: float, refill_rate: float, clock=time.monotonic):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = capacity
        self._clock = clock
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def try_consume(self, count: float = 1) -> float:
        """Consume tokens if available. Returns 0 on success, else seconds to wait."""
        self._refill()
        if self.tokens >= count:
            self.tokens -= count
            return 0.0
        return (count - self.tokens) / self.refill_rate


class GoogleApiRateLimiter:
    """Per (user, service) token buckets with async waiting."""

    def __init__(
        self,
        requests_per_second: float | None = None,
        burst_size: int | None = None,
        sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        self.requests_per_second = requests_per_second or settings.GOOGLE_REQUESTS_PER_SECOND
        self.burst_size = burst_size or settings.GOOGLE_BURST_SIZE
        self._buckets: dict[tuple[str, str], TokenBucket] = {}
        self._sleep = sleep
        self._clock = clock

    def _bucket(self, user_id: str, service: str) -> TokenBucket:
        key = (user_id, service)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(self.burst_size, self.requests_per_second, clock=self._clock)
            self._buckets[key] = bucket
        return bucket

    async def acquire(self, user_id: str, service: str) -> None:
        """Wait until a request slot is free for this user and service."""
        bucket = self._bucket(user_id, service)
        while True:
            wait_seconds = bucket.try_consume()
            if wait_seconds <= 0:
                return
            logger.debug(
                "Google API quota wait",
                user_id=user_id,
                service=service,
                wait_seconds=round(wait_seconds, 3),
            )
            await self._sleep(wait_seconds)


def backoff_delay(attempt: int, status_code: int | None = None) -> float:
    """
    Delay before retry number `attempt` (1-based).

    Args:
        attempt: Retry attempt number, starting at 1
        status_code: HTTP status that triggered the retry, if any
    """
    delay = min(INITIAL_BACKOFF_SECONDS * BACKOFF_MULTIPLIER ** (attempt - 1), MAX_BACKOFF_SECONDS)
    delay += delay * JITTER_FACTOR * random.random()
    if status_code == 429:
        delay *= 2
    return delay
