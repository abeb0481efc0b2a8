"""Token bucket rate limiter for upstream review APIs.

One RateLimiter instance is owned by each upstream client (Gerrit, Gitiles);
every outbound request from that client acquires a token first.

Token accounting sits behind a threading.Lock so the limiter is safe to share
between coroutines and threads. Waiting suspends only the calling coroutine.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger("reviewsync.rate_limiter")

__all__ = ["RateLimiter", "TokenBucket"]


@dataclass
class TokenBucket:
    """Token bucket state.

    Attributes:
        capacity: Maximum tokens in bucket (burst size)
        tokens: Current tokens available
        refill_rate: Tokens added per second
        last_refill: Clock reading at last refill
    """

    capacity: float
    tokens: float
    refill_rate: float
    last_refill: float
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateLimiter:
    """Token bucket gate for one upstream service.

    Example:
        >>> limiter = RateLimiter(burst=20, rate_per_second=10.0)
        >>> if await limiter.acquire(cancel_event):
        ...     response = await client.get(url)
    """

    def __init__(
        self,
        burst: int = 20,
        rate_per_second: float = 10.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize rate limiter with a full bucket.

        Args:
            burst: Bucket capacity
            rate_per_second: Steady refill rate
            name: Upstream name used in log events
            clock: Monotonic clock, injectable for tests

        Raises:
            ValueError: If burst or rate is not positive
        """
        if burst < 1:
            raise ValueError(f"burst must be >= 1, got {burst}")
        if rate_per_second <= 0:
            raise ValueError(f"rate_per_second must be > 0, got {rate_per_second}")

        self.name = name
        self._clock = clock
        self._bucket = TokenBucket(
            capacity=float(burst),
            tokens=float(burst),
            refill_rate=float(rate_per_second),
            last_refill=clock(),
        )

        logger.debug(
            "rate_limiter_initialized",
            extra={"upstream": name, "burst": burst, "rate_per_second": rate_per_second},
        )

    def _refill_bucket(self) -> None:
        """Refill bucket based on elapsed time. Caller holds the lock."""
        bucket = self._bucket
        now = self._clock()
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_rate)
        bucket.last_refill = now

    def try_acquire(self) -> bool:
        """Take a token without waiting.

        Returns:
            True if a token was taken
        """
        bucket = self._bucket
        with bucket.lock:
            self._refill_bucket()
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False

    def _time_until_token(self) -> float:
        """Seconds until the bucket holds one whole token."""
        bucket = self._bucket
        with bucket.lock:
            self._refill_bucket()
            return max(0.0, (1.0 - bucket.tokens) / bucket.refill_rate)

    async def acquire(self, cancel_event: asyncio.Event | None = None) -> bool:
        """Wait for a token.

        Args:
            cancel_event: Optional event; if it is set before a token becomes
                available the wait is abandoned

        Returns:
            True once a token was taken, False if cancel_event fired first.
            Callers must abort without side effects on False.

        Raises:
            asyncio.CancelledError: If the calling task is cancelled
        """
        waited = 0.0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.debug("rate_limit_wait_cancelled", extra={"upstream": self.name})
                return False

            if self.try_acquire():
                if waited > 0:
                    logger.debug(
                        "rate_limit_token_acquired",
                        extra={"upstream": self.name, "wait_seconds": round(waited, 3)},
                    )
                return True

            # Another waiter may take the refilled token first; loop and retry
            wait_time = self._time_until_token()
            waited += wait_time
            if cancel_event is None:
                await asyncio.sleep(wait_time)
                continue

            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=wait_time)
            except asyncio.TimeoutError:
                continue

    def get_status(self) -> dict[str, float]:
        """Current bucket state for logs and health checks."""
        bucket = self._bucket
        with bucket.lock:
            self._refill_bucket()
            return {
                "tokens": round(bucket.tokens, 3),
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
            }
