"""Bounded retry with fixed-then-exponential backoff.

Wraps tenacity's AsyncRetrying around generative-model calls:
- Delays between attempts: 1s, 2s, 4s, then 4 * 2^(n-3) (8s, 16s, ...)
- Connection-class failures are raised immediately without retrying
- Task cancellation is never retried
- Exhaustion raises RetryExhaustedError chained to the last failure
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

logger = logging.getLogger("reviewsync.retry")

__all__ = [
    "CONNECTION_ERRORS",
    "RetryExhaustedError",
    "RetryPolicy",
    "backoff_delay",
    "is_retryable",
    "wait_fixed_then_exponential",
]

T = TypeVar("T")

# Builtin ConnectionError covers LLMConnectionError and GerritConnectionError,
# which subclass it alongside their connector base classes.
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (ConnectionError, httpx.ConnectError)

_FIXED_DELAYS = (1.0, 2.0, 4.0)


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"max retries reached ({attempts} attempts): {last_error}")


def backoff_delay(attempt_number: int) -> float:
    """Delay after the given failed attempt (1-based).

    Args:
        attempt_number: Number of the attempt that just failed

    Returns:
        Seconds to wait before the next attempt
    """
    if attempt_number <= len(_FIXED_DELAYS):
        return _FIXED_DELAYS[max(attempt_number, 1) - 1]
    return _FIXED_DELAYS[-1] * 2 ** (attempt_number - len(_FIXED_DELAYS))


class wait_fixed_then_exponential(wait_base):
    """Tenacity wait strategy producing 1, 2, 4, 8, 16, ... seconds."""

    def __call__(self, retry_state: RetryCallState) -> float:
        return backoff_delay(retry_state.attempt_number)


def is_retryable(exc: BaseException) -> bool:
    """Whether a failure should consume another attempt."""
    if not isinstance(exc, Exception):
        # CancelledError, KeyboardInterrupt, SystemExit
        return False
    return not isinstance(exc, CONNECTION_ERRORS)


def _log_retry(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry_scheduled",
        extra={
            "attempt": retry_state.attempt_number,
            "wait_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
            "exception_type": type(exception).__name__ if exception else None,
            "error": str(exception) if exception else None,
        },
    )


class RetryPolicy:
    """Retry policy for generative-model calls.

    Example:
        >>> policy = RetryPolicy(max_attempts=3)
        >>> text = await policy.run(lambda: client.generate(prompt))

    The operation may be a coroutine function or any zero-argument callable
    returning an awaitable; each attempt calls it afresh.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Total attempts including the first
            sleep: Coroutine used between attempts, injectable for tests
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
    ) -> T:
        """Run operation until it succeeds or attempts run out.

        Args:
            operation: Zero-argument callable returning an awaitable
            max_attempts: Override for this call

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: Every attempt failed with a retryable error
            ConnectionError: A connection-class failure, raised on first sight
            asyncio.CancelledError: The calling task was cancelled
        """
        attempts = max_attempts or self.max_attempts
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed_then_exponential(),
            retry=retry_if_exception(is_retryable),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=False,
        )

        async def _attempt() -> T:
            return await operation()

        try:
            return await retrying(_attempt)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(
                "retry_exhausted",
                extra={
                    "attempts": attempts,
                    "exception_type": type(last_error).__name__,
                    "error": str(last_error),
                },
            )
            raise RetryExhaustedError(attempts, last_error) from last_error
