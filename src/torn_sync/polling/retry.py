"""
Retry executor for outbound Torn API calls.

Wraps a call with the shared rate limiter, a bounded timeout and an
exponential backoff that is only applied when upstream reports rate limiting.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from ..clock import Clock
from ..exceptions import CallTimeoutError, RateLimitedError
from .rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_rate_limited_error(error: BaseException) -> bool:
    """Default detection of the "rate limited by upstream" response class."""
    return isinstance(error, RateLimitedError)


class RetryExecutor:
    """
    Executes calls through the limiter with rate-limit retries.

    Every attempt, retries included, consumes one limiter token. Only errors
    classified as rate limited are retried; any other error, timeouts
    included, propagates immediately.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        clock: Clock,
        max_retries: int = 3,
        base_delay: float = 1.0,
        call_timeout: float | None = 10.0,
        is_rate_limited: Callable[[BaseException], bool] | None = None,
    ):
        """
        Initialize the retry executor.

        Args:
            limiter: Shared rate limiter
            clock: Time source used for backoff delays
            max_retries: Retries after the first rate-limited attempt
            base_delay: Delay in seconds before the first retry
            call_timeout: Per-attempt timeout in seconds, None to disable
            is_rate_limited: Predicate classifying rate-limited errors
        """
        self.limiter = limiter
        self.clock = clock
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self.call_timeout = call_timeout
        self._is_rate_limited = is_rate_limited or is_rate_limited_error

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``."""
        return self.base_delay * (2**attempt)

    async def execute(
        self, call_fn: Callable[[], Awaitable[T]], description: str = "call"
    ) -> T:
        """
        Execute a call with rate limiting, timeout and backoff.

        Args:
            call_fn: Zero-argument coroutine factory performing the call
            description: Label used in log events

        Returns:
            The call's result

        Raises:
            CallTimeoutError: If an attempt exceeds the call timeout
            Exception: The last rate-limited error once retries are exhausted,
                or any non rate-limited error immediately
        """
        last_error: BaseException | None = None

        for attempt in range(self.max_retries + 1):
            await self.limiter.acquire()
            try:
                if self.call_timeout is None:
                    result = await call_fn()
                else:
                    result = await asyncio.wait_for(
                        call_fn(), timeout=self.call_timeout
                    )
            except TimeoutError as e:
                logger.warning(
                    "Outbound call timed out",
                    call=description,
                    timeout_seconds=self.call_timeout,
                )
                raise CallTimeoutError(
                    f"{description} timed out after {self.call_timeout}s",
                    context={"call": description},
                ) from e
            except Exception as e:
                if not self._is_rate_limited(e):
                    raise
                last_error = e

                if attempt >= self.max_retries:
                    break

                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Rate limited by upstream, retrying",
                    call=description,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_seconds=delay,
                )
                await self.clock.sleep(delay)
            else:
                if attempt > 0:
                    logger.info(
                        "Call succeeded after retry",
                        call=description,
                        attempt=attempt + 1,
                    )
                return result

        logger.error(
            "Rate limit retries exhausted",
            call=description,
            total_attempts=self.max_retries + 1,
            error=str(last_error),
        )
        if last_error is None:
            raise RuntimeError("Retry loop ended without an error")
        raise last_error
