"""
Rate limiter for the Torn sync agent polling system.

This module bounds outbound calls to the Torn API. A single limiter instance
is shared by every job, so the whole process stays inside one upstream
budget regardless of how many pollers run concurrently.
"""

import asyncio
from collections import deque
from dataclasses import dataclass

import structlog

from ..clock import Clock
from ..exceptions import LimiterSaturatedError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimiterState:
    """Snapshot of the limiter's budget."""

    capacity: int
    remaining: int
    window_seconds: float
    min_spacing_seconds: float
    pending: int
    admitted_total: int

    @property
    def usage_percentage(self) -> float:
        return 1.0 - (self.remaining / self.capacity) if self.capacity > 0 else 0.0


class RateLimiter:
    """
    Sliding-window limiter with minimum call spacing.

    At most ``capacity`` calls are admitted within any rolling
    ``window_seconds`` interval, and two admitted calls are always at least
    ``min_spacing_seconds`` apart. Callers over budget wait in FIFO order.
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        clock: Clock,
        min_spacing_seconds: float = 0.0,
        max_pending: int = 0,
    ):
        """
        Initialize the rate limiter.

        Args:
            capacity: Maximum admitted calls per rolling window
            window_seconds: Length of the rolling window
            clock: Time source used for waiting
            min_spacing_seconds: Minimum gap between two admitted calls
            max_pending: Maximum queued callers, 0 for an unbounded queue
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.capacity = capacity
        self.window_seconds = window_seconds
        self.min_spacing_seconds = max(0.0, min_spacing_seconds)
        self.max_pending = max(0, max_pending)
        self.clock = clock

        self._admitted: deque[float] = deque()
        self._last_admitted: float | None = None
        self._admitted_total = 0
        self._pending = 0
        # asyncio.Lock wakes waiters in FIFO order
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """
        Wait for a call slot and claim it.

        Returns:
            Monotonic timestamp at which the call was admitted

        Raises:
            LimiterSaturatedError: If the waiting queue is bounded and full
        """
        if self.max_pending and self._pending >= self.max_pending:
            logger.warning(
                "Rate limiter queue full, rejecting call",
                pending=self._pending,
                max_pending=self.max_pending,
            )
            raise LimiterSaturatedError(
                "Rate limiter queue is full", pending=self._pending
            )

        self._pending += 1
        try:
            async with self._lock:
                while True:
                    now = self.clock.monotonic()
                    wait = self._required_wait(now)
                    if wait <= 0:
                        self._admitted.append(now)
                        self._last_admitted = now
                        self._admitted_total += 1
                        return now

                    logger.debug(
                        "Rate limiter waiting for slot",
                        wait_seconds=round(wait, 3),
                        in_window=len(self._admitted),
                        capacity=self.capacity,
                    )
                    # Sleeping while holding the lock keeps admissions ordered
                    await self.clock.sleep(wait)
        finally:
            self._pending -= 1

    def _required_wait(self, now: float) -> float:
        self._prune(now)

        wait = 0.0
        if self._last_admitted is not None:
            wait = max(wait, self._last_admitted + self.min_spacing_seconds - now)
        if len(self._admitted) >= self.capacity:
            wait = max(wait, self._admitted[0] + self.window_seconds - now)
        return wait

    def _prune(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.window_seconds:
            self._admitted.popleft()

    def state(self) -> RateLimiterState:
        """Get the current limiter state."""
        self._prune(self.clock.monotonic())
        return RateLimiterState(
            capacity=self.capacity,
            remaining=max(0, self.capacity - len(self._admitted)),
            window_seconds=self.window_seconds,
            min_spacing_seconds=self.min_spacing_seconds,
            pending=self._pending,
            admitted_total=self._admitted_total,
        )

    def get_stats(self) -> dict[str, float | int]:
        """Get limiter statistics for status reporting."""
        state = self.state()
        return {
            "capacity": state.capacity,
            "remaining": state.remaining,
            "window_seconds": state.window_seconds,
            "min_spacing_seconds": state.min_spacing_seconds,
            "pending": state.pending,
            "admitted_total": state.admitted_total,
            "usage_percentage": round(state.usage_percentage * 100, 2),
        }
