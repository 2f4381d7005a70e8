"""
Clock abstractions for the polling system.

Every component that waits or reads the time takes a clock, so rate limiting,
retry backoff and staleness checks can run against virtual time in tests.
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Time source used by the limiter, retry executor, cache and gate."""

    def now(self) -> datetime:
        """Current wall-clock time as a UTC-aware datetime."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds, used for spacing and window arithmetic."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class SystemClock:
    """Clock backed by the real system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


class ManualClock:
    """
    Virtual clock that only moves when told to.

    ``sleep`` advances virtual time by the requested amount and yields to the
    event loop once, so a waiter wakes up immediately with the clock already
    moved forward. This is deterministic as long as a single task sleeps at a
    time, which holds for the rate limiter since it only sleeps while holding
    its admission lock.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2024, 1, 1, tzinfo=UTC)
        if self._start.tzinfo is None:
            self._start = self._start.replace(tzinfo=UTC)
        self._offset = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._offset)

    def monotonic(self) -> float:
        return self._offset

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self._offset += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        """Move virtual time forward without sleeping."""
        self._offset += seconds

    def set(self, moment: datetime) -> None:
        """Jump to an absolute moment (must not be before the current time)."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        delta = (moment - self.now()).total_seconds()
        if delta < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._offset += delta

    @property
    def total_slept(self) -> float:
        return sum(self.sleeps)
