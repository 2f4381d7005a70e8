"""
Metrics collection for the polling system.

Tracks outbound Torn API usage by source and endpoint, and per-job cycle
outcomes, for the status endpoint and the logs.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from ..clock import Clock

if TYPE_CHECKING:
    from .orchestrator import CycleReport

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ApiCall:
    """One outbound API call."""

    endpoint: str
    source: str
    timestamp: datetime


class ApiCallTracker:
    """
    Rolling record of outbound API calls.

    Calls older than ``retention`` are dropped whenever the tracker is
    updated or queried.
    """

    def __init__(self, clock: Clock, retention: timedelta = timedelta(hours=24)):
        self.clock = clock
        self.retention = retention
        self._calls: deque[ApiCall] = deque()
        self._total = 0
        self._lock = threading.Lock()

    def record(self, endpoint: str, source: str = "unknown") -> None:
        """Record one outbound call."""
        now = self.clock.now()
        with self._lock:
            self._calls.append(ApiCall(endpoint=endpoint, source=source, timestamp=now))
            self._total += 1
            self._prune(now)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.retention
        while self._calls and self._calls[0].timestamp < cutoff:
            self._calls.popleft()

    def _window(self, window: timedelta | None) -> list[ApiCall]:
        now = self.clock.now()
        with self._lock:
            self._prune(now)
            if window is None:
                return list(self._calls)
            cutoff = now - window
            return [call for call in self._calls if call.timestamp >= cutoff]

    def count(self, window: timedelta | None = None) -> int:
        """Count calls within ``window`` (default: the whole retention)."""
        return len(self._window(window))

    def stats(self, window: timedelta | None = timedelta(minutes=1)) -> dict[str, Any]:
        """
        Summarize calls within a window.

        Returns:
            Totals broken down by source and by endpoint
        """
        calls = self._window(window)
        return {
            "window_seconds": window.total_seconds() if window else None,
            "total": len(calls),
            "by_source": dict(Counter(call.source for call in calls)),
            "by_endpoint": dict(Counter(call.endpoint for call in calls)),
            "lifetime_total": self._total,
        }


@dataclass
class JobRunMetrics:
    """Aggregated cycle outcomes for one job."""

    job_name: str
    total_cycles: int = 0
    skipped_cycles: int = 0
    subjects_succeeded: int = 0
    subjects_failed: int = 0
    notifications_sent: int = 0
    average_cycle_seconds: float = 0.0
    last_report: CycleReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cycles": self.total_cycles,
            "skipped_cycles": self.skipped_cycles,
            "subjects_succeeded": self.subjects_succeeded,
            "subjects_failed": self.subjects_failed,
            "notifications_sent": self.notifications_sent,
            "average_cycle_seconds": round(self.average_cycle_seconds, 3),
            "last_cycle": self.last_report.to_dict() if self.last_report else None,
        }


class JobMetrics:
    """Collects cycle reports from every job."""

    def __init__(self) -> None:
        self.jobs: dict[str, JobRunMetrics] = {}

    def record_cycle(self, report: CycleReport) -> None:
        """Fold a finished cycle into the job's totals."""
        metrics = self.jobs.setdefault(report.job_name, JobRunMetrics(report.job_name))
        metrics.last_report = report

        if report.skipped:
            metrics.skipped_cycles += 1
            return

        metrics.total_cycles += 1
        metrics.subjects_succeeded += len(report.succeeded)
        metrics.subjects_failed += len(report.failed)
        metrics.notifications_sent += report.notifications_sent
        metrics.average_cycle_seconds = (
            metrics.average_cycle_seconds * (metrics.total_cycles - 1)
            + report.duration_seconds
        ) / metrics.total_cycles

        if report.failed:
            logger.warning(
                "Job cycle had failures",
                job=report.job_name,
                failed_subjects=len(report.failed),
                succeeded_subjects=len(report.succeeded),
            )

    def get_summary(self) -> dict[str, dict[str, Any]]:
        return {name: metrics.to_dict() for name, metrics in sorted(self.jobs.items())}
