"""
Polling job orchestration for the Torn sync agent.

Every background job runs the same cycle: fetch all subjects concurrently
through the shared rate limiter, transform the raw payloads, persist them and
raise alerts. A failure only drops the subject it happened for; the next
scheduled tick always starts fresh.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager, AsyncExitStack, nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog

from ..clock import Clock
from ..state.manager import JobRegistry, SnapshotStore, SubscriptionStore
from .cache import AdaptiveCache
from .metrics import ApiCallTracker, JobMetrics
from .notifications import NotificationGate
from .rate_limiter import RateLimiter
from .retry import RetryExecutor
from .rotation import CredentialRotator

if TYPE_CHECKING:
    from ..config import Settings
    from ..credentials import CredentialVault
    from ..notifier import DiscordNotifier
    from ..torn_client import TornClient

logger = structlog.get_logger(__name__)

S = TypeVar("S")
R = TypeVar("R")
D = TypeVar("D")


class JobState(str, Enum):
    """Phase of a polling job cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    PERSISTING = "persisting"
    NOTIFYING = "notifying"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class CycleReport:
    """Outcome of one job cycle."""

    job_name: str
    started_at: datetime
    finished_at: datetime | None = None
    state: JobState = JobState.IDLE
    skipped_reason: str | None = None
    error: str | None = None
    subjects_total: int = 0
    succeeded: list[str] = field(default_factory=list)
    no_data: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    notifications_sent: int = 0

    @property
    def skipped(self) -> bool:
        return self.state == JobState.SKIPPED

    @property
    def duration_seconds(self) -> float:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job_name,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
            "subjects_total": self.subjects_total,
            "succeeded": len(self.succeeded),
            "no_data": len(self.no_data),
            "failed": dict(self.failed),
            "notifications_sent": self.notifications_sent,
        }


@dataclass
class SyncContext:
    """
    Shared instances built once at start-up and handed to every job.

    There is exactly one limiter per process, so every outbound call from
    every job draws from the same upstream budget.
    """

    settings: "Settings"
    clock: Clock
    limiter: RateLimiter
    executor: RetryExecutor
    cache: AdaptiveCache
    gate: NotificationGate
    rotator: CredentialRotator
    client: "TornClient"
    notifier: "DiscordNotifier"
    vault: "CredentialVault"
    snapshots: SnapshotStore
    registry: JobRegistry
    subscriptions: SubscriptionStore
    api_calls: ApiCallTracker
    job_metrics: JobMetrics


class PollingJob(ABC, Generic[S, R, D]):
    """
    Base class for scheduled polling jobs.

    Subclasses provide the subjects and the per-subject fetch; transform,
    persist and notify are optional. ``fetch`` returning None means there is
    nothing to do for that subject this cycle.
    """

    name: str = "polling-job"
    description: str = ""
    interval_seconds: float = 60.0
    reentrant: bool = True

    def __init__(self, context: SyncContext):
        self.context = context
        self.state = JobState.IDLE
        self._active_cycles = 0
        self._contexts: dict[str, Any] = {}
        self.log = logger.bind(job=self.name)

    @property
    def busy(self) -> bool:
        return self._active_cycles > 0

    @abstractmethod
    async def collect_subjects(self) -> list[S]:
        """Get the subjects to poll this cycle."""

    @abstractmethod
    def subject_key(self, subject: S) -> str:
        """Stable identifier of a subject, used for logs and locking."""

    @abstractmethod
    async def fetch(self, subject: S) -> R | None:
        """Fetch the raw payload for a subject."""

    def transform(self, subject: S, raw: R) -> D:
        """Map a raw payload into the stored shape. Must not do I/O."""
        return raw  # type: ignore[return-value]

    async def persist(self, subject: S, data: D) -> None:
        """Write transformed data to storage."""

    async def notify(self, subject: S, data: D) -> int:
        """
        Raise alerts for a subject.

        Returns:
            Number of alerts delivered
        """
        return 0

    def subject_lock(self, subject: S) -> AbstractAsyncContextManager[Any]:
        """Context held for a subject from fetch until notify completes."""
        return nullcontext()

    def subject_context(self, subject: S) -> Any:
        """Value produced by entering ``subject_lock`` for the subject."""
        return self._contexts.get(self.subject_key(subject))

    async def call_api(
        self,
        endpoint: str,
        api_key: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call the Torn API through the shared retry executor."""
        return await self.context.executor.execute(
            lambda: self.context.client.call(
                endpoint, api_key, params=params, source=self.name
            ),
            description=f"{self.name}:{endpoint}",
        )

    async def run_cycle(self) -> CycleReport:
        """
        Run one complete cycle.

        Returns:
            CycleReport describing what happened to every subject
        """
        clock = self.context.clock
        report = CycleReport(job_name=self.name, started_at=clock.now())

        if not await self._is_enabled():
            return self._skip(report, "disabled")
        if not self.reentrant and self.busy:
            return self._skip(report, "busy")

        self._active_cycles += 1
        self.log.debug("Job cycle started")
        try:
            await self._run_phases(report)
            report.state = (
                JobState.FAILED
                if report.failed and not (report.succeeded or report.no_data)
                else JobState.IDLE
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            report.state = JobState.FAILED
            report.error = str(e)
            self.log.error("Job cycle failed", error=str(e))
        finally:
            self._active_cycles -= 1
            self.state = JobState.IDLE

        report.finished_at = clock.now()
        await self._record_run(report.finished_at)
        self.context.job_metrics.record_cycle(report)
        self.log.info(
            "Job cycle completed",
            subjects=report.subjects_total,
            succeeded=len(report.succeeded),
            no_data=len(report.no_data),
            failed=len(report.failed),
            notifications=report.notifications_sent,
        )
        return report

    def _skip(self, report: CycleReport, reason: str) -> CycleReport:
        report.state = JobState.SKIPPED
        report.skipped_reason = reason
        report.finished_at = report.started_at
        self.context.job_metrics.record_cycle(report)
        self.log.info("Job cycle skipped", reason=reason)
        return report

    async def _is_enabled(self) -> bool:
        try:
            return await self.context.registry.is_enabled(self.name)
        except Exception as e:
            self.log.warning("Job registry lookup failed, running anyway", error=str(e))
            return True

    async def _record_run(self, timestamp: datetime) -> None:
        try:
            await self.context.registry.record_run(self.name, timestamp)
        except Exception as e:
            self.log.warning("Failed to record job run", error=str(e))

    async def _run_phases(self, report: CycleReport) -> None:
        subjects: dict[str, S] = {}
        for subject in await self.collect_subjects():
            subjects.setdefault(self.subject_key(subject), subject)
        report.subjects_total = len(subjects)
        if not subjects:
            return

        stacks = {key: AsyncExitStack() for key in subjects}
        try:
            self.state = JobState.FETCHING
            results = await asyncio.gather(
                *(self._fetch_one(key, subject, stacks[key]) for key, subject in subjects.items()),
                return_exceptions=True,
            )

            fetched: dict[str, tuple[S, R]] = {}
            for (key, subject), result in zip(subjects.items(), results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    await self._fail(report, stacks, key, JobState.FETCHING, result)
                elif result is None:
                    report.no_data.append(key)
                    await self._release(stacks, key)
                else:
                    fetched[key] = (subject, result)

            self.state = JobState.TRANSFORMING
            transformed: dict[str, tuple[S, D]] = {}
            for key, (subject, raw) in fetched.items():
                try:
                    transformed[key] = (subject, self.transform(subject, raw))
                except Exception as e:
                    await self._fail(report, stacks, key, JobState.TRANSFORMING, e)

            self.state = JobState.PERSISTING
            persisted: dict[str, tuple[S, D]] = {}
            for key, (subject, data) in transformed.items():
                try:
                    await self.persist(subject, data)
                except Exception as e:
                    await self._fail(report, stacks, key, JobState.PERSISTING, e)
                else:
                    persisted[key] = (subject, data)

            self.state = JobState.NOTIFYING
            for key, (subject, data) in persisted.items():
                try:
                    report.notifications_sent += await self.notify(subject, data)
                except Exception as e:
                    await self._fail(report, stacks, key, JobState.NOTIFYING, e)
                else:
                    report.succeeded.append(key)
                    await self._release(stacks, key)
        finally:
            for key in list(stacks):
                await self._release(stacks, key)

    async def _fetch_one(self, key: str, subject: S, stack: AsyncExitStack) -> R | None:
        self._contexts[key] = await stack.enter_async_context(self.subject_lock(subject))
        return await self.fetch(subject)

    async def _fail(
        self,
        report: CycleReport,
        stacks: dict[str, AsyncExitStack],
        key: str,
        phase: JobState,
        error: Exception,
    ) -> None:
        report.failed[key] = f"{type(error).__name__}: {error}"
        self.log.warning(
            "Subject failed",
            subject=key,
            phase=phase.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self._release(stacks, key)

    async def _release(self, stacks: dict[str, AsyncExitStack], key: str) -> None:
        stack = stacks.pop(key, None)
        self._contexts.pop(key, None)
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as e:
            self.log.error("Failed to release subject", subject=key, error=str(e))


class JobScheduler:
    """
    Runs each job on its own timer.

    A tick starts a cycle without waiting for the previous one; non-reentrant
    jobs skip ticks that arrive while a cycle is still running.
    """

    def __init__(
        self,
        jobs: list[PollingJob[Any, Any, Any]],
        clock: Clock,
        shutdown_grace_seconds: float = 10.0,
    ):
        self.jobs = jobs
        self.clock = clock
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._loops: list[asyncio.Task[None]] = []
        self._cycles: set[asyncio.Task[CycleReport]] = set()
        self.is_running_flag = False

    def is_running(self) -> bool:
        return self.is_running_flag

    async def start(self) -> None:
        """Start one timer loop per job."""
        if self.is_running_flag:
            logger.warning("Scheduler already running")
            return

        self.is_running_flag = True
        for job in self.jobs:
            logger.info(
                "Scheduling job",
                job=job.name,
                interval_seconds=job.interval_seconds,
                reentrant=job.reentrant,
            )
            self._loops.append(asyncio.create_task(self._job_loop(job)))

    async def stop(self) -> None:
        """Stop the timer loops and let in-flight cycles finish."""
        if not self.is_running_flag:
            return

        logger.info("Stopping job scheduler", in_flight_cycles=len(self._cycles))
        self.is_running_flag = False

        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        if self._cycles:
            _, pending = await asyncio.wait(
                self._cycles, timeout=self.shutdown_grace_seconds
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._cycles.clear()

    async def _job_loop(self, job: PollingJob[Any, Any, Any]) -> None:
        while self.is_running_flag:
            task = asyncio.create_task(job.run_cycle())
            self._cycles.add(task)
            task.add_done_callback(self._cycles.discard)
            try:
                await self.clock.sleep(job.interval_seconds)
            except asyncio.CancelledError:
                break

    async def run_once(self) -> list[CycleReport]:
        """Run every job a single time, concurrently."""
        return list(await asyncio.gather(*(job.run_cycle() for job in self.jobs)))
