"""
Notification dedup and cooldown gate.

The gate decides whether a candidate alert should be delivered. It remembers
the last value emitted for every (subject, alert class) key and suppresses
repeats of the same value as well as alerts inside the class cooldown.
"""

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from ..clock import Clock

logger = structlog.get_logger(__name__)

PRICE_ALERT = "price_alert"
CHAIN_TIMEOUT = "chain_timeout"
DAILY_REMINDER = "daily_reminder"


@dataclass(frozen=True)
class AlertClassPolicy:
    """
    Dedup rules for one alert class.

    Attributes:
        cooldown: Minimum time between two emissions for the same key
        value_change_bypasses_cooldown: Whether a changed value may be emitted
            inside the cooldown
        inactivity_horizon: Records idle for longer are swept, None keeps them
    """

    cooldown: timedelta = timedelta(0)
    value_change_bypasses_cooldown: bool = True
    inactivity_horizon: timedelta | None = None


DEFAULT_ALERT_POLICIES: dict[str, AlertClassPolicy] = {
    PRICE_ALERT: AlertClassPolicy(),
    CHAIN_TIMEOUT: AlertClassPolicy(
        cooldown=timedelta(seconds=60),
        value_change_bypasses_cooldown=False,
        inactivity_horizon=timedelta(minutes=5),
    ),
    DAILY_REMINDER: AlertClassPolicy(inactivity_horizon=timedelta(days=2)),
}


@dataclass
class NotificationRecord:
    """The most recent emission for one (subject, alert class) key."""

    last_emitted_value: Any
    last_emitted_at: datetime


class NotificationGate:
    """
    Decides whether candidate alerts are delivered.

    Callers ask ``should_emit`` before delivering and call
    ``record_emission`` only after delivery succeeded, so a failed delivery
    is attempted again on the next cycle.
    """

    def __init__(
        self,
        clock: Clock,
        policies: dict[str, AlertClassPolicy] | None = None,
        default_policy: AlertClassPolicy | None = None,
        sweep_interval_seconds: float = 60.0,
    ):
        """
        Initialize the notification gate.

        Args:
            clock: Time source used when ``now`` is not given
            policies: Dedup rules per alert class
            default_policy: Rules for alert classes missing from ``policies``
            sweep_interval_seconds: Delay between background sweeps
        """
        self.clock = clock
        self.policies = dict(DEFAULT_ALERT_POLICIES if policies is None else policies)
        self.default_policy = default_policy or AlertClassPolicy()
        self.sweep_interval_seconds = sweep_interval_seconds

        self._records: dict[tuple[str, str], NotificationRecord] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task[None] | None = None
        self._stats = {"allowed": 0, "suppressed": 0, "recorded": 0, "swept": 0}

    def policy_for(self, alert_class: str) -> AlertClassPolicy:
        return self.policies.get(alert_class, self.default_policy)

    def should_emit(
        self,
        subject_key: str,
        alert_class: str,
        value: Any,
        now: datetime | None = None,
    ) -> bool:
        """
        Check whether an alert may be delivered.

        Args:
            subject_key: Subject the alert is about
            alert_class: Alert class (e.g., 'price_alert')
            value: Value that triggered the alert
            now: Evaluation time, defaults to the clock

        Returns:
            True if the alert should be delivered
        """
        now = now or self.clock.now()
        with self._lock:
            record = self._records.get((subject_key, alert_class))

        allowed = self._evaluate(record, self.policy_for(alert_class), value, now)
        self._stats["allowed" if allowed else "suppressed"] += 1
        if not allowed:
            logger.debug(
                "Alert suppressed",
                subject=subject_key,
                alert_class=alert_class,
                value=value,
            )
        return allowed

    @staticmethod
    def _evaluate(
        record: NotificationRecord | None,
        policy: AlertClassPolicy,
        value: Any,
        now: datetime,
    ) -> bool:
        if record is None:
            return True
        if value == record.last_emitted_value:
            return False
        if policy.value_change_bypasses_cooldown:
            return True
        return now - record.last_emitted_at >= policy.cooldown

    def record_emission(
        self,
        subject_key: str,
        alert_class: str,
        value: Any,
        now: datetime | None = None,
    ) -> None:
        """Remember a delivered alert."""
        record = NotificationRecord(
            last_emitted_value=value, last_emitted_at=now or self.clock.now()
        )
        with self._lock:
            self._records[(subject_key, alert_class)] = record
        self._stats["recorded"] += 1

    def reset(self, subject_key: str, alert_class: str) -> bool:
        """
        Forget the record for a key so the next alert is always allowed.

        Used when the alerting condition clears, e.g. a price rising back
        above its threshold.

        Returns:
            True if a record was removed
        """
        with self._lock:
            removed = self._records.pop((subject_key, alert_class), None)
        if removed is not None:
            logger.debug("Alert re-armed", subject=subject_key, alert_class=alert_class)
        return removed is not None

    def get_record(self, subject_key: str, alert_class: str) -> NotificationRecord | None:
        with self._lock:
            return self._records.get((subject_key, alert_class))

    def sweep(self, now: datetime | None = None) -> int:
        """
        Remove records idle for longer than their class horizon.

        Returns:
            Number of records removed
        """
        now = now or self.clock.now()
        with self._lock:
            expired = [
                key
                for key, record in self._records.items()
                if self._is_expired(key[1], record, now)
            ]
            for key in expired:
                del self._records[key]

        self._stats["swept"] += len(expired)
        return len(expired)

    def _is_expired(self, alert_class: str, record: NotificationRecord, now: datetime) -> bool:
        horizon = self.policy_for(alert_class).inactivity_horizon
        return horizon is not None and now - record.last_emitted_at > horizon

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._sweep_task and not self._sweep_task.done():
            return
        logger.info("Starting notification gate sweeper")
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        if self._sweep_task:
            logger.info("Stopping notification gate sweeper")
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.clock.sleep(self.sweep_interval_seconds)
                removed = self.sweep()
                if removed > 0:
                    logger.debug("Notification records swept", removed=removed)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Notification sweep failed", error=str(e))

    def get_stats(self) -> dict[str, Any]:
        """Get gate statistics."""
        with self._lock:
            records = len(self._records)
        return {"records": records, **self._stats}
