"""
Tests for the notification gate.
"""

import asyncio
from datetime import timedelta

import pytest

from torn_sync.clock import SystemClock
from torn_sync.polling.notifications import (
    CHAIN_TIMEOUT,
    DAILY_REMINDER,
    PRICE_ALERT,
    AlertClassPolicy,
    NotificationGate,
)


class TestNotificationGate:
    """Test dedup, cooldown and sweeping."""

    def test_first_alert_is_allowed(self, clock):
        gate = NotificationGate(clock)

        assert gate.should_emit("watch:1", PRICE_ALERT, 100)

    def test_price_alert_value_change_overrides_cooldown(self, clock):
        """Test same value suppressed and changed value allowed inside cooldown."""
        gate = NotificationGate(
            clock, {PRICE_ALERT: AlertClassPolicy(cooldown=timedelta(seconds=60))}
        )
        start = clock.now()
        gate.record_emission("watch:1", PRICE_ALERT, 100, start)

        later = start + timedelta(seconds=30)
        assert not gate.should_emit("watch:1", PRICE_ALERT, 100, later)
        assert gate.should_emit("watch:1", PRICE_ALERT, 90, later)

    def test_chain_alert_cooldown_holds_for_changed_value(self, clock):
        """Test a class where value changes do not bypass the cooldown."""
        gate = NotificationGate(clock)
        start = clock.now()
        gate.record_emission("faction:1:user:2", CHAIN_TIMEOUT, 100, start)

        assert not gate.should_emit(
            "faction:1:user:2", CHAIN_TIMEOUT, 101, start + timedelta(seconds=30)
        )
        assert gate.should_emit(
            "faction:1:user:2", CHAIN_TIMEOUT, 101, start + timedelta(seconds=60)
        )

    def test_same_value_suppressed_even_after_cooldown(self, clock):
        gate = NotificationGate(clock)
        start = clock.now()
        gate.record_emission("faction:1:user:2", CHAIN_TIMEOUT, 100, start)

        assert not gate.should_emit(
            "faction:1:user:2", CHAIN_TIMEOUT, 100, start + timedelta(minutes=10)
        )

    def test_keys_are_independent(self, clock):
        gate = NotificationGate(clock)
        gate.record_emission("watch:1", PRICE_ALERT, 100)

        assert gate.should_emit("watch:2", PRICE_ALERT, 100)
        assert gate.should_emit("watch:1", DAILY_REMINDER, 100)

    def test_reset_rearms_alert(self, clock):
        """Test that a cleared condition allows the same value again."""
        gate = NotificationGate(clock)
        gate.record_emission("watch:1", PRICE_ALERT, 100)

        assert gate.reset("watch:1", PRICE_ALERT)
        assert not gate.reset("watch:1", PRICE_ALERT)
        assert gate.should_emit("watch:1", PRICE_ALERT, 100)

    def test_should_emit_does_not_record(self, clock):
        gate = NotificationGate(clock)

        gate.should_emit("watch:1", PRICE_ALERT, 100)

        assert gate.get_record("watch:1", PRICE_ALERT) is None

    def test_sweep_removes_idle_records(self, clock):
        """Test the per-class inactivity horizon."""
        gate = NotificationGate(clock)
        start = clock.now()
        gate.record_emission("faction:1:user:2", CHAIN_TIMEOUT, 5, start)
        gate.record_emission("user:1", DAILY_REMINDER, "2024-01-01", start)
        gate.record_emission("watch:1", PRICE_ALERT, 100, start)

        removed = gate.sweep(start + timedelta(minutes=6))

        assert removed == 1
        assert gate.get_record("faction:1:user:2", CHAIN_TIMEOUT) is None
        assert gate.get_record("user:1", DAILY_REMINDER) is not None
        assert gate.get_record("watch:1", PRICE_ALERT) is not None

        assert gate.sweep(start + timedelta(days=3)) == 1
        assert gate.get_stats()["records"] == 1

    def test_unknown_class_uses_default_policy(self, clock):
        gate = NotificationGate(
            clock, default_policy=AlertClassPolicy(value_change_bypasses_cooldown=False)
        )

        assert gate.policy_for("custom").value_change_bypasses_cooldown is False

    def test_stats(self, clock):
        gate = NotificationGate(clock)
        gate.should_emit("watch:1", PRICE_ALERT, 100)
        gate.record_emission("watch:1", PRICE_ALERT, 100)
        gate.should_emit("watch:1", PRICE_ALERT, 100)

        stats = gate.get_stats()

        assert stats == {"records": 1, "allowed": 1, "suppressed": 1, "recorded": 1, "swept": 0}

    @pytest.mark.asyncio
    async def test_sweep_loop_runs_in_background(self):
        """Test that the sweeper removes expired records on its own."""
        gate = NotificationGate(
            SystemClock(),
            {CHAIN_TIMEOUT: AlertClassPolicy(inactivity_horizon=timedelta(0))},
            sweep_interval_seconds=0.01,
        )
        gate.record_emission("faction:1:user:2", CHAIN_TIMEOUT, 5)

        await gate.start()
        try:
            for _ in range(100):
                if gate.get_record("faction:1:user:2", CHAIN_TIMEOUT) is None:
                    break
                await asyncio.sleep(0.01)
        finally:
            await gate.stop()

        assert gate.get_record("faction:1:user:2", CHAIN_TIMEOUT) is None
        assert gate.get_stats()["swept"] == 1
