"""
Pytest configuration and fixtures for Torn sync agent tests.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from torn_sync.clock import ManualClock
from torn_sync.config import CacheConfig, Settings
from torn_sync.credentials import CredentialVault
from torn_sync.jobs.activity_status import build_policies
from torn_sync.notifier import DiscordNotifier
from torn_sync.polling.cache import AdaptiveCache
from torn_sync.polling.metrics import ApiCallTracker, JobMetrics
from torn_sync.polling.notifications import NotificationGate
from torn_sync.polling.orchestrator import SyncContext
from torn_sync.polling.rate_limiter import RateLimiter
from torn_sync.polling.retry import RetryExecutor
from torn_sync.polling.rotation import CredentialRotator
from torn_sync.state.manager import (
    InMemoryJobRegistry,
    InMemorySnapshotStore,
    InMemorySubscriptionStore,
)
from torn_sync.torn_client import TornClient

TEST_SECRET = "test-secret"


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment's .env file."""
    values = {
        "encryption_secret": TEST_SECRET,
        "torn_api_key": "",
        "discord_bot_token": "test-bot-token",
        "discord_webhook_url": "https://discord.test/api/webhooks/1/abc",
        "log_level": "DEBUG",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_context(
    clock: ManualClock,
    vault: CredentialVault,
    subscriptions: InMemorySubscriptionStore | None = None,
    settings: Settings | None = None,
) -> SyncContext:
    """Wire a context with in-memory stores and mocked I/O clients."""
    limiter = RateLimiter(capacity=100, window_seconds=60, clock=clock)
    snapshots = InMemorySnapshotStore()
    return SyncContext(
        settings=settings or make_settings(),
        clock=clock,
        limiter=limiter,
        executor=RetryExecutor(limiter, clock, call_timeout=None),
        cache=AdaptiveCache(snapshots, build_policies(CacheConfig()), clock),
        gate=NotificationGate(clock),
        rotator=CredentialRotator(),
        client=AsyncMock(spec=TornClient),
        notifier=AsyncMock(spec=DiscordNotifier),
        vault=vault,
        snapshots=snapshots,
        registry=InMemoryJobRegistry(),
        subscriptions=subscriptions or InMemorySubscriptionStore(),
        api_calls=ApiCallTracker(clock),
        job_metrics=JobMetrics(),
    )


@pytest.fixture(scope="session")
def vault() -> CredentialVault:
    """Vault keyed with the test secret."""
    return CredentialVault(TEST_SECRET)


@pytest.fixture
def clock() -> ManualClock:
    """Virtual clock starting at 2024-01-01 00:00 UTC."""
    return ManualClock(datetime(2024, 1, 1, tzinfo=UTC))


@pytest.fixture
def settings() -> Settings:
    return make_settings()
