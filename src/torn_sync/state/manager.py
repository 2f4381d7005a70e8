"""
Storage collaborators for the Torn sync agent.

Provides the interfaces the polling core consumes from durable storage, plus
in-memory implementations used in tests and single-process deployments:
- SnapshotStore: latest value per subject and field
- JobRegistry: job descriptors (enabled flag and last run)
- SubscriptionStore: registered users, watches and reminder subscriptions
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import structlog

from ..models import (
    ActivitySubscription,
    ChainWatch,
    JobDescriptor,
    TornUser,
    WatchlistItem,
)

logger = structlog.get_logger(__name__)


class SnapshotStore(ABC):
    """Abstract durable store for the latest value of a subject field."""

    @abstractmethod
    async def upsert(self, subject_key: str, field_kind: str, value: Any) -> None:
        """
        Insert or replace the value for a subject field.

        Args:
            subject_key: Subject identifier (e.g., 'user:123', 'faction:42')
            field_kind: Field identifier (e.g., 'education', 'chain')
            value: Value to store
        """
        pass

    @abstractmethod
    async def find_latest(self, subject_key: str, field_kind: str) -> Any | None:
        """
        Get the latest value for a subject field.

        Returns:
            Stored value or None if never written
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the store is healthy."""
        pass


class InMemorySnapshotStore(SnapshotStore):
    """In-memory snapshot store with optional history per field."""

    def __init__(self, history_limit: int = 0) -> None:
        self.values: dict[tuple[str, str], Any] = {}
        self.history: dict[tuple[str, str], list[Any]] = {}
        self.history_limit = history_limit

    async def upsert(self, subject_key: str, field_kind: str, value: Any) -> None:
        key = (subject_key, field_kind)
        self.values[key] = value
        if self.history_limit:
            entries = self.history.setdefault(key, [])
            entries.append(value)
            del entries[: -self.history_limit]
        logger.debug("Stored snapshot", subject=subject_key, field=field_kind)

    async def find_latest(self, subject_key: str, field_kind: str) -> Any | None:
        return self.values.get((subject_key, field_kind))

    async def health_check(self) -> bool:
        return True

    def get_memory_stats(self) -> dict[str, int]:
        """Get memory usage statistics."""
        return {
            "snapshots_count": len(self.values),
            "subjects_count": len({subject for subject, _ in self.values}),
        }


class JobRegistry(ABC):
    """Abstract store of job descriptors."""

    @abstractmethod
    async def is_enabled(self, job_name: str) -> bool:
        """Check whether a job may run."""
        pass

    @abstractmethod
    async def record_run(self, job_name: str, timestamp: datetime) -> None:
        """Record when a job last ran."""
        pass

    @abstractmethod
    async def list_jobs(self) -> list[JobDescriptor]:
        """Get all known job descriptors."""
        pass


class InMemoryJobRegistry(JobRegistry):
    """
    In-memory job registry.

    Unknown jobs are treated as enabled so newly added jobs run without a
    descriptor being created first.
    """

    def __init__(self, descriptors: list[JobDescriptor] | None = None) -> None:
        self.jobs: dict[str, JobDescriptor] = {
            descriptor.name: descriptor for descriptor in descriptors or []
        }

    async def is_enabled(self, job_name: str) -> bool:
        descriptor = self.jobs.get(job_name)
        if descriptor is None:
            return True
        return descriptor.enabled

    async def record_run(self, job_name: str, timestamp: datetime) -> None:
        descriptor = self.jobs.get(job_name)
        if descriptor is None:
            descriptor = JobDescriptor(name=job_name)
            self.jobs[job_name] = descriptor
        descriptor.last_run = timestamp

    async def list_jobs(self) -> list[JobDescriptor]:
        return sorted(self.jobs.values(), key=lambda job: job.name)

    def set_enabled(self, job_name: str, enabled: bool) -> None:
        """Enable or disable a job."""
        descriptor = self.jobs.setdefault(job_name, JobDescriptor(name=job_name))
        descriptor.enabled = enabled
        logger.info("Job toggled", job=job_name, enabled=enabled)


class SubscriptionStore(ABC):
    """Abstract read access to registered users and their watches."""

    @abstractmethod
    async def get_user(self, discord_id: str) -> TornUser | None:
        """Get a registered user by Discord ID."""
        pass

    @abstractmethod
    async def get_users(self, discord_ids: list[str]) -> list[TornUser]:
        """Get registered users, in the order given, skipping unknown IDs."""
        pass

    @abstractmethod
    async def list_chain_watches(self) -> list[ChainWatch]:
        """Get enabled chain watches."""
        pass

    @abstractmethod
    async def list_watchlist_items(self) -> list[WatchlistItem]:
        """Get enabled market watchlist items."""
        pass

    @abstractmethod
    async def list_activity_subscriptions(self) -> list[ActivitySubscription]:
        """Get enabled activity reminder subscriptions."""
        pass


class InMemorySubscriptionStore(SubscriptionStore):
    """In-memory subscription store."""

    def __init__(
        self,
        users: list[TornUser] | None = None,
        chain_watches: list[ChainWatch] | None = None,
        watchlist: list[WatchlistItem] | None = None,
        activity_subscriptions: list[ActivitySubscription] | None = None,
    ) -> None:
        self.users: dict[str, TornUser] = {user.discord_id: user for user in users or []}
        self.chain_watches = list(chain_watches or [])
        self.watchlist = list(watchlist or [])
        self.activity_subscriptions = list(activity_subscriptions or [])

    async def get_user(self, discord_id: str) -> TornUser | None:
        return self.users.get(discord_id)

    async def get_users(self, discord_ids: list[str]) -> list[TornUser]:
        return [self.users[d] for d in discord_ids if d in self.users]

    async def list_chain_watches(self) -> list[ChainWatch]:
        return [watch for watch in self.chain_watches if watch.enabled]

    async def list_watchlist_items(self) -> list[WatchlistItem]:
        return [item for item in self.watchlist if item.enabled]

    async def list_activity_subscriptions(self) -> list[ActivitySubscription]:
        return [sub for sub in self.activity_subscriptions if sub.enabled]
