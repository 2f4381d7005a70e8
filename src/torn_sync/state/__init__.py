"""
State management for the Torn sync agent.

This package provides the abstract snapshot, job registry and subscription
stores together with in-memory backends.
"""

from .manager import (
    InMemoryJobRegistry,
    InMemorySnapshotStore,
    InMemorySubscriptionStore,
    JobRegistry,
    SnapshotStore,
    SubscriptionStore,
)

__all__ = [
    "SnapshotStore",
    "JobRegistry",
    "SubscriptionStore",
    "InMemorySnapshotStore",
    "InMemoryJobRegistry",
    "InMemorySubscriptionStore",
]
