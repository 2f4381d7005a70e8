"""
Adaptive staleness cache for the polling system.

This module keeps the latest value of every tracked subject field together
with its freshness metadata. Each field is governed by one staleness policy;
reads report whether the cached value may still be served, and writes go to
the durable snapshot store before the in-memory entry is replaced.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from ..clock import Clock
from ..exceptions import PersistenceError
from ..state.manager import SnapshotStore
from .staleness import (
    CachedField,
    DailySubItem,
    SimpleTTL,
    StalenessPolicy,
    SubItemState,
)

logger = structlog.get_logger(__name__)


@dataclass
class CacheRead:
    """
    Result of a cache read.

    A stale read still carries the previous entry (if any) so callers can
    keep serving the last known value when a refresh fails.
    """

    fresh: bool
    entry: CachedField | None = None

    @property
    def value(self) -> Any:
        return self.entry.value if self.entry else None


class SubjectSession:
    """
    Reads and writes for one subject while its lock is held.

    Obtained through ``AdaptiveCache.session``; never shared across subjects.
    """

    def __init__(self, cache: "AdaptiveCache", subject_key: str) -> None:
        self.cache = cache
        self.subject_key = subject_key

    async def read(self, field_kind: str) -> CacheRead:
        return await self.cache._read_unlocked(self.subject_key, field_kind)

    async def write(
        self,
        field_kind: str,
        value: Any,
        *,
        active: bool = False,
        expires_at: datetime | None = None,
        completed: bool = False,
        sub_items: Mapping[str, bool | SubItemState] | None = None,
    ) -> CachedField:
        return await self.cache._write_unlocked(
            self.subject_key,
            field_kind,
            value,
            active=active,
            expires_at=expires_at,
            completed=completed,
            sub_items=sub_items,
        )

    async def stale_fields(self, field_kinds: Iterable[str]) -> list[str]:
        stale = []
        for field_kind in field_kinds:
            result = await self.read(field_kind)
            if not result.fresh:
                stale.append(field_kind)
        return stale


class AdaptiveCache:
    """
    Per-field cache with pluggable staleness policies.

    Reads and writes for the same subject are serialized by a per-subject
    lock; different subjects never wait on each other. Entries are never
    evicted, they are superseded in place.
    """

    def __init__(
        self,
        store: SnapshotStore,
        policies: Mapping[str, StalenessPolicy],
        clock: Clock,
        default_policy: StalenessPolicy | None = None,
    ):
        """
        Initialize the adaptive cache.

        Args:
            store: Durable snapshot store backing the cache
            policies: Staleness policy per field kind
            clock: Time source for freshness checks and fetch timestamps
            default_policy: Policy for field kinds missing from ``policies``
        """
        self.store = store
        self.policies = dict(policies)
        self.default_policy = default_policy or SimpleTTL()
        self.clock = clock

        self._entries: dict[tuple[str, str], CachedField] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "writes": 0,
            "rehydrations": 0,
            "persistence_failures": 0,
            "total_requests": 0,
        }

    def policy_for(self, field_kind: str) -> StalenessPolicy:
        """Get the staleness policy governing a field kind."""
        return self.policies.get(field_kind, self.default_policy)

    def _lock_for(self, subject_key: str) -> asyncio.Lock:
        lock = self._locks.get(subject_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subject_key] = lock
        return lock

    @asynccontextmanager
    async def session(self, subject_key: str) -> AsyncIterator[SubjectSession]:
        """
        Hold the subject's lock for a sequence of reads and writes.

        The lock is not reentrant: one-shot ``read``/``write`` calls on the
        cache must not be made for the same subject inside the session.
        """
        async with self._lock_for(subject_key):
            yield SubjectSession(self, subject_key)

    async def read(self, subject_key: str, field_kind: str) -> CacheRead:
        """
        Read a field, reporting whether it is fresh.

        Args:
            subject_key: Subject identifier
            field_kind: Field identifier

        Returns:
            CacheRead with the freshness verdict and the cached entry
        """
        async with self.session(subject_key) as session:
            return await session.read(field_kind)

    async def write(self, subject_key: str, field_kind: str, value: Any, **metadata: Any) -> CachedField:
        """
        Write a refreshed value through to the store, then to the cache.

        Raises:
            PersistenceError: If the store write fails; the cache is unchanged
        """
        async with self.session(subject_key) as session:
            return await session.write(field_kind, value, **metadata)

    async def stale_fields(self, subject_key: str, field_kinds: Iterable[str]) -> list[str]:
        """Get the field kinds of a subject that need refetching."""
        async with self.session(subject_key) as session:
            return await session.stale_fields(field_kinds)

    def peek(self, subject_key: str, field_kind: str) -> CachedField | None:
        """Get the in-memory entry without freshness checks or rehydration."""
        return self._entries.get((subject_key, field_kind))

    async def _read_unlocked(self, subject_key: str, field_kind: str) -> CacheRead:
        self._stats["total_requests"] += 1
        entry = self._entries.get((subject_key, field_kind))
        if entry is None:
            entry = await self._rehydrate(subject_key, field_kind)

        if entry is None:
            self._stats["misses"] += 1
            return CacheRead(fresh=False)

        policy = self.policy_for(field_kind)
        # An entry written under another policy cannot be judged by this one
        fresh = entry.policy_kind == policy.kind and policy.is_fresh(
            entry, self.clock.now()
        )
        self._stats["hits" if fresh else "misses"] += 1
        return CacheRead(fresh=fresh, entry=entry)

    async def _rehydrate(self, subject_key: str, field_kind: str) -> CachedField | None:
        stored = await self.store.find_latest(subject_key, field_kind)
        if stored is None:
            return None

        if isinstance(stored, CachedField):
            entry = stored
        elif isinstance(stored, dict) and "policy_kind" in stored:
            try:
                entry = CachedField.from_dict(stored)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(
                    "Ignoring unreadable stored cache entry",
                    subject=subject_key,
                    field=field_kind,
                    error=str(e),
                )
                return None
        else:
            return None

        self._entries[(subject_key, field_kind)] = entry
        self._stats["rehydrations"] += 1
        logger.debug("Rehydrated cache entry", subject=subject_key, field=field_kind)
        return entry

    async def _write_unlocked(
        self,
        subject_key: str,
        field_kind: str,
        value: Any,
        *,
        active: bool,
        expires_at: datetime | None,
        completed: bool,
        sub_items: Mapping[str, bool | SubItemState] | None,
    ) -> CachedField:
        now = self.clock.now()
        policy = self.policy_for(field_kind)
        previous = self._entries.get((subject_key, field_kind))

        entry = CachedField(
            value=value,
            policy_kind=policy.kind,
            last_fetched=now,
            active=active,
            expires_at=expires_at if active else None,
            completed=completed,
            sub_items=self._merge_sub_items(policy, previous, sub_items, now),
        )

        try:
            await self.store.upsert(subject_key, field_kind, entry.to_dict())
        except Exception as e:
            self._stats["persistence_failures"] += 1
            logger.error(
                "Failed to persist cache entry",
                subject=subject_key,
                field=field_kind,
                error=str(e),
            )
            raise PersistenceError(
                f"Failed to persist {field_kind} for {subject_key}",
                subject_key=subject_key,
                context={"field": field_kind},
            ) from e

        self._entries[(subject_key, field_kind)] = entry
        self._stats["writes"] += 1
        return entry

    @staticmethod
    def _merge_sub_items(
        policy: StalenessPolicy,
        previous: CachedField | None,
        sub_items: Mapping[str, bool | SubItemState] | None,
        now: datetime,
    ) -> dict[str, SubItemState]:
        merged: dict[str, SubItemState] = {}
        # Sub-items not refreshed by this write keep their own timestamps
        if previous is not None and isinstance(policy, DailySubItem):
            merged.update(previous.sub_items)

        for name, state in (sub_items or {}).items():
            if isinstance(state, SubItemState):
                merged[name] = state
            else:
                merged[name] = SubItemState(completed=bool(state), last_fetched=now)
        return merged

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total_requests = self._stats["total_requests"]
        hit_rate = (
            (self._stats["hits"] / total_requests * 100) if total_requests > 0 else 0
        )

        return {
            "cache_size": len(self._entries),
            "subjects": len({subject for subject, _ in self._entries}),
            "hit_rate_percent": round(hit_rate, 2),
            **self._stats,
        }
