"""
Staleness policies for the adaptive cache.

Different facts decay by different rules: time-bounded conditions expire,
one-shot daily achievements reset at UTC midnight, and multi-part daily
achievements reset per part. Each rule is one variant of a closed set of
policies sharing a single ``is_fresh(entry, now)`` interface.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

DEFAULT_MAX_AGE = timedelta(hours=1)


class PolicyKind(str, Enum):
    """Tag identifying which staleness rule governs a cached field."""

    EXPIRY_GATED = "expiry_gated"
    SIMPLE_TTL = "simple_ttl"
    DAILY_COMPLETION = "daily_completion"
    DAILY_SUB_ITEM = "daily_sub_item"


@dataclass
class SubItemState:
    """One independently tracked part of a daily sub-item field."""

    completed: bool
    last_fetched: datetime | None = None


@dataclass
class CachedField:
    """
    A cached attribute of one subject plus its freshness metadata.

    ``expires_at`` is only meaningful while ``active`` is true. ``completed``
    is used by daily-completion fields and ``sub_items`` by daily sub-item
    fields.
    """

    value: Any
    policy_kind: PolicyKind
    last_fetched: datetime | None
    active: bool = False
    expires_at: datetime | None = None
    completed: bool = False
    sub_items: dict[str, SubItemState] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CachedField":
        """Rebuild an entry from the output of ``to_dict``."""
        return cls(
            value=data.get("value"),
            policy_kind=PolicyKind(data["policy_kind"]),
            last_fetched=_parse(data.get("last_fetched")),
            active=bool(data.get("active", False)),
            expires_at=_parse(data.get("expires_at")),
            completed=bool(data.get("completed", False)),
            sub_items={
                name: SubItemState(
                    completed=bool(item.get("completed", False)),
                    last_fetched=_parse(item.get("last_fetched")),
                )
                for name, item in (data.get("sub_items") or {}).items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage and status output."""
        return {
            "value": self.value,
            "policy_kind": self.policy_kind.value,
            "last_fetched": _iso(self.last_fetched),
            "active": self.active,
            "expires_at": _iso(self.expires_at) if self.active else None,
            "completed": self.completed,
            "sub_items": {
                name: {"completed": item.completed, "last_fetched": _iso(item.last_fetched)}
                for name, item in self.sub_items.items()
            },
        }


def _iso(moment: datetime | None) -> str | None:
    return moment.isoformat() if moment else None


def _parse(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def as_utc(moment: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def same_utc_day(first: datetime, second: datetime) -> bool:
    """Check whether two moments fall on the same UTC calendar day."""
    return as_utc(first).date() == as_utc(second).date()


def start_of_utc_day(moment: datetime) -> datetime:
    """Midnight UTC of the day containing ``moment``."""
    utc = as_utc(moment)
    return datetime(utc.year, utc.month, utc.day, tzinfo=UTC)


@dataclass(frozen=True)
class ExpiryGated:
    """
    Fresh while an active condition has not expired and is not too old.

    Inactive conditions are always stale: they may have just become active,
    so they are re-checked every time they are consulted.
    """

    max_age: timedelta = DEFAULT_MAX_AGE
    kind: PolicyKind = field(default=PolicyKind.EXPIRY_GATED, init=False)

    def is_fresh(self, entry: CachedField, now: datetime) -> bool:
        if entry.last_fetched is None or not entry.active:
            return False
        if entry.expires_at is None:
            return False
        now = as_utc(now)
        if now >= as_utc(entry.expires_at):
            return False
        return now - as_utc(entry.last_fetched) < self.max_age


@dataclass(frozen=True)
class SimpleTTL:
    """Fresh while the value is younger than ``max_age``."""

    max_age: timedelta = DEFAULT_MAX_AGE
    kind: PolicyKind = field(default=PolicyKind.SIMPLE_TTL, init=False)

    def is_fresh(self, entry: CachedField, now: datetime) -> bool:
        if entry.last_fetched is None:
            return False
        return as_utc(now) - as_utc(entry.last_fetched) < self.max_age


@dataclass(frozen=True)
class DailyCompletion:
    """Fresh once marked complete, until the UTC day rolls over."""

    kind: PolicyKind = field(default=PolicyKind.DAILY_COMPLETION, init=False)

    def is_fresh(self, entry: CachedField, now: datetime) -> bool:
        if entry.last_fetched is None or not entry.completed:
            return False
        return same_utc_day(entry.last_fetched, now)


@dataclass(frozen=True)
class DailySubItem:
    """
    Daily completion evaluated per named sub-item.

    The field is fresh only when every expected sub-item is individually
    complete and was fetched on the current UTC day.
    """

    items: tuple[str, ...]
    kind: PolicyKind = field(default=PolicyKind.DAILY_SUB_ITEM, init=False)

    def is_item_fresh(self, item: SubItemState | None, now: datetime) -> bool:
        if item is None or item.last_fetched is None or not item.completed:
            return False
        return same_utc_day(item.last_fetched, now)

    def is_fresh(self, entry: CachedField, now: datetime) -> bool:
        names = self.items or tuple(entry.sub_items)
        if not names:
            return False
        return all(self.is_item_fresh(entry.sub_items.get(name), now) for name in names)


StalenessPolicy = ExpiryGated | SimpleTTL | DailyCompletion | DailySubItem
