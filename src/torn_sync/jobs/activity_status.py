"""
Daily activity status and reminders.

Tracks, per registered user, the daily activities that are easy to forget
(city shop items, xanax, energy refill, education, city bank investment,
virus coding, organized crime, casino tickets and wheels) through the adaptive
cache, and sends each subscriber one reminder per UTC day listing what is
still incomplete.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from ..config import CacheConfig
from ..exceptions import TransformError
from ..models import ActivitySubscription, TornUser
from ..polling.cache import AdaptiveCache, SubjectSession
from ..polling.notifications import DAILY_REMINDER
from ..polling.orchestrator import PollingJob, SyncContext
from ..polling.staleness import (
    DailyCompletion,
    DailySubItem,
    ExpiryGated,
    SimpleTTL,
    StalenessPolicy,
    start_of_utc_day,
)

logger = structlog.get_logger(__name__)

CITY_ITEMS = "city_items"
XANAX = "xanax"
ENERGY_REFILL = "energy_refill"
EDUCATION = "education"
INVESTMENT = "investment"
VIRUS_CODING = "virus_coding"
FACTION_OC = "faction_oc"
CASINO_TICKETS = "casino_tickets"
WHEELS = "wheels"

ACTIVITY_FIELDS = (
    CITY_ITEMS,
    XANAX,
    ENERGY_REFILL,
    EDUCATION,
    INVESTMENT,
    VIRUS_CODING,
    FACTION_OC,
    CASINO_TICKETS,
    WHEELS,
)
# User log access needs a full access key
FULL_KEY_FIELDS = frozenset({CASINO_TICKETS, WHEELS})
WHEEL_NAMES = ("lame", "mediocre", "awesomeness")

# Fields refreshed by one shared fetch
PERSONAL_STATS = "personal_stats"
FIELD_SOURCES = dict.fromkeys((CITY_ITEMS, XANAX, ENERGY_REFILL), PERSONAL_STATS)

FIELD_ENDPOINTS = {
    EDUCATION: "user/education",
    INVESTMENT: "user/money",
    VIRUS_CODING: "user/virus",
    FACTION_OC: "user/organizedcrime",
    CASINO_TICKETS: "user/log",
    WHEELS: "user/log",
}
PERSONAL_STATS_ENDPOINT = "user/personalstats"

LOG_CATEGORIES = {CASINO_TICKETS: 185, WHEELS: 192}
LOG_LIMIT = 75
CASINO_LOTTERY_TITLE = "Casino lottery bet"


@dataclass(frozen=True)
class DailyCounter:
    """
    A personal stat whose daily progress saturates at a target.

    Attributes:
        label: Name shown in reminders
        stat: Stat name in the historical personal stats lookup
        path: Location of the running total in the current personal stats
        target: Daily amount that completes the activity
    """

    label: str
    stat: str
    path: tuple[str, ...]
    target: int


DAILY_COUNTERS = {
    CITY_ITEMS: DailyCounter(
        "City Items", "cityitemsbought", ("trading", "items", "bought", "shops"), 100
    ),
    XANAX: DailyCounter("Xanax", "xantaken", ("drugs", "xanax"), 3),
    ENERGY_REFILL: DailyCounter("Energy Refill", "refills", ("other", "refills", "energy"), 1),
}

ApiCall = Callable[[str, dict[str, Any] | None], Awaitable[dict[str, Any]]]


def build_policies(config: CacheConfig) -> dict[str, StalenessPolicy]:
    """Staleness policy for every activity field."""
    return {
        CITY_ITEMS: DailyCompletion(),
        XANAX: DailyCompletion(),
        ENERGY_REFILL: DailyCompletion(),
        EDUCATION: ExpiryGated(config.max_age_for(EDUCATION)),
        INVESTMENT: ExpiryGated(config.max_age_for(INVESTMENT)),
        VIRUS_CODING: ExpiryGated(config.max_age_for(VIRUS_CODING)),
        FACTION_OC: SimpleTTL(config.max_age_for(FACTION_OC)),
        CASINO_TICKETS: DailyCompletion(),
        WHEELS: DailySubItem(WHEEL_NAMES),
    }


def fields_for(user: TornUser) -> tuple[str, ...]:
    if user.has_full_key:
        return ACTIVITY_FIELDS
    return tuple(name for name in ACTIVITY_FIELDS if name not in FULL_KEY_FIELDS)


def source_for(field_kind: str) -> str:
    """The fetch that refreshes a field; shared by the daily counters."""
    return FIELD_SOURCES.get(field_kind, field_kind)


def field_params(field_kind: str, now: datetime) -> dict[str, Any] | None:
    category = LOG_CATEGORIES.get(field_kind)
    if category is None:
        return None
    return {
        "cat": category,
        "limit": LOG_LIMIT,
        "from": int(start_of_utc_day(now).timestamp()),
    }


async def fetch_source(source: str, call: ApiCall, now: datetime) -> dict[str, Any]:
    """
    Fetch the raw payload behind one or more activity fields.

    The daily counters need the current totals and the totals at midnight UTC.
    """
    if source == PERSONAL_STATS:
        current = await call(PERSONAL_STATS_ENDPOINT, {"cat": "all"})
        midnight = await call(
            PERSONAL_STATS_ENDPOINT,
            {
                "stat": ",".join(counter.stat for counter in DAILY_COUNTERS.values()),
                "timestamp": int(start_of_utc_day(now).timestamp()),
            },
        )
        return {"current": current, "midnight": midnight}
    return await call(FIELD_ENDPOINTS[source], field_params(source, now))


@dataclass
class FieldUpdate:
    """A refreshed activity field ready to be written to the cache."""

    value: Any
    active: bool = False
    expires_at: datetime | None = None
    completed: bool = False
    sub_items: dict[str, bool] | None = None


def _daily_counter(raw: dict[str, Any], counter: DailyCounter) -> FieldUpdate:
    total = raw["current"]["personalstats"]
    for part in counter.path:
        total = total[part]
    at_midnight = next(
        (
            int(stat["value"])
            for stat in raw["midnight"]["personalstats"]
            if stat.get("name") == counter.stat
        ),
        0,
    )
    done = max(int(total) - at_midnight, 0)
    completed = done >= counter.target
    return FieldUpdate(
        value={"current": done, "target": counter.target}, active=completed, completed=completed
    )


def _timed_condition(active: bool, until: Any) -> FieldUpdate:
    expires_at = datetime.fromtimestamp(until, UTC) if active else None
    return FieldUpdate(
        value={"active": active, "until": until if active else None},
        active=active,
        expires_at=expires_at,
    )


def _education(raw: dict[str, Any], now_ts: float) -> FieldUpdate:
    current = (raw.get("education") or {}).get("current") or {}
    until = current.get("until") or 0
    return _timed_condition((current.get("id") or 0) > 0 and until > now_ts, until)


def _investment(raw: dict[str, Any], now_ts: float) -> FieldUpdate:
    city_bank = (raw.get("money") or {}).get("city_bank") or {}
    until = city_bank.get("until") or 0
    return _timed_condition((city_bank.get("amount") or 0) > 0 and until > now_ts, until)


def _virus_coding(raw: dict[str, Any], now_ts: float) -> FieldUpdate:
    virus = raw.get("virus") or {}
    item = virus.get("item") or {}
    until = virus.get("until") or 0
    return _timed_condition((item.get("id") or 0) > 0 and until > now_ts, until)


def _faction_oc(raw: dict[str, Any], torn_id: int) -> FieldUpdate:
    crime = raw.get("organizedCrime") or {}
    slots = crime.get("slots") or []
    active = bool(crime.get("id")) and any(
        ((slot or {}).get("user") or {}).get("id") == torn_id for slot in slots
    )
    return FieldUpdate(value={"active": active}, active=active)


def _todays_log(raw: dict[str, Any], now: datetime) -> list[dict[str, Any]]:
    start = start_of_utc_day(now).timestamp()
    return [entry for entry in raw.get("log") or [] if entry.get("timestamp", 0) >= start]


def _casino_tickets(raw: dict[str, Any], now: datetime, target: int) -> FieldUpdate:
    used = sum(
        1
        for entry in _todays_log(raw, now)
        if (entry.get("details") or {}).get("title") == CASINO_LOTTERY_TITLE
    )
    completed = used >= target
    return FieldUpdate(
        value={"used": used, "target": target}, active=completed, completed=completed
    )


def _wheels(raw: dict[str, Any], now: datetime) -> FieldUpdate:
    spun = dict.fromkeys(WHEEL_NAMES, False)
    for entry in _todays_log(raw, now):
        if (entry.get("details") or {}).get("category") != "Casino":
            continue
        wheel = str((entry.get("data") or {}).get("wheel") or "").lower()
        if "lame" in wheel:
            spun["lame"] = True
        elif "mediocr" in wheel:
            spun["mediocre"] = True
        elif "awesome" in wheel:
            spun["awesomeness"] = True
    return FieldUpdate(value=dict(spun), completed=all(spun.values()), sub_items=spun)


def transform_field(
    field_kind: str,
    raw: dict[str, Any],
    user: TornUser,
    now: datetime,
    ticket_target: int = 75,
) -> FieldUpdate:
    """
    Map a raw Torn payload to a cache update for one activity field.

    Raises:
        TransformError: If the payload does not have the expected shape
    """
    now_ts = now.timestamp()
    try:
        if field_kind in DAILY_COUNTERS:
            return _daily_counter(raw, DAILY_COUNTERS[field_kind])
        if field_kind == EDUCATION:
            return _education(raw, now_ts)
        if field_kind == INVESTMENT:
            return _investment(raw, now_ts)
        if field_kind == VIRUS_CODING:
            return _virus_coding(raw, now_ts)
        if field_kind == FACTION_OC:
            return _faction_oc(raw, user.torn_id)
        if field_kind == CASINO_TICKETS:
            return _casino_tickets(raw, now, ticket_target)
        if field_kind == WHEELS:
            return _wheels(raw, now)
    except (AttributeError, KeyError, TypeError, ValueError, OverflowError) as e:
        raise TransformError(
            f"Malformed {field_kind} payload", context={"field": field_kind}
        ) from e
    raise TransformError(f"Unknown activity field {field_kind}")


@dataclass
class ActivityStatus:
    """Last known value of every activity field of one user."""

    discord_id: str
    values: dict[str, Any] = field(default_factory=dict)
    fresh: dict[str, bool] = field(default_factory=dict)

    def incomplete(self, subscription: ActivitySubscription | None = None) -> list[str]:
        """Reminder lines for the activities still to do today."""
        lines = []
        for name, counter in DAILY_COUNTERS.items():
            progress = self.values.get(name)
            if progress and progress["current"] < progress["target"]:
                lines.append(
                    f"❌ **{counter.label}:** {progress['current']}/{progress['target']}"
                )

        education = self.values.get(EDUCATION)
        if education and not education["active"] and (
            subscription is None or subscription.notify_education
        ):
            lines.append("❌ **Education:** Not enrolled")

        investment = self.values.get(INVESTMENT)
        if investment and not investment["active"] and (
            subscription is None or subscription.notify_investment
        ):
            lines.append("❌ **Investment:** No city bank investment")

        virus = self.values.get(VIRUS_CODING)
        if virus and not virus["active"] and (
            subscription is None or subscription.notify_virus
        ):
            lines.append("❌ **Virus Coding:** Not coding")

        oc = self.values.get(FACTION_OC)
        if oc and not oc["active"]:
            lines.append("❌ **Faction OC:** Not in an organized crime")

        tickets = self.values.get(CASINO_TICKETS)
        if tickets and tickets["used"] < tickets["target"]:
            lines.append(f"❌ **Casino Tickets:** {tickets['used']}/{tickets['target']}")

        wheels = self.values.get(WHEELS)
        if wheels:
            unspun = [name for name in WHEEL_NAMES if not wheels.get(name)]
            if unspun:
                lines.append(f"❌ **Wheels:** {', '.join(unspun)} not spun")
        return lines


class ActivityStatusService:
    """
    Keeps activity fields fresh in the adaptive cache.

    Only stale fields are fetched, concurrently. A field whose fetch or
    transform fails keeps its previous cached value. A failed fetch for a
    field with nothing cached fails the whole refresh.
    """

    def __init__(self, cache: AdaptiveCache, ticket_target: int = 75):
        self.cache = cache
        self.ticket_target = ticket_target

    @staticmethod
    def subject_key(discord_id: str) -> str:
        return f"user:{discord_id}"

    async def fetch_stale(
        self, session: SubjectSession, user: TornUser, call: ApiCall, now: datetime
    ) -> dict[str, Any]:
        """
        Fetch every stale field of a user.

        Returns:
            Raw payload per fetched field; failed fields are left out

        Raises:
            Exception: The fetch error of a failed field with no cached value
        """
        stale = await session.stale_fields(fields_for(user))
        if not stale:
            return {}

        sources = list(dict.fromkeys(source_for(name) for name in stale))
        results = await asyncio.gather(
            *(fetch_source(source, call, now) for source in sources),
            return_exceptions=True,
        )
        by_source = dict(zip(sources, results))

        raw: dict[str, Any] = {}
        failed: dict[str, Exception] = {}
        for name in stale:
            result = by_source[source_for(name)]
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failed[name] = result
            else:
                raw[name] = result

        for name, error in failed.items():
            cached = await session.read(name)
            if cached.entry is None:
                logger.warning(
                    "Activity field fetch failed with nothing cached",
                    discord_id=user.discord_id,
                    field=name,
                    error=str(error),
                )
                raise error
            logger.warning(
                "Activity field fetch failed, keeping cached value",
                discord_id=user.discord_id,
                field=name,
                error=str(error),
            )
        return raw

    def transform(
        self, user: TornUser, raw: dict[str, Any], now: datetime
    ) -> dict[str, FieldUpdate]:
        updates = {}
        for name, payload in raw.items():
            try:
                updates[name] = transform_field(name, payload, user, now, self.ticket_target)
            except TransformError as e:
                logger.warning(
                    "Dropping malformed activity payload",
                    discord_id=user.discord_id,
                    field=name,
                    error=str(e),
                )
        return updates

    async def write(self, session: SubjectSession, updates: dict[str, FieldUpdate]) -> None:
        for name, update in updates.items():
            await session.write(
                name,
                update.value,
                active=update.active,
                expires_at=update.expires_at,
                completed=update.completed,
                sub_items=update.sub_items,
            )

    async def status(self, session: SubjectSession, user: TornUser) -> ActivityStatus:
        status = ActivityStatus(discord_id=user.discord_id)
        for name in fields_for(user):
            result = await session.read(name)
            status.fresh[name] = result.fresh
            if result.entry is not None:
                status.values[name] = result.value
        return status

    async def refresh(self, user: TornUser, call: ApiCall, now: datetime) -> ActivityStatus:
        """Refresh stale fields of one user and return the resulting status."""
        async with self.cache.session(self.subject_key(user.discord_id)) as session:
            raw = await self.fetch_stale(session, user, call, now)
            await self.write(session, self.transform(user, raw, now))
            return await self.status(session, user)


@dataclass
class ReminderTarget:
    subscription: ActivitySubscription
    user: TornUser


@dataclass
class ActivityFetch:
    raw: dict[str, Any]
    fetched_at: datetime


def format_reminder(subscription: ActivitySubscription, lines: list[str]) -> str:
    return (
        f"🔔 **Daily Task Reminder** (<@{subscription.discord_user_id}>)\n\n"
        f"⏰ **{subscription.hours_before_reset} hours until server reset** (00:00 UTC)\n\n"
        "**Incomplete tasks:**\n" + "\n".join(lines)
    )


class ActivityStatusJob(PollingJob[ReminderTarget, ActivityFetch, dict[str, FieldUpdate]]):
    """Sends subscribers their daily reminder at the hour they chose."""

    name = "activity-reminders"
    description = "Remind subscribers of incomplete daily activities"

    def __init__(self, context: SyncContext, service: ActivityStatusService | None = None):
        super().__init__(context)
        job_config = context.settings.job_config
        self.interval_seconds = job_config.activity_status_interval_seconds
        self.service = service or ActivityStatusService(
            context.cache, job_config.casino_ticket_target
        )

    async def collect_subjects(self) -> list[ReminderTarget]:
        now = self.context.clock.now()
        today = now.date().isoformat()
        targets = []
        for subscription in await self.context.subscriptions.list_activity_subscriptions():
            if now.hour != subscription.reminder_hour_utc:
                continue
            key = self.service.subject_key(subscription.discord_user_id)
            if not self.context.gate.should_emit(key, DAILY_REMINDER, today, now):
                continue

            user = await self.context.subscriptions.get_user(subscription.discord_user_id)
            if user is None:
                self.log.warning(
                    "Reminder subscriber is not registered",
                    discord_id=subscription.discord_user_id,
                )
                continue
            targets.append(ReminderTarget(subscription, user))
        return targets

    def subject_key(self, subject: ReminderTarget) -> str:
        return self.service.subject_key(subject.user.discord_id)

    def subject_lock(self, subject: ReminderTarget):
        return self.service.cache.session(self.subject_key(subject))

    async def fetch(self, subject: ReminderTarget) -> ActivityFetch:
        session: SubjectSession = self.subject_context(subject)
        api_key = self.context.vault.decrypt(subject.user.api_key)
        now = self.context.clock.now()

        async def call(endpoint: str, params: dict[str, Any] | None) -> dict[str, Any]:
            return await self.call_api(endpoint, api_key, params)

        raw = await self.service.fetch_stale(session, subject.user, call, now)
        return ActivityFetch(raw=raw, fetched_at=now)

    def transform(self, subject: ReminderTarget, raw: ActivityFetch) -> dict[str, FieldUpdate]:
        return self.service.transform(subject.user, raw.raw, raw.fetched_at)

    async def persist(self, subject: ReminderTarget, data: dict[str, FieldUpdate]) -> None:
        await self.service.write(self.subject_context(subject), data)

    async def notify(self, subject: ReminderTarget, data: dict[str, FieldUpdate]) -> int:
        session: SubjectSession = self.subject_context(subject)
        status = await self.service.status(session, subject.user)
        lines = status.incomplete(subject.subscription)

        now = self.context.clock.now()
        key = self.subject_key(subject)
        today = now.date().isoformat()
        if not lines:
            unknown = [name for name in fields_for(subject.user) if name not in status.values]
            if unknown:
                # Retried on the next tick within the reminder hour
                self.log.warning(
                    "Activity status unknown, reminder not recorded",
                    discord_id=subject.user.discord_id,
                    fields=unknown,
                )
                return 0
            # Nothing to remind about; still counts as today's reminder
            self.context.gate.record_emission(key, DAILY_REMINDER, today, now)
            self.log.info("All activities complete", discord_id=subject.user.discord_id)
            return 0

        await self.context.notifier.deliver(
            subject.subscription.channel_id, format_reminder(subject.subscription, lines)
        )
        self.context.gate.record_emission(key, DAILY_REMINDER, today, now)
        self.log.info(
            "Sent daily reminder",
            discord_id=subject.user.discord_id,
            incomplete_tasks=len(lines),
        )
        return 1
