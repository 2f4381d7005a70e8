"""
Faction chain timeout watcher.

Polls each watched faction's chain and warns watchers in their channel when
the chain timeout drops to their threshold. Factions whose timeout is well
above every threshold are not polled again until it gets close.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from ..exceptions import CredentialError, DeliveryError, TransformError
from ..models import ChainStatus, ChainWatch, TornUser
from ..polling.notifications import CHAIN_TIMEOUT
from ..polling.orchestrator import PollingJob, SyncContext

# Extra margin so a scheduled check lands before the tightest threshold
CHECK_BUFFER_SECONDS = 10


@dataclass
class FactionChainPoll:
    """All watches of one faction plus the members whose keys may be used."""

    faction_id: int
    watches: list[ChainWatch]
    members: list[TornUser]

    @property
    def min_threshold(self) -> int:
        return min(watch.seconds_before_fail for watch in self.watches)


def format_chain_warning(watch: ChainWatch, chain: ChainStatus) -> str:
    return (
        f"⚠️ **Chain Timeout Warning** (<@{watch.discord_id}>)\n\n"
        f"🔗 **Chain:** {chain.current} / {chain.max}\n"
        f"⏱️ **Timeout:** {chain.timeout} seconds remaining\n"
        f"📊 **Modifier:** {chain.modifier:.2f}x\n\n"
        "Someone needs to attack to keep the chain alive!"
    )


class ChainWatchJob(PollingJob[FactionChainPoll, dict[str, Any], ChainStatus]):
    """Warns faction members before their chain times out."""

    name = "chain-watch"
    description = "Warn watchers before their faction chain times out"
    reentrant = False

    def __init__(self, context: SyncContext):
        super().__init__(context)
        self.interval_seconds = context.settings.job_config.chain_watch_interval_seconds
        # faction id -> monotonic time of the next due check
        self.next_check: dict[int, float] = {}

    async def collect_subjects(self) -> list[FactionChainPoll]:
        watches = await self.context.subscriptions.list_chain_watches()
        by_faction: dict[int, list[ChainWatch]] = defaultdict(list)
        for watch in watches:
            by_faction[watch.faction_id].append(watch)

        now = self.context.clock.monotonic()
        polls = []
        for faction_id, faction_watches in by_faction.items():
            due = self.next_check.get(faction_id)
            if due is not None and now < due:
                continue

            users = await self.context.subscriptions.get_users(
                [watch.discord_id for watch in faction_watches]
            )
            members = [user for user in users if user.faction_id == faction_id]
            if not members:
                self.log.error("No registered members for chain watch", faction_id=faction_id)
                continue
            polls.append(FactionChainPoll(faction_id, faction_watches, members))
        return polls

    def subject_key(self, subject: FactionChainPoll) -> str:
        return f"faction:{subject.faction_id}"

    async def fetch(self, subject: FactionChainPoll) -> dict[str, Any]:
        credentials = self.context.vault.credentials_for(subject.members)
        credential = self.context.rotator.next(self.subject_key(subject), credentials)
        if credential is None:
            raise CredentialError(f"No usable member key for faction {subject.faction_id}")

        self.log.debug(
            "Polling faction chain",
            faction_id=subject.faction_id,
            discord_id=credential.holder_id,
        )
        return await self.call_api("faction/chain", credential.api_key)

    def transform(self, subject: FactionChainPoll, raw: dict[str, Any]) -> ChainStatus:
        chain = raw.get("chain")
        if chain is None:
            return ChainStatus()
        try:
            return ChainStatus.model_validate(chain)
        except ValidationError as e:
            raise TransformError(
                "Malformed faction chain payload", context={"faction_id": subject.faction_id}
            ) from e

    async def persist(self, subject: FactionChainPoll, data: ChainStatus) -> None:
        await self.context.snapshots.upsert(
            self.subject_key(subject), "chain", data.model_dump(by_alias=True)
        )

    async def notify(self, subject: FactionChainPoll, data: ChainStatus) -> int:
        self._schedule_next_check(subject, data)
        if not data.is_active:
            return 0

        gate = self.context.gate
        now = self.context.clock.now()
        sent = 0
        for watch in subject.watches:
            if data.timeout > watch.seconds_before_fail:
                continue

            alert_key = f"{self.subject_key(subject)}:user:{watch.discord_id}"
            if not gate.should_emit(alert_key, CHAIN_TIMEOUT, data.current, now):
                continue

            try:
                await self.context.notifier.deliver(
                    watch.channel_id, format_chain_warning(watch, data)
                )
            except DeliveryError as e:
                self.log.error(
                    "Failed to send chain warning",
                    discord_id=watch.discord_id,
                    faction_id=subject.faction_id,
                    error=str(e),
                )
                continue

            gate.record_emission(alert_key, CHAIN_TIMEOUT, data.current, now)
            sent += 1
            self.log.info(
                "Sent chain timeout warning",
                discord_id=watch.discord_id,
                faction_id=subject.faction_id,
                timeout=data.timeout,
                threshold=watch.seconds_before_fail,
                chain_current=data.current,
            )
        return sent

    def _schedule_next_check(self, subject: FactionChainPoll, chain: ChainStatus) -> None:
        if not chain.is_active:
            self.next_check.pop(subject.faction_id, None)
            return

        threshold = subject.min_threshold
        if chain.timeout > threshold + CHECK_BUFFER_SECONDS:
            delay = chain.timeout - threshold - CHECK_BUFFER_SECONDS
            self.next_check[subject.faction_id] = self.context.clock.monotonic() + delay
            self.log.info(
                "Scheduled next chain check",
                faction_id=subject.faction_id,
                current_timeout=chain.timeout,
                min_threshold=threshold,
                seconds_until_next_check=delay,
            )
        else:
            self.next_check.pop(subject.faction_id, None)
