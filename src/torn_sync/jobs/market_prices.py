"""
Item market price monitor.

Polls the item market for every watchlist entry and alerts when the lowest
listing drops below the entry's threshold. The same price is never alerted
twice; the alert re-arms once the price is back at or above the threshold.
"""

from typing import Any

from ..exceptions import CredentialError, TransformError
from ..models import MarketSnapshot, WatchlistItem
from ..polling.notifications import PRICE_ALERT
from ..polling.orchestrator import PollingJob, SyncContext

LISTING_LIMIT = 20


def lowest_listing(item_id: int, raw: dict[str, Any]) -> MarketSnapshot:
    """Reduce an ``itemmarket`` payload to its lowest listing."""
    market = raw.get("itemmarket") or {}
    listings = market.get("listings") or []
    try:
        prices = [int(listing["price"]) for listing in listings]
    except (KeyError, TypeError, ValueError) as e:
        raise TransformError(
            "Malformed item market listing", context={"item_id": item_id}
        ) from e
    return MarketSnapshot(
        item_id=item_id,
        lowest_price=min(prices) if prices else None,
        listing_count=len(prices),
    )


def format_price_alert(item: WatchlistItem, price: int) -> str:
    return "\n".join(
        [
            "🚨 Cheap item found!",
            f"💊 {item.name} listed at ${price:,} (below ${item.alert_below:,})",
            f"<@{item.discord_user_id}>",
            "https://www.torn.com/page.php?sid=ItemMarket#/market/view=search"
            f"&itemID={item.item_id}",
        ]
    )


class MarketPriceJob(PollingJob[WatchlistItem, dict[str, Any], MarketSnapshot]):
    """Alerts on item market listings below watchlist thresholds."""

    name = "market-prices"
    description = "Alert when watched items are listed below their threshold"

    def __init__(self, context: SyncContext):
        super().__init__(context)
        self.interval_seconds = context.settings.job_config.market_price_interval_seconds
        self._watched: set[str] = set()

    async def collect_subjects(self) -> list[WatchlistItem]:
        items = await self.context.subscriptions.list_watchlist_items()
        watched = {self.subject_key(item) for item in items}
        # Drop alert records of items no longer watched
        for key in self._watched - watched:
            self.context.gate.reset(key, PRICE_ALERT)
        self._watched = watched
        return items

    def subject_key(self, subject: WatchlistItem) -> str:
        return f"watch:{subject.discord_user_id}:item:{subject.item_id}"

    def _api_key(self, item: WatchlistItem) -> str:
        if item.api_key:
            return self.context.vault.decrypt(item.api_key)
        if self.context.settings.torn_api_key:
            return self.context.settings.torn_api_key
        raise CredentialError(f"No API key available for item {item.item_id}")

    async def fetch(self, subject: WatchlistItem) -> dict[str, Any]:
        return await self.call_api(
            f"market/{subject.item_id}/itemmarket",
            self._api_key(subject),
            params={"limit": LISTING_LIMIT},
        )

    def transform(self, subject: WatchlistItem, raw: dict[str, Any]) -> MarketSnapshot:
        return lowest_listing(subject.item_id, raw)

    async def persist(self, subject: WatchlistItem, data: MarketSnapshot) -> None:
        snapshot = data.model_copy(update={"observed_at": self.context.clock.now()})
        await self.context.snapshots.upsert(
            f"item:{subject.item_id}", "market", snapshot.model_dump(mode="json")
        )

    async def notify(self, subject: WatchlistItem, data: MarketSnapshot) -> int:
        price = data.lowest_price
        if price is None:
            return 0

        key = self.subject_key(subject)
        gate = self.context.gate
        if price >= subject.alert_below:
            gate.reset(key, PRICE_ALERT)
            return 0

        now = self.context.clock.now()
        if not gate.should_emit(key, PRICE_ALERT, price, now):
            self.log.info("Skipping duplicate price alert", item=subject.name, price=price)
            return 0

        # A failed delivery fails the subject and leaves the gate unrecorded
        await self.context.notifier.deliver(subject.channel_id, format_price_alert(subject, price))
        gate.record_emission(key, PRICE_ALERT, price, now)
        self.log.info("Price alert sent", item=subject.name, price=price)
        return 1
