"""
Tests for the item market price job.
"""

import pytest

from conftest import make_context, make_settings
from torn_sync.exceptions import DeliveryError, TransformError
from torn_sync.jobs.market_prices import MarketPriceJob, format_price_alert, lowest_listing
from torn_sync.models import WatchlistItem
from torn_sync.polling.notifications import PRICE_ALERT
from torn_sync.state.manager import InMemorySubscriptionStore

ITEM_ID = 206


def market_payload(*prices: int) -> dict:
    return {
        "itemmarket": {
            "item": {"id": ITEM_ID, "name": "Xanax"},
            "listings": [{"price": price, "amount": 1} for price in prices],
        }
    }


class TestLowestListing:
    """Test market payload reduction."""

    def test_picks_lowest_price(self):
        snapshot = lowest_listing(ITEM_ID, market_payload(1200, 900, 1000))

        assert snapshot.lowest_price == 900
        assert snapshot.listing_count == 3

    def test_no_listings(self):
        snapshot = lowest_listing(ITEM_ID, {"itemmarket": {"listings": []}})

        assert snapshot.lowest_price is None
        assert snapshot.listing_count == 0

    def test_malformed_listing(self):
        with pytest.raises(TransformError):
            lowest_listing(ITEM_ID, {"itemmarket": {"listings": [{"amount": 1}]}})


class TestMarketPriceJob:
    """Test price alerts and re-arming."""

    @pytest.fixture(autouse=True)
    def _context(self, clock, vault):
        """Set up test fixtures."""
        self.item = WatchlistItem(
            item_id=ITEM_ID,
            name="Xanax",
            alert_below=1000,
            discord_user_id="111",
            channel_id="c-111",
            api_key=vault.encrypt("item-key"),
        )
        self.subscriptions = InMemorySubscriptionStore(watchlist=[self.item])
        self.context = make_context(clock, vault, self.subscriptions)
        self.job = MarketPriceJob(self.context)
        self.key = f"watch:111:item:{ITEM_ID}"

    @pytest.mark.asyncio
    async def test_alerts_when_price_below_threshold(self):
        self.context.client.call.return_value = market_payload(900, 1500)

        report = await self.job.run_cycle()

        assert report.notifications_sent == 1
        call = self.context.client.call.await_args
        assert call.args == (f"market/{ITEM_ID}/itemmarket", "item-key")
        assert call.kwargs["params"] == {"limit": 20}
        channel, message = self.context.notifier.deliver.await_args.args
        assert channel == "c-111"
        assert "$900" in message
        assert self.context.gate.get_record(self.key, PRICE_ALERT).last_emitted_value == 900

    @pytest.mark.asyncio
    async def test_same_price_alerts_once(self):
        self.context.client.call.return_value = market_payload(900)

        await self.job.run_cycle()
        second = await self.job.run_cycle()

        assert second.notifications_sent == 0
        assert self.context.notifier.deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_new_lower_price_alerts_again(self):
        self.context.client.call.return_value = market_payload(900)
        await self.job.run_cycle()

        self.context.client.call.return_value = market_payload(850)
        report = await self.job.run_cycle()

        assert report.notifications_sent == 1

    @pytest.mark.asyncio
    async def test_price_recovery_rearms_alert(self):
        """Test that the same price alerts again after rising above the threshold."""
        self.context.client.call.return_value = market_payload(900)
        await self.job.run_cycle()

        self.context.client.call.return_value = market_payload(1100)
        assert (await self.job.run_cycle()).notifications_sent == 0
        assert self.context.gate.get_record(self.key, PRICE_ALERT) is None

        self.context.client.call.return_value = market_payload(900)
        assert (await self.job.run_cycle()).notifications_sent == 1

    @pytest.mark.asyncio
    async def test_failed_delivery_is_retried_next_cycle(self):
        self.context.client.call.return_value = market_payload(900)
        self.context.notifier.deliver.side_effect = DeliveryError("discord down")

        report = await self.job.run_cycle()

        assert list(report.failed) == [self.key]
        assert self.context.gate.get_record(self.key, PRICE_ALERT) is None

        self.context.notifier.deliver.side_effect = None
        assert (await self.job.run_cycle()).notifications_sent == 1

    @pytest.mark.asyncio
    async def test_snapshot_persisted(self):
        self.context.client.call.return_value = market_payload(900, 950)

        await self.job.run_cycle()

        stored = await self.context.snapshots.find_latest(f"item:{ITEM_ID}", "market")
        assert stored["lowest_price"] == 900
        assert stored["listing_count"] == 2
        assert stored["observed_at"].startswith("2024-01-01T00:00:00")

    @pytest.mark.asyncio
    async def test_fallback_api_key(self):
        """Test that items without a key use the configured fallback key."""
        self.subscriptions.watchlist = [self.item.model_copy(update={"api_key": None})]
        self.context.settings = make_settings(torn_api_key="fallback-key")
        self.context.client.call.return_value = market_payload(2000)

        await self.job.run_cycle()

        assert self.context.client.call.await_args.args[1] == "fallback-key"

    @pytest.mark.asyncio
    async def test_missing_api_key_fails_subject(self):
        self.subscriptions.watchlist = [self.item.model_copy(update={"api_key": None})]

        report = await self.job.run_cycle()

        assert report.failed[self.key].startswith("CredentialError")
        self.context.client.call.assert_not_awaited()

    def test_alert_message(self):
        message = format_price_alert(self.item, 12345)

        assert "$12,345" in message
        assert "<@111>" in message
        assert f"itemID={ITEM_ID}" in message

    @pytest.mark.asyncio
    async def test_removed_item_alert_record_dropped(self):
        """Test that unwatching an item forgets its last alert."""
        self.context.client.call.return_value = market_payload(900)
        await self.job.run_cycle()
        assert self.context.gate.get_record(self.key, PRICE_ALERT) is not None

        self.subscriptions.watchlist.clear()
        report = await self.job.run_cycle()

        assert report.subjects_total == 0
        assert self.context.gate.get_record(self.key, PRICE_ALERT) is None

        self.subscriptions.watchlist.append(self.item)
        assert (await self.job.run_cycle()).notifications_sent == 1
