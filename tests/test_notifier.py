"""
Tests for Discord alert delivery.
"""

import json

import httpx
import pytest

from torn_sync.config import DiscordConfig
from torn_sync.exceptions import DeliveryError
from torn_sync.notifier import MAX_MESSAGE_LENGTH, DiscordNotifier

WEBHOOK_URL = "https://discord.test/api/webhooks/1/abc"


class TestDiscordNotifier:
    """Test channel and webhook delivery."""

    def setup_method(self):
        """Set up test fixtures."""
        self.requests = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"id": "1"})

    def make_notifier(self, **config) -> DiscordNotifier:
        config.setdefault("bot_token", "bot-token")
        config.setdefault("webhook_url", WEBHOOK_URL)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return DiscordNotifier(DiscordConfig(**config), http_client=http_client)

    @pytest.mark.asyncio
    async def test_channel_delivery_uses_bot_token(self):
        notifier = self.make_notifier()

        await notifier.deliver("123", "chain is about to drop")

        request = self.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://discord.com/api/v10/channels/123/messages"
        assert request.headers["Authorization"] == "Bot bot-token"
        assert json.loads(request.content) == {"content": "chain is about to drop"}

    @pytest.mark.asyncio
    async def test_webhook_used_without_channel(self):
        notifier = self.make_notifier()

        await notifier.deliver(None, "cheap item")

        assert str(self.requests[0].url) == WEBHOOK_URL
        assert "Authorization" not in self.requests[0].headers

    @pytest.mark.asyncio
    async def test_long_messages_truncated(self):
        notifier = self.make_notifier()

        await notifier.deliver("123", "x" * 5000)

        content = json.loads(self.requests[0].content)["content"]
        assert len(content) == MAX_MESSAGE_LENGTH

    @pytest.mark.asyncio
    async def test_http_error_raises_delivery_error(self):
        self.status_code = 403
        notifier = self.make_notifier()

        with pytest.raises(DeliveryError) as exc_info:
            await notifier.deliver("123", "hello")
        assert exc_info.value.channel == "123"
        assert exc_info.value.context["status_code"] == 403

    @pytest.mark.asyncio
    async def test_transport_error_raises_delivery_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = DiscordNotifier(
            DiscordConfig(bot_token="bot-token"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(DeliveryError):
            await notifier.deliver("123", "hello")

    @pytest.mark.asyncio
    async def test_missing_configuration(self):
        notifier = self.make_notifier(bot_token="", webhook_url="")

        with pytest.raises(DeliveryError):
            await notifier.deliver("123", "hello")
        with pytest.raises(DeliveryError):
            await notifier.deliver(None, "hello")
        assert self.requests == []
