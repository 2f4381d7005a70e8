"""
Discord alert delivery.

Alerts go to a channel through the Discord REST API with the bot token, or to
the configured webhook when the alert has no channel.
"""

import httpx
import structlog

from .config import DiscordConfig
from .exceptions import DeliveryError

logger = structlog.get_logger(__name__)

# Discord rejects message content longer than this
MAX_MESSAGE_LENGTH = 2000


class DiscordNotifier:
    """Delivers alert messages to Discord."""

    def __init__(self, config: DiscordConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds)
        )

    async def deliver(self, channel_ref: str | None, message: str) -> None:
        """
        Send a message.

        Args:
            channel_ref: Discord channel ID, or None for the webhook
            message: Message content

        Raises:
            DeliveryError: If the message could not be sent
        """
        content = message[:MAX_MESSAGE_LENGTH]

        if channel_ref:
            if not self.config.bot_token:
                raise DeliveryError("Discord bot token not configured", channel=channel_ref)
            url = f"{self.config.api_url.rstrip('/')}/channels/{channel_ref}/messages"
            headers = {"Authorization": f"Bot {self.config.bot_token}"}
        else:
            if not self.config.webhook_url:
                raise DeliveryError("Discord webhook URL not configured")
            url = self.config.webhook_url
            headers = {}

        try:
            response = await self._client.post(url, json={"content": content}, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                f"Discord returned HTTP {e.response.status_code}",
                channel=channel_ref,
                context={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Discord delivery failed: {e}", channel=channel_ref) from e

        logger.info("Discord alert sent", channel=channel_ref or "webhook")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
