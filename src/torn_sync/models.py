"""
Domain records for the Torn sync agent.

These are the shapes the jobs read from the subscription store and write to
the snapshot store. Field names follow the Torn API where a record mirrors an
API object.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class TornUser(BaseModel):
    """A Discord user who registered a Torn API key."""

    discord_id: str = Field(..., description="Discord user ID")
    torn_id: int = Field(..., description="Torn player ID")
    faction_id: int | None = Field(default=None, description="Torn faction ID")
    api_key: str = Field(..., description="Encrypted Torn API key")
    api_key_type: str = Field(
        default="limited", description="Access level of the key: limited or full"
    )

    @property
    def has_full_key(self) -> bool:
        return self.api_key_type == "full"


class ChainWatch(BaseModel):
    """A user's request to be warned before their faction chain times out."""

    discord_id: str
    channel_id: str = Field(..., description="Channel where warnings are posted")
    faction_id: int
    seconds_before_fail: int = Field(
        ..., ge=1, description="Warn when the chain timeout drops to this value"
    )
    enabled: bool = True


class WatchlistItem(BaseModel):
    """An item market price alert."""

    item_id: int
    name: str
    alert_below: int = Field(..., description="Alert when listed below this price")
    discord_user_id: str
    channel_id: str | None = Field(
        default=None, description="Channel for alerts, webhook when empty"
    )
    api_key: str | None = Field(
        default=None, description="Encrypted key used to poll this item"
    )
    enabled: bool = True


class ActivitySubscription(BaseModel):
    """Daily activity reminder subscription."""

    discord_user_id: str
    channel_id: str
    hours_before_reset: int = Field(default=4, ge=1, le=23)
    notify_education: bool = True
    notify_investment: bool = True
    notify_virus: bool = True
    enabled: bool = True

    @property
    def reminder_hour_utc(self) -> int:
        return (24 - self.hours_before_reset) % 24


class ChainStatus(BaseModel):
    """Faction chain state as reported by ``faction/chain``."""

    chain_id: int = Field(default=0, alias="id")
    current: int = 0
    max: int = 0
    timeout: int = 0
    modifier: float = 1.0
    cooldown: int = 0
    start: int = 0
    end: int = 0

    model_config = {"populate_by_name": True}

    @property
    def is_active(self) -> bool:
        return self.timeout > 0


class MarketSnapshot(BaseModel):
    """Lowest item market listing for a watched item."""

    item_id: int
    lowest_price: int | None = None
    listing_count: int = 0
    observed_at: datetime | None = None


class JobDescriptor(BaseModel):
    """Persisted descriptor of a background job."""

    name: str
    description: str = ""
    enabled: bool = True
    interval_seconds: float | None = None
    last_run: datetime | None = None
