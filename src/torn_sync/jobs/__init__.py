"""Polling jobs run by the sync agent."""

from .activity_status import ActivityStatusJob, ActivityStatusService, build_policies
from .chain_watch import ChainWatchJob
from .market_prices import MarketPriceJob

__all__ = [
    "ActivityStatusJob",
    "ActivityStatusService",
    "ChainWatchJob",
    "MarketPriceJob",
    "build_policies",
]
