"""
Torn Sync Agent

A background service that polls the Torn API under a shared rate limit and
sends Discord alerts for faction chains, item market prices and daily
activity reminders.
"""

__version__ = "0.1.0"

from .app import SyncApp
from .config import Settings
from .exceptions import TornSyncError
from .notifier import DiscordNotifier
from .torn_client import TornClient

__all__ = [
    "Settings",
    "SyncApp",
    "TornClient",
    "DiscordNotifier",
    "TornSyncError",
]
