"""
Polling core for the Torn sync agent.

This package contains the rate limiter, retry executor, adaptive cache,
notification gate and the job orchestration shared by every polling job.
"""

from .cache import AdaptiveCache
from .notifications import NotificationGate
from .orchestrator import JobScheduler, PollingJob, SyncContext
from .rate_limiter import RateLimiter
from .retry import RetryExecutor
from .rotation import CredentialRotator

__all__ = [
    "AdaptiveCache",
    "CredentialRotator",
    "JobScheduler",
    "NotificationGate",
    "PollingJob",
    "RateLimiter",
    "RetryExecutor",
    "SyncContext",
]
