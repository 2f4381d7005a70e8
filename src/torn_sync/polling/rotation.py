"""
Round-robin credential rotation for shared-resource polls.

When many users share interest in one resource (a faction's chain), each poll
is made with the next user's key so the call is not always attributed to the
same credential and a revoked key does not freeze the feature.
"""

import threading
from collections.abc import Sequence
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

C = TypeVar("C")


class CredentialRotator:
    """Per-resource round-robin over eligible credentials."""

    def __init__(self) -> None:
        self._last_used: dict[str, int] = {}
        self._lock = threading.Lock()

    def next(self, resource_key: str, eligible: Sequence[C]) -> C | None:
        """
        Pick the credential for the next poll of a resource.

        Args:
            resource_key: Shared resource identifier (e.g., 'faction:42')
            eligible: Ordered credentials eligible for this resource

        Returns:
            The selected credential, or None when no credential is eligible
        """
        if not eligible:
            logger.warning("No eligible credentials for resource", resource=resource_key)
            return None

        with self._lock:
            index = (self._last_used.get(resource_key, 0) + 1) % len(eligible)
            self._last_used[resource_key] = index
        return eligible[index]

    def last_used_index(self, resource_key: str) -> int | None:
        with self._lock:
            return self._last_used.get(resource_key)

    def forget(self, resource_key: str) -> None:
        """Drop the rotation state of a resource that is no longer polled."""
        with self._lock:
            self._last_used.pop(resource_key, None)
