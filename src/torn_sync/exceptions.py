"""
Custom exceptions for the Torn sync agent.

This module defines the error taxonomy shared by the poller substrate and the
jobs built on top of it. Every error is caught at the job-cycle boundary, so
none of them is fatal to the process.
"""

from typing import Any


class TornSyncError(Exception):
    """Base exception for Torn sync agent errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code or "TORN_SYNC_ERROR"
        self.context = context or {}


class RateLimitedError(TornSyncError):
    """The upstream API rejected the call because of its rate limit."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "RATE_LIMITED", context)
        self.status_code = status_code


class UpstreamError(TornSyncError):
    """Exception for upstream API failures other than rate limiting."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: int | None = None,
        context: dict[str, Any] | None = None,
        code: str = "UPSTREAM_ERROR",
    ):
        super().__init__(message, code, context)
        self.status_code = status_code
        self.error_code = error_code


class CallTimeoutError(UpstreamError):
    """An outbound call exceeded its timeout."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, context=context, code="CALL_TIMEOUT")


class CredentialError(UpstreamError):
    """The API key used for a call is invalid, paused or revoked."""

    def __init__(
        self,
        message: str,
        error_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(
            message, error_code=error_code, context=context, code="CREDENTIAL_ERROR"
        )


class TransformError(TornSyncError):
    """Exception for malformed upstream payloads."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "TRANSFORM_ERROR", context)


class PersistenceError(TornSyncError):
    """Exception for storage write failures."""

    def __init__(
        self,
        message: str,
        subject_key: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "PERSISTENCE_ERROR", context)
        self.subject_key = subject_key


class DeliveryError(TornSyncError):
    """Exception for failed notification deliveries."""

    def __init__(
        self,
        message: str,
        channel: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "DELIVERY_ERROR", context)
        self.channel = channel


class LimiterSaturatedError(TornSyncError):
    """The rate limiter queue is full and the call was rejected."""

    def __init__(self, message: str, pending: int, context: dict[str, Any] | None = None):
        super().__init__(message, "LIMITER_SATURATED", context)
        self.pending = pending


class ConfigurationError(TornSyncError):
    """Exception for configuration related errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "CONFIGURATION_ERROR", context)
