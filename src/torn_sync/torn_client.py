"""
Torn API client for the Torn sync agent.

A thin async wrapper over the Torn v2 HTTP API that turns every failure into
one of the agent's error classes, so the retry executor can tell rate
limiting apart from everything else.
"""

from typing import Any

import httpx
import structlog

from .exceptions import (
    CallTimeoutError,
    CredentialError,
    RateLimitedError,
    TransformError,
    UpstreamError,
)
from .polling.metrics import ApiCallTracker

logger = structlog.get_logger(__name__)

# Torn error code 5: too many requests
RATE_LIMIT_ERROR_CODES = frozenset({5})
# Incorrect key, owner in federal jail, owner inactive, key paused
CREDENTIAL_ERROR_CODES = frozenset({2, 10, 13, 18})


class TornClient:
    """
    Async client for the Torn v2 API.

    Every call made through the client is recorded in the API call tracker,
    whatever its outcome.
    """

    def __init__(
        self,
        base_url: str = "https://api.torn.com/v2",
        tracker: ApiCallTracker | None = None,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the Torn client.

        Args:
            base_url: Torn API base URL
            tracker: Records every outbound call for usage reporting
            timeout_seconds: HTTP timeout for a single request
            http_client: Preconfigured client, mainly for tests
        """
        self.base_url = base_url.rstrip("/")
        self.tracker = tracker
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json"},
        )

    async def call(
        self,
        endpoint: str,
        api_key: str,
        params: dict[str, Any] | None = None,
        source: str = "torn-client",
    ) -> dict[str, Any]:
        """
        Call a Torn API endpoint.

        Args:
            endpoint: Endpoint path (e.g., 'faction/chain')
            api_key: Decrypted Torn API key
            params: Extra query parameters
            source: Caller name recorded with the call

        Returns:
            Decoded JSON payload

        Raises:
            RateLimitedError: HTTP 429 or Torn error code 5
            CredentialError: The key is invalid, paused or inactive
            CallTimeoutError: The request timed out
            UpstreamError: Any other HTTP or API error
            TransformError: The body is not a JSON object
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        query = {**(params or {}), "key": api_key}

        try:
            response = await self._client.get(url, params=query)
        except httpx.TimeoutException as e:
            raise CallTimeoutError(
                f"Torn API call to {endpoint} timed out", context={"endpoint": endpoint}
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"Torn API call to {endpoint} failed: {e}", context={"endpoint": endpoint}
            ) from e
        finally:
            if self.tracker is not None:
                self.tracker.record(endpoint, source)

        if response.status_code == 429:
            raise RateLimitedError(
                f"Torn API rate limited {endpoint}", status_code=429
            )
        if response.status_code >= 400:
            raise UpstreamError(
                f"Torn API returned HTTP {response.status_code} for {endpoint}",
                status_code=response.status_code,
                context={"endpoint": endpoint},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransformError(
                f"Torn API returned a non-JSON body for {endpoint}",
                context={"endpoint": endpoint},
            ) from e
        if not isinstance(data, dict):
            raise TransformError(
                f"Torn API returned an unexpected payload for {endpoint}",
                context={"endpoint": endpoint},
            )

        error = data.get("error")
        if error:
            self._raise_api_error(endpoint, error)
        return data

    @staticmethod
    def _raise_api_error(endpoint: str, error: Any) -> None:
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("error", "unknown error")
        else:
            code, message = None, str(error)

        logger.debug("Torn API error", endpoint=endpoint, error_code=code, error=message)

        context = {"endpoint": endpoint, "error_code": code}
        if code in RATE_LIMIT_ERROR_CODES:
            raise RateLimitedError(f"Torn API rate limited {endpoint}: {message}", context=context)
        if code in CREDENTIAL_ERROR_CODES:
            raise CredentialError(
                f"Torn API rejected the key for {endpoint}: {message}",
                error_code=code,
                context=context,
            )
        raise UpstreamError(
            f"Torn API error for {endpoint}: {message}", error_code=code, context=context
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
