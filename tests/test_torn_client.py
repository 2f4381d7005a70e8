"""
Tests for the Torn API client.
"""

import httpx
import pytest

from torn_sync.clock import ManualClock
from torn_sync.exceptions import (
    CallTimeoutError,
    CredentialError,
    RateLimitedError,
    TransformError,
    UpstreamError,
)
from torn_sync.polling.metrics import ApiCallTracker
from torn_sync.torn_client import TornClient


def make_client(handler, tracker=None) -> TornClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TornClient("https://api.torn.test/v2/", tracker=tracker, http_client=http_client)


class TestTornClient:
    """Test request building and error mapping."""

    @pytest.mark.asyncio
    async def test_successful_call(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            return httpx.Response(200, json={"chain": {"current": 5}})

        client = make_client(handler)

        data = await client.call("faction/chain", "secret-key", params={"limit": 20})

        assert data == {"chain": {"current": 5}}
        assert seen["url"].path == "/v2/faction/chain"
        assert seen["url"].params["key"] == "secret-key"
        assert seen["url"].params["limit"] == "20"

    @pytest.mark.asyncio
    async def test_http_429_is_rate_limited(self):
        client = make_client(lambda request: httpx.Response(429))

        with pytest.raises(RateLimitedError) as exc_info:
            await client.call("user/money", "key")
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_torn_error_code_5_is_rate_limited(self):
        client = make_client(
            lambda request: httpx.Response(
                200, json={"error": {"code": 5, "error": "Too many requests"}}
            )
        )

        with pytest.raises(RateLimitedError):
            await client.call("user/money", "key")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [2, 10, 13, 18])
    async def test_key_errors_are_credential_errors(self, code):
        client = make_client(
            lambda request: httpx.Response(200, json={"error": {"code": code, "error": "bad key"}})
        )

        with pytest.raises(CredentialError) as exc_info:
            await client.call("user/money", "key")
        assert exc_info.value.error_code == code

    @pytest.mark.asyncio
    async def test_other_torn_errors_are_upstream_errors(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"error": {"code": 9, "error": "API disabled"}})
        )

        with pytest.raises(UpstreamError) as exc_info:
            await client.call("user/money", "key")
        assert not isinstance(exc_info.value, (RateLimitedError, CredentialError))
        assert exc_info.value.error_code == 9

    @pytest.mark.asyncio
    async def test_server_error(self):
        client = make_client(lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(UpstreamError) as exc_info:
            await client.call("user/money", "key")
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)

        with pytest.raises(CallTimeoutError):
            await client.call("user/money", "key")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)

        with pytest.raises(UpstreamError):
            await client.call("user/money", "key")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(TransformError):
            await client.call("user/money", "key")

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        client = make_client(lambda request: httpx.Response(200, json=[1, 2]))

        with pytest.raises(TransformError):
            await client.call("user/money", "key")

    @pytest.mark.asyncio
    async def test_every_call_is_tracked(self):
        """Test that successful and failed calls are both recorded."""
        tracker = ApiCallTracker(ManualClock())
        responses = iter([httpx.Response(200, json={}), httpx.Response(500)])
        client = make_client(lambda request: next(responses), tracker=tracker)

        await client.call("user/money", "key", source="activity-reminders")
        with pytest.raises(UpstreamError):
            await client.call("faction/chain", "key", source="chain-watch")

        stats = tracker.stats()
        assert stats["total"] == 2
        assert stats["by_source"] == {"activity-reminders": 1, "chain-watch": 1}
        assert stats["by_endpoint"] == {"user/money": 1, "faction/chain": 1}

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        )
        client = TornClient(http_client=http_client)

        await client.close()

        assert not http_client.is_closed
        await http_client.aclose()
