"""Tests for the webhook channel."""

import json

import httpx
import pytest
import respx

from oracle_monitor.alerts import AlertPayload, Severity, WebhookChannel

WEBHOOK_URL = "https://hooks.example.com/oracle-alerts"


def _payload() -> AlertPayload:
    return AlertPayload(
        title="[WARNING] BTC/USD - Price deviation warning",
        message="BTC/USD on pyth/ethereum deviates 1.50% from reference (threshold 1.00%)",
        severity=Severity.WARNING,
        fingerprint="f00d",
        symbol="BTC/USD",
    )


@pytest.fixture
async def webhook():
    channel = WebhookChannel(WEBHOOK_URL, timeout=1.0)
    yield channel
    await channel.aclose()


class TestWebhookChannel:
    """Tests for WebhookChannel."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_posts_json(self, webhook) -> None:
        """The formatted body is POSTed as JSON."""
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(204))

        assert await webhook.send(_payload()) is True

        body = json.loads(route.calls.last.request.content)
        assert body["alert"]["fingerprint"] == "f00d"
        assert body["embeds"][0]["title"] == "[WARNING] BTC/USD - Price deviation warning"

    @respx.mock
    @pytest.mark.asyncio
    async def test_http_error_returns_false(self, webhook) -> None:
        respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(500, text="oops"))
        assert await webhook.send(_payload()) is False

    @respx.mock
    @pytest.mark.asyncio
    async def test_timeout_returns_false(self, webhook) -> None:
        respx.post(WEBHOOK_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        assert await webhook.send(_payload()) is False

    @respx.mock
    @pytest.mark.asyncio
    async def test_connection_error_returns_false(self, webhook) -> None:
        respx.post(WEBHOOK_URL).mock(side_effect=httpx.ConnectError("refused"))
        assert await webhook.send(_payload()) is False

    def test_custom_name(self) -> None:
        assert WebhookChannel(WEBHOOK_URL, name="ops-webhook").name == "ops-webhook"
