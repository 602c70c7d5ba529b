"""Tests for the Pyth Hermes client."""

from datetime import UTC, datetime

import httpx
import pytest
import respx

from oracle_monitor.adapters.pyth import DEFAULT_HERMES_URL, PRICE_FEED_IDS, PythClient
from oracle_monitor.resilience import RetryConfig

LATEST_URL = f"{DEFAULT_HERMES_URL}/v2/updates/price/latest"
BTC_FEED = PRICE_FEED_IDS["BTC/USD"]


def _hermes_body(price: str = "5000012345678", conf: str = "2500000000", expo: int = -8) -> dict:
    return {
        "binary": {"encoding": "hex", "data": []},
        "parsed": [
            {
                "id": BTC_FEED[2:],
                "price": {"price": price, "conf": conf, "expo": expo, "publish_time": 1767225590},
                "ema_price": {"price": price, "conf": conf, "expo": expo, "publish_time": 1767225590},
            }
        ],
    }


@pytest.fixture(autouse=True)
async def shared_client():
    yield
    await PythClient.close_shared_client()


@pytest.fixture
def client(clock) -> PythClient:
    return PythClient("ethereum", retry_config=RetryConfig(max_retries=0), clock=clock)


class TestPythClient:
    """Tests for PythClient."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_parses_latest_update(self, client, clock) -> None:
        """Price, confidence and publish time are scaled by the exponent."""
        route = respx.get(LATEST_URL).mock(return_value=httpx.Response(200, json=_hermes_body()))

        obs = await client.get_price_for_symbol("BTC/USD")

        assert route.called
        assert route.calls.last.request.url.params["ids[]"] == BTC_FEED
        assert obs is not None
        assert obs.protocol == "pyth"
        assert obs.chain == "ethereum"
        assert obs.price == pytest.approx(50000.12345678)
        assert obs.confidence == pytest.approx(25.0 / 50000.12345678)
        assert obs.published_at == datetime.fromtimestamp(1767225590, tz=UTC)
        assert obs.timestamp == clock.now()
        assert obs.age_seconds == pytest.approx(10.0)
        assert obs.metadata["feed_id"] == BTC_FEED

    @respx.mock
    @pytest.mark.asyncio
    async def test_http_error_returns_none(self, client) -> None:
        """A non-2xx response is a routine failure."""
        respx.get(LATEST_URL).mock(return_value=httpx.Response(503, text="unavailable"))

        assert await client.get_price_for_symbol("BTC/USD") is None
        assert client.breaker.snapshot().failures == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_empty_parsed_returns_none(self, client) -> None:
        """No parsed update means no observation."""
        respx.get(LATEST_URL).mock(return_value=httpx.Response(200, json={"parsed": []}))

        assert await client.get_price_for_symbol("BTC/USD") is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_unknown_symbol_makes_no_request(self, client) -> None:
        """Symbols without a feed id are skipped locally."""
        route = respx.get(LATEST_URL)

        assert await client.get_price_for_symbol("DOGE/JPY") is None
        assert not route.called

    @respx.mock
    @pytest.mark.asyncio
    async def test_custom_feeds_and_hermes_url(self, clock) -> None:
        """protocol_config overrides the endpoint and extends the feed table."""
        route = respx.get("https://hermes.internal/v2/updates/price/latest").mock(
            return_value=httpx.Response(200, json=_hermes_body(price="150", expo=0, conf="1"))
        )
        client = PythClient(
            "base",
            protocol_config={"hermes_url": "https://hermes.internal/", "feeds": {"FOO/USD": "0xabc"}},
            retry_config=RetryConfig(max_retries=0),
            clock=clock,
        )

        obs = await client.get_price_for_symbol("FOO/USD")

        assert route.called
        assert obs is not None
        assert obs.price == 150
        assert "FOO/USD" in client.supported_symbols()
        assert "BTC/USD" in client.supported_symbols()

    @pytest.mark.asyncio
    async def test_block_number_without_rpc(self, client) -> None:
        """Without an rpc_url there is no block height."""
        assert await client.get_block_number() is None
