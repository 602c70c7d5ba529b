"""Tests for the Chainlink aggregator client."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from oracle_monitor.adapters.base import AdapterConfigError, UnsupportedChainError
from oracle_monitor.adapters.chainlink import ChainlinkClient
from oracle_monitor.resilience import CircuitBreaker, CircuitBreakerConfig, RetryConfig

RPC_URL = "http://localhost:8545"


def _aggregator(answer: int = 5_000_000_000_000, decimals: int = 8, updated_at: int = 1767225540) -> MagicMock:
    contract = MagicMock()
    contract.functions.decimals.return_value.call = AsyncMock(return_value=decimals)
    contract.functions.latestRoundData.return_value.call = AsyncMock(
        return_value=(110680464442257320000, answer, updated_at - 5, updated_at, 110680464442257320000)
    )
    return contract


@pytest.fixture
def client(clock) -> ChainlinkClient:
    return ChainlinkClient(
        "ethereum",
        rpc_url=RPC_URL,
        retry_config=RetryConfig(max_retries=0),
        clock=clock,
    )


class TestChainlinkClient:
    """Tests for ChainlinkClient."""

    @pytest.mark.asyncio
    async def test_scales_answer_by_decimals(self, client) -> None:
        """latestRoundData's answer is divided by 10**decimals."""
        contract = _aggregator()
        with patch.object(client, "contract", return_value=contract):
            obs = await client.get_price_for_symbol("BTC/USD")

        assert obs is not None
        assert obs.price == pytest.approx(50000.0)
        assert obs.published_at == datetime.fromtimestamp(1767225540, tz=UTC)
        assert obs.metadata["decimals"] == 8
        assert obs.latency_ms == 0

    @pytest.mark.asyncio
    async def test_decimals_are_cached(self, client) -> None:
        """decimals() is read once per symbol."""
        contract = _aggregator()
        with patch.object(client, "contract", return_value=contract):
            await client.get_price_for_symbol("BTC/USD")
            await client.get_price_for_symbol("BTC/USD")

        assert contract.functions.decimals.return_value.call.await_count == 1
        assert contract.functions.latestRoundData.return_value.call.await_count == 2

    @pytest.mark.asyncio
    async def test_non_positive_answer_returns_none(self, client) -> None:
        """A zero answer is not a price."""
        with patch.object(client, "contract", return_value=_aggregator(answer=0)):
            assert await client.get_price_for_symbol("BTC/USD") is None

    @pytest.mark.asyncio
    async def test_rpc_failure_returns_none_and_counts(self, client) -> None:
        """RPC errors are absorbed and recorded by the breaker."""
        contract = _aggregator()
        contract.functions.latestRoundData.return_value.call = AsyncMock(side_effect=ConnectionError("reset"))
        with patch.object(client, "contract", return_value=contract):
            assert await client.get_price_for_symbol("BTC/USD") is None

        assert client.breaker.snapshot().failures == 1

    @pytest.mark.asyncio
    async def test_open_breaker_skips_call(self, clock) -> None:
        """An open circuit short-circuits without touching the contract."""
        breaker = CircuitBreaker("chainlink:ethereum", CircuitBreakerConfig(failure_threshold=1), clock=clock)
        breaker.record_failure()
        client = ChainlinkClient("ethereum", rpc_url=RPC_URL, breaker=breaker, clock=clock)
        contract = _aggregator()

        with patch.object(client, "contract", return_value=contract):
            assert await client.get_price_for_symbol("BTC/USD") is None

        contract.functions.latestRoundData.return_value.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, client) -> None:
        """Symbols without an aggregator address return None."""
        assert await client.get_price_for_symbol("PEPE/EUR") is None

    def test_feed_overrides_merge(self) -> None:
        """protocol_config feeds extend the built-in table."""
        client = ChainlinkClient(
            "ethereum",
            rpc_url=RPC_URL,
            protocol_config={"feeds": {"FOO/USD": "0x0000000000000000000000000000000000000001"}},
        )
        assert "FOO/USD" in client.supported_symbols()
        assert "BTC/USD" in client.supported_symbols()

    def test_requires_rpc_url(self) -> None:
        """EVM clients cannot be built without an RPC endpoint."""
        with pytest.raises(AdapterConfigError):
            ChainlinkClient("ethereum")

    def test_rejects_unsupported_chain(self) -> None:
        """Chains without a feed table are rejected."""
        with pytest.raises(UnsupportedChainError):
            ChainlinkClient("solana", rpc_url=RPC_URL)
