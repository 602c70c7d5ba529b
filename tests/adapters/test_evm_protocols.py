"""Tests for the RedStone and UMA contract clients."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from oracle_monitor.adapters.base import AdapterConfigError
from oracle_monitor.adapters.redstone import RedStoneClient, feed_id_for
from oracle_monitor.adapters.uma import ZERO_ADDRESS, UmaClient, _assertion_id_bytes
from oracle_monitor.resilience import InvalidRequestError, RetryConfig

RPC_URL = "http://localhost:8545"
ASSERTION_ID = "0x" + "ab" * 32
ASSERTER = "0x1111111111111111111111111111111111111111"
DISPUTER = "0x2222222222222222222222222222222222222222"


def _assertion(*, asserter=ASSERTER, settled=False, resolution=False, disputer=ZERO_ADDRESS) -> tuple:
    return (
        (False, False, False, ZERO_ADDRESS, ZERO_ADDRESS),
        asserter,
        1767225000,
        settled,
        ZERO_ADDRESS,
        1767232200,
        resolution,
        b"\x00" * 32,
        b"ASSERT_TRUTH".ljust(32, b"\x00"),
        10**18,
        ZERO_ADDRESS,
        disputer,
    )


class TestRedStoneClient:
    """Tests for RedStoneClient."""

    def test_feed_id_is_padded_base_asset(self) -> None:
        """The feed id is the base asset in ASCII, right-padded to 32 bytes."""
        feed_id = feed_id_for("eth/usd")
        assert feed_id[:3] == b"ETH"
        assert len(feed_id) == 32
        assert feed_id[3:] == b"\x00" * 29

    @pytest.mark.asyncio
    async def test_reads_price_and_millisecond_timestamp(self, clock) -> None:
        """Millisecond timestamps are normalised to seconds."""
        contract = MagicMock()
        contract.functions.getPrice.return_value.call = AsyncMock(
            return_value=(300_012_000_000, 1767225590000)
        )
        with patch.object(RedStoneClient, "contract", return_value=contract):
            client = RedStoneClient("base", rpc_url=RPC_URL, retry_config=RetryConfig(max_retries=0), clock=clock)
            obs = await client.get_price_for_symbol("ETH/USD")

        assert obs is not None
        assert obs.price == pytest.approx(3000.12)
        assert obs.published_at.timestamp() == 1767225590
        contract.functions.getPrice.assert_called_with(feed_id_for("ETH/USD"))

    def test_rejects_bad_contract_address(self) -> None:
        """A malformed contract address is a config error."""
        with pytest.raises(AdapterConfigError):
            RedStoneClient("ethereum", rpc_url=RPC_URL, protocol_config={"contract_address": "nope"})


class TestUmaClient:
    """Tests for UmaClient."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("assertion", "expected_price", "expected_confidence"),
        [
            (_assertion(), 1.0, 0.5),
            (_assertion(settled=True, resolution=True), 1.0, 1.0),
            (_assertion(settled=True, resolution=False), 0.0, 1.0),
            (_assertion(disputer=DISPUTER), 0.0, 0.5),
        ],
    )
    async def test_assertion_health(self, clock, assertion, expected_price, expected_confidence) -> None:
        """Disputed or falsely resolved assertions read as 0.0."""
        contract = MagicMock()
        contract.functions.getAssertion.return_value.call = AsyncMock(return_value=assertion)
        with patch.object(UmaClient, "contract", return_value=contract):
            client = UmaClient("ethereum", rpc_url=RPC_URL, clock=clock)
            obs = await client.get_price_for_symbol(ASSERTION_ID)

        assert obs is not None
        assert obs.price == expected_price
        assert obs.confidence == expected_confidence
        assert obs.metadata["disputed"] is (assertion[-1] != ZERO_ADDRESS)
        assert obs.metadata["assertion_time"] == 1767225000
        # Assertion time is not a publish time; staleness uses the read time.
        assert obs.published_at is None

    @pytest.mark.asyncio
    async def test_unknown_assertion(self, clock) -> None:
        """A zero asserter means the assertion does not exist."""
        contract = MagicMock()
        contract.functions.getAssertion.return_value.call = AsyncMock(
            return_value=_assertion(asserter=ZERO_ADDRESS)
        )
        with patch.object(UmaClient, "contract", return_value=contract):
            client = UmaClient("ethereum", rpc_url=RPC_URL, clock=clock)
            assert await client.get_price_for_symbol(ASSERTION_ID) is None

    @pytest.mark.asyncio
    async def test_malformed_assertion_id(self, clock) -> None:
        """A bad id is rejected without retries or breaker failures."""
        contract = MagicMock()
        with patch.object(UmaClient, "contract", return_value=contract):
            client = UmaClient("ethereum", rpc_url=RPC_URL, retry_config=RetryConfig(max_retries=3), clock=clock)
            assert await client.get_price_for_symbol("not-an-id") is None
            assert await client.get_price_for_symbol("0x" + "ab" * 4) is None

        contract.functions.getAssertion.assert_not_called()
        assert client.breaker.snapshot().failures == 0

    def test_assertion_id_errors_are_invalid_requests(self) -> None:
        with pytest.raises(InvalidRequestError):
            _assertion_id_bytes("zz")

    def test_requires_oracle_address_off_mainnet(self) -> None:
        """Chains without a known deployment need an explicit address."""
        with pytest.raises(AdapterConfigError):
            UmaClient("polygon", rpc_url=RPC_URL)

    def test_supported_symbols_are_assertions(self) -> None:
        """Configured assertion ids are the monitored symbols."""
        with patch.object(UmaClient, "contract", return_value=MagicMock()):
            client = UmaClient("ethereum", rpc_url=RPC_URL, protocol_config={"assertions": [ASSERTION_ID]})
        assert client.supported_symbols() == [ASSERTION_ID]
