"""RedStone on-chain price feeds."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from oracle_monitor.adapters.base import AdapterConfigError
from oracle_monitor.adapters.evm import EvmOracleClient
from oracle_monitor.adapters.models import Observation
from oracle_monitor.adapters.registry import register_client

logger = logging.getLogger(__name__)

DEFAULT_CONTRACT_ADDRESS = "0x6E1389D6E59e83B854c59e7eE608F6B8D5F67355"
PRICE_DECIMALS = 8

SUPPORTED_CHAINS = frozenset(
    {"ethereum", "polygon", "arbitrum", "optimism", "base", "avalanche", "bsc"}
)

DEFAULT_SYMBOLS = ("BTC/USD", "ETH/USD", "LINK/USD", "AVAX/USD", "USDC/USD", "USDT/USD")

PRICE_FEED_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "dataFeedId", "type": "bytes32"}],
        "name": "getPrice",
        "outputs": [
            {"name": "price", "type": "uint256"},
            {"name": "timestamp", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


def feed_id_for(symbol: str) -> bytes:
    """The bytes32 data feed id for a symbol: ASCII base asset, right-padded."""
    base = symbol.split("/", 1)[0].strip().upper()
    encoded = base.encode("ascii")
    if not encoded or len(encoded) > 32:
        raise ValueError(f"Cannot derive a RedStone feed id from {symbol!r}")
    return encoded.ljust(32, b"\x00")


@register_client("redstone")
class RedStoneClient(EvmOracleClient):
    """Reads ``getPrice(bytes32)`` from a RedStone price feed contract.

    ``protocol_config`` keys: ``contract_address``, ``decimals`` and
    ``symbols`` (the symbols this deployment carries).
    """

    protocol = "redstone"
    supported_chains = SUPPORTED_CHAINS

    def __init__(self, chain: str, **kwargs: Any) -> None:
        super().__init__(chain, **kwargs)
        address = self.protocol_config.get("contract_address", DEFAULT_CONTRACT_ADDRESS)
        if not isinstance(address, str) or not address.startswith("0x"):
            raise AdapterConfigError(f"Invalid RedStone contract_address: {address!r}")
        self._decimals = int(self.protocol_config.get("decimals", PRICE_DECIMALS))
        self._symbols = list(self.protocol_config.get("symbols", DEFAULT_SYMBOLS))
        self._contract = self.contract(address, PRICE_FEED_ABI)

    def supported_symbols(self) -> list[str]:
        return sorted(self._symbols)

    async def _fetch_price(self, symbol: str) -> Observation | None:
        feed_id = feed_id_for(symbol)
        raw_price, raw_timestamp = await self._contract.functions.getPrice(feed_id).call()
        if raw_price <= 0:
            logger.debug("RedStone has no value for %s on %s", symbol, self.chain)
            return None

        timestamp = int(raw_timestamp)
        # Some deployments report milliseconds.
        if timestamp > 10**12:
            timestamp //= 1000

        return self._observation(
            symbol,
            raw_price / 10**self._decimals,
            published_at=datetime.fromtimestamp(timestamp, tz=UTC) if timestamp else None,
            metadata={"feed_id": "0x" + feed_id.hex()},
        )
