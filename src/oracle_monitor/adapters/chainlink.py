"""Chainlink AggregatorV3 price feeds."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from oracle_monitor.adapters.base import AdapterConfigError
from oracle_monitor.adapters.evm import EvmOracleClient
from oracle_monitor.adapters.models import Observation
from oracle_monitor.adapters.registry import register_client

logger = logging.getLogger(__name__)

AGGREGATOR_V3_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

FEEDS: dict[str, dict[str, str]] = {
    "ethereum": {
        "ETH/USD": "0x5f4eC3Df9cbd43714FE2740f5E3616155c5b8419",
        "BTC/USD": "0xF4030086522a5bEEa4988F8cA5B36dbC97BeE88c",
        "LINK/USD": "0x2c1d072e956AFFC0D435Cb7AC38EF18d24d9127c",
        "DAI/USD": "0xAed0c38402a5d19df6E4c03F4E2DceD6e29c1ee9",
        "USDC/USD": "0x8fFfFfd4AfB6115b954Bd326cbe7B4BA576818f6",
        "USDT/USD": "0x3E7d1eAB13ad0104d2750B8863b489D65364e32D",
        "AAVE/USD": "0x547a514d5e3769680Ce22B2361c10Ea13619e8a9",
        "UNI/USD": "0x553303d460EE0afB37EdFf9bE42922D8FF63220e",
    },
    "polygon": {
        "ETH/USD": "0xF9680D99D6C9589e2a93a78A04A279e509205945",
        "BTC/USD": "0xc907E116054Ad103354f2D350FD2514433D57F6f",
        "LINK/USD": "0xd9FFdb71EbE7496cC440152d43986Aae0AB76665",
        "DAI/USD": "0x4746DeC9e833A82EC7C2C1356372CcF2cfcD2F3D",
        "USDC/USD": "0xfE4A8cc5b5B2366C1B58Bea3858e81843581b2F7",
        "MATIC/USD": "0xAB594600376Ec9fD91F8e885dADF0CE036862dE0",
    },
    "arbitrum": {
        "ETH/USD": "0x639Fe6ab55C921f74e7fac1ee960C0B6293ba612",
        "BTC/USD": "0x6ce185860a4963106506C203335A2910413708e9",
        "LINK/USD": "0x86E53CF1B870786351Da77A57575e79CB55812CB",
        "USDC/USD": "0x50834F3163758fcC1Df9973b6e91f0F0F0434aD3",
        "USDT/USD": "0x3f3f5dF88dC9F13eac63DF89B16E7F7Ff7E1A6B6",
    },
    "optimism": {
        "ETH/USD": "0x13e3Ee699D1909E989722E753853AE30b17e08c5",
        "BTC/USD": "0xD702DD976Fb76Fffc2D3963D037dfDae5b04E593",
        "LINK/USD": "0xCc232dcFAA0f0cDb8b7C5A73988e1ca85f792f3b",
        "USDC/USD": "0x16a9FA2FDa030272Ce99B29CF780dFA30361E0f3",
    },
    "base": {
        "ETH/USD": "0x71041dddad3595F9CEd3DcCFBe3D1F4b0a16Bb70",
        "BTC/USD": "0x64c911996D3c6aC71f9b455B1E8E7266BcbD848F",
        "LINK/USD": "0x17D5820349E2aA9167247E3C98Eb5E0A8E3E0fF3",
        "USDC/USD": "0x7e860098F58bBFC8648a4311b374B1D669a2bc6B",
    },
    "avalanche": {
        "ETH/USD": "0x976B3D034E162d8bD72D6b9C989d545b839003b0",
        "BTC/USD": "0x2779D32d5166BAaa2B2b658333bA7e6Ec9C505c9",
        "AVAX/USD": "0x0A77230d17318075983913bC2145DB16C7366156",
        "USDC/USD": "0xF096872672F44d6EBA71458D74fe67F9a77a23B9",
    },
    "bsc": {
        "ETH/USD": "0x9ef1B8c0E4F7dc8bF5719Ea496883DC6401d5b2e",
        "BTC/USD": "0x264990fbd0A4796A3E3d8E37C4d5F87a3aCa5Ebf",
        "BNB/USD": "0x0567F2323251f0Aab15c8dFb1967E4e8A7D42aeE",
        "USDC/USD": "0x51597f405303C4377E36123cBc172b13269EA163",
        "USDT/USD": "0xB97Ad0E74fa7d920791E90258A6E2085088b4320",
    },
}


@register_client("chainlink")
class ChainlinkClient(EvmOracleClient):
    """Reads ``latestRoundData()`` from Chainlink aggregator proxies.

    ``protocol_config["feeds"]`` maps symbols to aggregator addresses and
    is merged over the built-in per-chain table.
    """

    protocol = "chainlink"
    supported_chains = frozenset(FEEDS)

    def __init__(self, chain: str, **kwargs: Any) -> None:
        super().__init__(chain, **kwargs)
        overrides = self.protocol_config.get("feeds", {})
        if not isinstance(overrides, dict):
            raise AdapterConfigError("chainlink protocol_config.feeds must be a mapping")
        self._feeds = {**FEEDS[self.chain], **overrides}
        # Decimals never change for a deployed aggregator.
        self._decimals: dict[str, int] = {}

    def supported_symbols(self) -> list[str]:
        return sorted(self._feeds)

    async def _fetch_price(self, symbol: str) -> Observation | None:
        address = self._feeds.get(symbol)
        if address is None:
            logger.debug("No Chainlink feed for %s on %s", symbol, self.chain)
            return None

        contract = self.contract(address, AGGREGATOR_V3_ABI)
        decimals = self._decimals.get(symbol)
        if decimals is None:
            decimals = int(await contract.functions.decimals().call())
            self._decimals[symbol] = decimals

        round_id, answer, _started_at, updated_at, _answered_in = (
            await contract.functions.latestRoundData().call()
        )
        if answer <= 0:
            logger.warning("Chainlink %s on %s returned non-positive answer %s", symbol, self.chain, answer)
            return None

        return self._observation(
            symbol,
            answer / 10**decimals,
            published_at=datetime.fromtimestamp(int(updated_at), tz=UTC) if updated_at else None,
            metadata={"round_id": int(round_id), "feed": address, "decimals": decimals},
        )
