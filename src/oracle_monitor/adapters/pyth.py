"""Pyth Network prices via the Hermes REST API."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, ClassVar

import httpx

from oracle_monitor.adapters.base import AdapterConfigError, AdapterError, OracleClient
from oracle_monitor.adapters.evm import close_web3_client, new_web3_client
from oracle_monitor.adapters.models import Observation
from oracle_monitor.adapters.registry import register_client

logger = logging.getLogger(__name__)

DEFAULT_HERMES_URL = "https://hermes.pyth.network"
DEFAULT_TIMEOUT = 10.0

PRICE_FEED_IDS: dict[str, str] = {
    "BTC/USD": "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
    "ETH/USD": "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
    "SOL/USD": "0xef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
    "LINK/USD": "0x8ac0c70fff57e9aefdf5edf44b51d62c2d433653cbb2cf5cc06bb115af04d221",
}


class HermesHTTPError(AdapterError):
    """Raised when Hermes answers with a non-2xx status."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


@register_client("pyth")
class PythClient(OracleClient):
    """Reads the latest Pyth price update from Hermes.

    Pyth prices are chain-agnostic, so any chain name is accepted. The
    block number is only available when an ``rpc_url`` is configured.

    ``protocol_config`` keys: ``hermes_url``, ``timeout`` and ``feeds``
    (symbol -> price feed id, merged over the built-in ids).
    """

    protocol = "pyth"

    # Shared across clients to reuse connections.
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    def __init__(self, chain: str, **kwargs: Any) -> None:
        super().__init__(chain, **kwargs)
        overrides = self.protocol_config.get("feeds", {})
        if not isinstance(overrides, dict):
            raise AdapterConfigError("pyth protocol_config.feeds must be a mapping")
        self._feeds = {**PRICE_FEED_IDS, **overrides}
        self._hermes_url = str(self.protocol_config.get("hermes_url", DEFAULT_HERMES_URL)).rstrip("/")
        self._timeout = float(self.protocol_config.get("timeout", DEFAULT_TIMEOUT))
        self._w3 = new_web3_client(self.rpc_url, chain=self.chain) if self.rpc_url else None

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        if cls._shared_client is None or cls._shared_client.is_closed:
            cls._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return cls._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        if cls._shared_client is not None and not cls._shared_client.is_closed:
            await cls._shared_client.aclose()
            cls._shared_client = None

    def supported_symbols(self) -> list[str]:
        return sorted(self._feeds)

    async def _fetch_block_number(self) -> int | None:
        if self._w3 is None:
            return None
        return int(await self._w3.eth.block_number)

    async def _fetch_price(self, symbol: str) -> Observation | None:
        feed_id = self._feeds.get(symbol)
        if feed_id is None:
            logger.debug("No Pyth feed id for %s", symbol)
            return None

        response = await self.get_shared_client().get(
            f"{self._hermes_url}/v2/updates/price/latest",
            params={"ids[]": feed_id},
            timeout=self._timeout,
        )
        if not response.is_success:
            raise HermesHTTPError(response.status_code, response.text[:200])

        parsed = response.json().get("parsed") or []
        if not parsed:
            logger.debug("Hermes returned no parsed update for %s", symbol)
            return None

        quote = parsed[0]["price"]
        scale = 10 ** int(quote["expo"])
        price = int(quote["price"]) * scale
        if price <= 0:
            return None
        conf = int(quote["conf"]) * scale

        return self._observation(
            symbol,
            price,
            confidence=conf / price,
            published_at=datetime.fromtimestamp(int(quote["publish_time"]), tz=UTC),
            metadata={"feed_id": feed_id, "conf": conf},
        )

    async def close(self) -> None:
        if self._w3 is not None:
            await close_web3_client(self._w3, name=self.resource_name)
