"""Shared plumbing for EVM contract-based oracle clients."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from oracle_monitor.adapters.base import AdapterConfigError, OracleClient

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30

# Chains whose block headers carry oversized extraData.
POA_CHAINS = frozenset({"polygon", "bsc", "avalanche"})


def new_web3_client(
    rpc_url: str,
    *,
    chain: str | None = None,
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
) -> AsyncWeb3[AsyncHTTPProvider]:
    """Create an AsyncWeb3 client, with PoA middleware where the chain needs it."""
    client = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
    if chain in POA_CHAINS:
        _inject_poa_middleware(client, rpc_url=rpc_url)
    return client


def _inject_poa_middleware(client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
    try:
        client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    except Exception as e:
        logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)


async def close_web3_client(client: AsyncWeb3[AsyncHTTPProvider], *, name: str) -> None:
    """Close the async HTTP provider session to avoid leaked aiohttp sessions."""
    disconnect = getattr(client.provider, "disconnect", None)
    if not callable(disconnect):
        return
    try:
        result = disconnect()
        if asyncio.iscoroutine(result):
            await result
    except Exception as e:
        logger.warning("Failed to close RPC provider session for %s: %s", name, e)


class EvmOracleClient(OracleClient):
    """Base for oracles read through contract calls on an EVM chain."""

    def __init__(self, chain: str, *, rpc_url: str | None = None, **kwargs: Any) -> None:
        super().__init__(chain, rpc_url=rpc_url, **kwargs)
        if not rpc_url:
            raise AdapterConfigError(f"{self.protocol} on {self.chain} requires an rpc_url")
        self._w3 = new_web3_client(rpc_url, chain=self.chain)

    @property
    def w3(self) -> AsyncWeb3[AsyncHTTPProvider]:
        return self._w3

    def contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        return self._w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def _fetch_block_number(self) -> int | None:
        return int(await self._w3.eth.block_number)

    async def close(self) -> None:
        await close_web3_client(self._w3, name=self.resource_name)
