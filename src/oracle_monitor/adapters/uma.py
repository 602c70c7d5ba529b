"""UMA Optimistic Oracle V3 assertions.

UMA does not publish prices. An instance monitors assertion ids, passed
in place of symbols, and reports their health through the observation
shape: ``price`` is 1.0 for an undisputed assertion and 0.0 once it is
disputed or settles false.
"""

from __future__ import annotations

import logging
from typing import Any

from oracle_monitor.adapters.base import AdapterConfigError
from oracle_monitor.adapters.evm import EvmOracleClient
from oracle_monitor.adapters.models import Observation
from oracle_monitor.adapters.registry import register_client
from oracle_monitor.resilience.errors import InvalidRequestError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

OOV3_ADDRESSES: dict[str, str] = {
    "ethereum": "0xfb55F43fB9F48F63f9269DB7Dde3BbBe1ebDC0dE",
}

OOV3_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "assertionId", "type": "bytes32"}],
        "name": "getAssertion",
        "outputs": [
            {
                "components": [
                    {
                        "components": [
                            {"name": "arbitrateViaEscalationManager", "type": "bool"},
                            {"name": "discardOracle", "type": "bool"},
                            {"name": "validateDisputers", "type": "bool"},
                            {"name": "assertingCaller", "type": "address"},
                            {"name": "escalationManager", "type": "address"},
                        ],
                        "name": "escalationManagerSettings",
                        "type": "tuple",
                    },
                    {"name": "asserter", "type": "address"},
                    {"name": "assertionTime", "type": "uint64"},
                    {"name": "settled", "type": "bool"},
                    {"name": "currency", "type": "address"},
                    {"name": "expirationTime", "type": "uint64"},
                    {"name": "settlementResolution", "type": "bool"},
                    {"name": "domainId", "type": "bytes32"},
                    {"name": "identifier", "type": "bytes32"},
                    {"name": "bond", "type": "uint256"},
                    {"name": "callbackRecipient", "type": "address"},
                    {"name": "disputer", "type": "address"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


def _assertion_id_bytes(assertion_id: str) -> bytes:
    raw = assertion_id[2:] if assertion_id.startswith("0x") else assertion_id
    try:
        value = bytes.fromhex(raw)
    except ValueError as e:
        raise InvalidRequestError(f"Assertion id is not hex: {assertion_id!r}") from e
    if len(value) != 32:
        raise InvalidRequestError(f"Assertion id must be 32 bytes: {assertion_id!r}")
    return value


@register_client("uma")
class UmaClient(EvmOracleClient):
    """Reads assertion state from the Optimistic Oracle V3.

    ``protocol_config`` keys: ``oracle_address`` (required off mainnet)
    and ``assertions`` (assertion ids to monitor).
    """

    protocol = "uma"

    def __init__(self, chain: str, **kwargs: Any) -> None:
        super().__init__(chain, **kwargs)
        address = self.protocol_config.get("oracle_address") or OOV3_ADDRESSES.get(self.chain)
        if not address:
            raise AdapterConfigError(
                f"uma on {self.chain} requires protocol_config.oracle_address"
            )
        self._assertions = list(self.protocol_config.get("assertions", []))
        self._contract = self.contract(address, OOV3_ABI)

    def supported_symbols(self) -> list[str]:
        return list(self._assertions)

    async def _fetch_price(self, symbol: str) -> Observation | None:
        (
            _settings,
            asserter,
            assertion_time,
            settled,
            _currency,
            expiration_time,
            settlement_resolution,
            _domain_id,
            _identifier,
            bond,
            _callback,
            disputer,
        ) = await self._contract.functions.getAssertion(_assertion_id_bytes(symbol)).call()

        if asserter == ZERO_ADDRESS:
            logger.debug("Unknown UMA assertion %s on %s", symbol, self.chain)
            return None

        disputed = disputer != ZERO_ADDRESS
        healthy = not disputed and not (settled and not settlement_resolution)
        return self._observation(
            symbol,
            1.0 if healthy else 0.0,
            confidence=1.0 if settled else 0.5,
            # The assertion time never moves, so it is no measure of data age.
            metadata={
                "assertion_time": int(assertion_time),
                "settled": bool(settled),
                "disputed": disputed,
                "settlement_resolution": bool(settlement_resolution),
                "expiration_time": int(expiration_time),
                "bond": str(bond),
                "asserter": asserter,
            },
        )
