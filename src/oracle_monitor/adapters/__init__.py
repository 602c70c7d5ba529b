"""Protocol adapters - one OracleClient per oracle protocol."""

from oracle_monitor.adapters.base import (
    AdapterConfigError,
    AdapterError,
    OracleClient,
    UnsupportedChainError,
    UnsupportedProtocolError,
)
from oracle_monitor.adapters.chainlink import ChainlinkClient
from oracle_monitor.adapters.models import Observation
from oracle_monitor.adapters.pyth import PythClient
from oracle_monitor.adapters.redstone import RedStoneClient
from oracle_monitor.adapters.registry import (
    CLIENT_REGISTRY,
    create_client,
    get_available_protocols,
    register_client,
)
from oracle_monitor.adapters.uma import UmaClient

__all__ = [
    "CLIENT_REGISTRY",
    "AdapterConfigError",
    "AdapterError",
    "ChainlinkClient",
    "Observation",
    "OracleClient",
    "PythClient",
    "RedStoneClient",
    "UmaClient",
    "UnsupportedChainError",
    "UnsupportedProtocolError",
    "create_client",
    "get_available_protocols",
    "register_client",
]
