"""Registry mapping protocol names to client classes."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, TypeVar

from oracle_monitor.adapters.base import OracleClient, UnsupportedProtocolError
from oracle_monitor.resilience.circuit_breaker import CircuitBreakerManager
from oracle_monitor.resilience.rate_limiter import SlidingWindowRateLimiter
from oracle_monitor.resilience.retry import RetryConfig
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock

C = TypeVar("C", bound=type[OracleClient])

# Populated by the protocol modules on import.
CLIENT_REGISTRY: dict[str, type[OracleClient]] = {}


class InstanceSpec(Protocol):
    """The instance fields a client is built from."""

    protocol: str
    chain: str
    rpc_url: str | None
    protocol_config: dict[str, Any]


def register_client(protocol: str) -> Callable[[C], C]:
    """Class decorator registering an :class:`OracleClient` under ``protocol``."""

    def decorator(cls: C) -> C:
        if not protocol:
            raise ValueError(f"Client {cls.__name__} must be registered under a protocol name")
        CLIENT_REGISTRY[protocol.lower()] = cls
        return cls

    return decorator


def get_available_protocols() -> list[str]:
    return sorted(CLIENT_REGISTRY)


def create_client(
    instance: InstanceSpec,
    *,
    breaker_manager: CircuitBreakerManager | None = None,
    retry_config: RetryConfig | None = None,
    rate_limiter: SlidingWindowRateLimiter | None = None,
    clock: Clock = SYSTEM_CLOCK,
) -> OracleClient:
    """Build the client for an instance's protocol and chain.

    Raises:
        UnsupportedProtocolError: No client is registered for the protocol.
        UnsupportedChainError: The protocol has no deployment on the chain.
        AdapterConfigError: The instance config is unusable.
    """
    protocol = instance.protocol.lower()
    cls = CLIENT_REGISTRY.get(protocol)
    if cls is None:
        raise UnsupportedProtocolError(protocol)

    breaker = None
    if breaker_manager is not None:
        breaker = breaker_manager.get(f"{protocol}:{instance.chain.lower()}")

    return cls(
        instance.chain,
        rpc_url=instance.rpc_url,
        protocol_config=instance.protocol_config,
        breaker=breaker,
        retry_config=retry_config,
        rate_limiter=rate_limiter,
        clock=clock,
    )
