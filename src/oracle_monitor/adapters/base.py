"""Protocol client capability interface.

Every oracle protocol implements :class:`OracleClient`. Reads never raise
for routine failures: RPC errors, open circuits and missing feeds all
come back as ``None`` so the sync scheduler stays protocol-agnostic.
Only construction problems (unsupported chain, bad config) raise.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar, TypeVar

from oracle_monitor.adapters.models import Observation
from oracle_monitor.resilience.circuit_breaker import CircuitBreaker
from oracle_monitor.resilience.errors import DegradedError
from oracle_monitor.resilience.rate_limiter import SlidingWindowRateLimiter
from oracle_monitor.resilience.retry import RetryConfig, retry_async
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdapterError(Exception):
    """Base exception for adapter errors."""


class UnsupportedChainError(AdapterError):
    """Raised when a protocol has no deployment on the requested chain."""

    def __init__(self, protocol: str, chain: str) -> None:
        super().__init__(f"{protocol} is not supported on chain '{chain}'")
        self.protocol = protocol
        self.chain = chain


class UnsupportedProtocolError(AdapterError):
    """Raised when no client is registered for a protocol."""

    def __init__(self, protocol: str) -> None:
        super().__init__(f"No client registered for protocol '{protocol}'")
        self.protocol = protocol


class AdapterConfigError(AdapterError):
    """Raised when an instance's protocol_config is invalid."""


class OracleClient(ABC):
    """Uniform read interface over one protocol on one chain.

    Subclasses implement ``_fetch_block_number`` and ``_fetch_price``,
    which may raise freely; the public methods route every call through
    the circuit breaker, retry policy and optional rate limiter, and turn
    failures into ``None``.
    """

    protocol: ClassVar[str] = ""
    # Empty means chain-agnostic.
    supported_chains: ClassVar[frozenset[str]] = frozenset()

    def __init__(
        self,
        chain: str,
        *,
        rpc_url: str | None = None,
        protocol_config: dict[str, Any] | None = None,
        breaker: CircuitBreaker | None = None,
        retry_config: RetryConfig | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        chain = chain.lower()
        if self.supported_chains and chain not in self.supported_chains:
            raise UnsupportedChainError(self.protocol, chain)
        self.chain = chain
        self.rpc_url = rpc_url
        self.protocol_config = dict(protocol_config or {})
        self._clock = clock
        self._breaker = breaker or CircuitBreaker(self.resource_name, clock=clock)
        self._retry_config = retry_config or RetryConfig()
        self._rate_limiter = rate_limiter

    @property
    def resource_name(self) -> str:
        return f"{self.protocol}:{self.chain}"

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def get_block_number(self) -> int | None:
        """Latest block height, or None if it could not be read."""
        return await self._guarded("block number", self._fetch_block_number)

    async def get_price_for_symbol(self, symbol: str) -> Observation | None:
        """Read one symbol, or None on any routine failure."""
        started = self._clock.monotonic()
        observation = await self._guarded(f"price {symbol}", lambda: self._fetch_price(symbol))
        if observation is None:
            return None
        latency_ms = int((self._clock.monotonic() - started) * 1000)
        return Observation(
            protocol=observation.protocol,
            chain=observation.chain,
            symbol=observation.symbol,
            price=observation.price,
            timestamp=observation.timestamp,
            confidence=observation.confidence,
            published_at=observation.published_at,
            block_number=observation.block_number,
            latency_ms=latency_ms,
            metadata=observation.metadata,
        )

    def supported_symbols(self) -> list[str]:
        """Symbols with a known feed on this chain."""
        return []

    async def close(self) -> None:
        """Release network resources."""

    @abstractmethod
    async def _fetch_block_number(self) -> int | None: ...

    @abstractmethod
    async def _fetch_price(self, symbol: str) -> Observation | None: ...

    async def _guarded(self, description: str, operation: Callable[[], Awaitable[T]]) -> T | None:
        async def attempt() -> T:
            if self._rate_limiter is not None:
                await self._rate_limiter.acquire(self.resource_name)
            return await self._breaker.execute(operation)

        try:
            return await retry_async(
                attempt,
                self._retry_config,
                description=f"{self.resource_name} {description}",
            )
        except DegradedError as e:
            logger.debug("%s %s skipped: %s", self.resource_name, description, e)
            return None
        except Exception as e:
            logger.warning("%s %s failed: %s", self.resource_name, description, e)
            return None

    def _observation(self, symbol: str, price: float, **kwargs: Any) -> Observation:
        return Observation(
            protocol=self.protocol,
            chain=self.chain,
            symbol=symbol,
            price=price,
            timestamp=self._clock.now(),
            **kwargs,
        )
