"""Circuit breaker for outbound oracle calls.

Breakers are process-local and partitioned by resource name (typically
``"<protocol>:<chain>"``). :class:`CircuitBreakerManager` hands out one
breaker per name from a bounded registry.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from oracle_monitor.resilience.errors import CircuitOpenError, InvalidRequestError
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_SUCCESS_THRESHOLD = 3
DEFAULT_OPEN_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_BREAKERS = 1024


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for a circuit breaker."""

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    success_threshold: int = DEFAULT_SUCCESS_THRESHOLD
    open_timeout_seconds: float = DEFAULT_OPEN_TIMEOUT_SECONDS
    soft_decay: bool = True


@dataclass(frozen=True)
class CircuitBreakerState:
    """Snapshot of a breaker, as exposed to health and dashboards."""

    name: str
    state: CircuitState
    failures: int
    successes: int
    next_attempt_time: float | None


class CircuitBreaker:
    """Three-state circuit breaker.

    - ``closed``: calls pass through. Each failure increments the failure
      count; reaching ``failure_threshold`` opens the circuit. With
      ``soft_decay`` a success decrements the count by one, otherwise it
      resets to zero.
    - ``open``: calls are rejected with :class:`CircuitOpenError` until
      ``next_attempt_time``.
    - ``half-open``: at most ``success_threshold`` trial calls are let
      through. That many successes close the circuit; a single failure
      re-opens it with a fresh timeout.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_in_flight = 0
        self._next_attempt_time: float | None = None

    @property
    def state(self) -> CircuitState:
        """Current state, promoting ``open`` to ``half-open`` when due."""
        self._maybe_half_open()
        return self._state

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            name=self.name,
            state=self.state,
            failures=self._failures,
            successes=self._successes,
            next_attempt_time=self._next_attempt_time,
        )

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._next_attempt_time is not None
            and self._clock.monotonic() >= self._next_attempt_time
        ):
            logger.info("Circuit %s half-open, allowing trial calls", self.name)
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            self._half_open_in_flight = 0

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._successes = 0
        self._half_open_in_flight = 0
        self._next_attempt_time = self._clock.monotonic() + self.config.open_timeout_seconds
        logger.warning(
            "Circuit %s opened (failures=%d), next attempt in %.1fs",
            self.name,
            self._failures,
            self.config.open_timeout_seconds,
        )

    def _reject(self) -> CircuitOpenError:
        retry_after = None
        if self._next_attempt_time is not None:
            retry_after = max(0.0, self._next_attempt_time - self._clock.monotonic())
        return CircuitOpenError(self.name, retry_after=retry_after)

    def _before_call(self) -> None:
        state = self.state
        if state == CircuitState.OPEN:
            raise self._reject()
        if state == CircuitState.HALF_OPEN:
            if self._successes + self._half_open_in_flight >= self.config.success_threshold:
                raise self._reject()
            self._half_open_in_flight += 1

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            self._successes += 1
            if self._successes >= self.config.success_threshold:
                logger.info("Circuit %s closed after %d trial successes", self.name, self._successes)
                self._state = CircuitState.CLOSED
                self._failures = 0
                self._successes = 0
                self._next_attempt_time = None
            return

        if self.config.soft_decay:
            self._failures = max(0, self._failures - 1)
        else:
            self._failures = 0

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._failures += 1
            self._open()
            return

        self._failures += 1
        if self._state == CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
            self._open()

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit rejects the call. The operation
                is not invoked.
        """
        self._before_call()
        try:
            result = await operation()
        except InvalidRequestError:
            # The resource answered; the request itself was bad.
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to ``closed``."""
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_in_flight = 0
        self._next_attempt_time = None


class CircuitBreakerManager:
    """Bounded registry of breakers keyed by resource name.

    When full, the least recently used breaker that is ``closed`` is
    evicted. Open and half-open breakers are kept so their state is not
    lost under key churn.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        max_breakers: int = DEFAULT_MAX_BREAKERS,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._max_breakers = max_breakers
        self._clock = clock
        self._breakers: OrderedDict[str, CircuitBreaker] = OrderedDict()

    def get(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is not None:
            self._breakers.move_to_end(name)
            return breaker

        if len(self._breakers) >= self._max_breakers:
            self._evict_one()
        breaker = CircuitBreaker(name, config or self._config, clock=self._clock)
        self._breakers[name] = breaker
        return breaker

    def _evict_one(self) -> None:
        for key, breaker in self._breakers.items():
            if breaker.state == CircuitState.CLOSED:
                del self._breakers[key]
                return
        # Everything is tripped; drop the oldest entry.
        self._breakers.popitem(last=False)

    def states(self) -> list[CircuitBreakerState]:
        return [b.snapshot() for b in self._breakers.values()]

    def __len__(self) -> int:
        return len(self._breakers)
