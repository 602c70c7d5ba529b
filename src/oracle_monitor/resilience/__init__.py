"""Resilience primitives - circuit breaker, retry, rate limiting."""

from oracle_monitor.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitBreakerState,
    CircuitState,
)
from oracle_monitor.resilience.errors import (
    CircuitOpenError,
    DegradedError,
    InvalidRequestError,
    RateLimitExceededError,
    ResilienceError,
)
from oracle_monitor.resilience.rate_limiter import RateLimitResult, SlidingWindowRateLimiter
from oracle_monitor.resilience.retry import RetryConfig, compute_delay, retry_async

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerManager",
    "CircuitBreakerState",
    "CircuitOpenError",
    "CircuitState",
    "DegradedError",
    "InvalidRequestError",
    "RateLimitExceededError",
    "RateLimitResult",
    "ResilienceError",
    "RetryConfig",
    "SlidingWindowRateLimiter",
    "compute_delay",
    "retry_async",
]
