"""Exceptions raised by resilience primitives."""

from __future__ import annotations


class ResilienceError(Exception):
    """Base exception for resilience errors."""


class DegradedError(ResilienceError):
    """The dependency is temporarily unavailable; retry later.

    Distinct from request errors: the call itself was valid.
    """

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class CircuitOpenError(DegradedError):
    """Raised when a call is rejected by an open circuit breaker."""

    def __init__(self, name: str, *, retry_after: float | None = None) -> None:
        super().__init__(f"Circuit '{name}' is open", retry_after=retry_after)
        self.name = name


class RateLimitExceededError(DegradedError):
    """Raised when a caller exceeds its sliding-window allowance."""

    def __init__(self, key: str, *, retry_after: float) -> None:
        super().__init__(
            f"Rate limit exceeded for '{key}', retry after {retry_after:.2f}s",
            retry_after=retry_after,
        )
        self.key = key


class InvalidRequestError(ResilienceError):
    """The request is malformed and must not be retried."""
