"""Data models returned by protocol adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Observation:
    """A single oracle reading, protocol-agnostic.

    ``timestamp`` is when the monitor read the value; ``published_at`` is
    the oracle's own update time when the protocol exposes one.
    Assertion-based protocols report health as ``price`` 1.0 (healthy) or
    0.0 (disputed / resolved false).
    """

    protocol: str
    chain: str
    symbol: str
    price: float
    timestamp: datetime
    confidence: float | None = None
    published_at: datetime | None = None
    block_number: int | None = None
    latency_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def age_seconds(self) -> float | None:
        if self.published_at is None:
            return None
        return (self.timestamp - self.published_at).total_seconds()
