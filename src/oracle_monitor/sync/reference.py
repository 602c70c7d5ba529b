"""Reference prices that observations are compared against."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Protocol

import numpy as np

from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock
from oracle_monitor.storage.database import DatabaseManager
from oracle_monitor.storage.repos import PriceObservationRepository

logger = logging.getLogger(__name__)


class ReferencePriceSource(Protocol):
    """Anything that can quote a reference price for a symbol."""

    async def get_reference_price(self, symbol: str, *, protocol: str, chain: str) -> float | None: ...


class CrossProtocolReference:
    """Median of the latest fresh observation from every other protocol.

    Observations from the asking protocol are excluded so a protocol is
    never compared against itself. With ``same_chain`` set, only peers
    on the same chain count.
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        max_age_seconds: float = 300.0,
        same_chain: bool = False,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._db = db
        self._max_age = timedelta(seconds=max_age_seconds)
        self._same_chain = same_chain
        self._clock = clock

    async def get_reference_price(self, symbol: str, *, protocol: str, chain: str) -> float | None:
        since = self._clock.now() - self._max_age
        async with self._db.get_async_session() as session:
            latest = await PriceObservationRepository(session).latest_by_protocol(
                symbol,
                since=since,
                chain=chain if self._same_chain else None,
                exclude_protocol=protocol,
            )
        prices = [obs.price for obs in latest if obs.price > 0]
        if not prices:
            return None
        return float(np.median(prices))


class StaticReference:
    """Fixed reference prices keyed by symbol."""

    def __init__(self, prices: dict[str, float]) -> None:
        self._prices = dict(prices)

    def set_price(self, symbol: str, price: float) -> None:
        self._prices[symbol] = price

    async def get_reference_price(self, symbol: str, *, protocol: str, chain: str) -> float | None:
        return self._prices.get(symbol)
