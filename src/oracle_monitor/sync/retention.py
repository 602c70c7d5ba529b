"""Periodic purge of old observations and price updates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock, Ticker
from oracle_monitor.storage.database import DatabaseManager
from oracle_monitor.storage.repos import PriceObservationRepository, PriceUpdateRepository

logger = logging.getLogger(__name__)


@dataclass
class RetentionResult:
    cutoff: datetime
    observations_deleted: int
    price_updates_deleted: int


class RetentionJob:
    """Deletes rows older than ``retention_days``, independent of any sync."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        retention_days: int = 90,
        interval_seconds: float = 3600.0,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        self._db = db
        self._retention = timedelta(days=retention_days)
        self._interval = interval_seconds
        self._clock = clock
        self._ticker: Ticker | None = None
        self.last_result: RetentionResult | None = None

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and self._ticker.is_running

    def start(self) -> None:
        if self.is_running:
            return
        self._ticker = Ticker(self.purge_once, self._interval, name="retention", run_immediately=True)
        self._ticker.start()

    async def stop(self) -> None:
        if self._ticker is None:
            return
        await self._ticker.stop()
        self._ticker = None

    async def purge_once(self) -> RetentionResult:
        cutoff = self._clock.now() - self._retention
        async with self._db.get_async_session() as session:
            observations = await PriceObservationRepository(session).delete_before(cutoff)
            updates = await PriceUpdateRepository(session).delete_before(cutoff)

        result = RetentionResult(
            cutoff=cutoff,
            observations_deleted=observations,
            price_updates_deleted=updates,
        )
        self.last_result = result
        if observations or updates:
            logger.info(
                "Retention purged %d observations and %d price updates older than %s",
                observations,
                updates,
                cutoff.isoformat(),
            )
        return result
