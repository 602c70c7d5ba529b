"""Tests for the retention job."""

from datetime import timedelta

import pytest

from oracle_monitor.storage.repos import (
    PriceObservationDTO,
    PriceObservationRepository,
    PriceUpdateDTO,
    PriceUpdateRepository,
)
from oracle_monitor.sync import RetentionJob


class TestRetentionJob:
    """Tests for RetentionJob."""

    @pytest.mark.asyncio
    async def test_purges_rows_older_than_retention(self, db, clock) -> None:
        """Only rows older than retention_days are deleted."""
        old = clock.now() - timedelta(days=31)
        recent = clock.now() - timedelta(days=1)
        async with db.get_async_session() as session:
            await PriceObservationRepository(session).insert_many(
                [
                    PriceObservationDTO("pyth-ethereum", "pyth", "ethereum", "BTC/USD", 50000.0, old),
                    PriceObservationDTO("pyth-ethereum", "pyth", "ethereum", "BTC/USD", 50100.0, recent),
                ]
            )
            await PriceUpdateRepository(session).insert_many(
                [PriceUpdateDTO("pyth-ethereum", "pyth", "ethereum", "BTC/USD", 49000.0, 50000.0, 0.02, old)]
            )

        job = RetentionJob(db, retention_days=30, clock=clock)
        result = await job.purge_once()

        assert result.observations_deleted == 1
        assert result.price_updates_deleted == 1
        assert result.cutoff == clock.now() - timedelta(days=30)
        assert job.last_result is result

        async with db.get_async_session() as session:
            remaining = await PriceObservationRepository(session).list_for_symbol(
                "BTC/USD", since=clock.now() - timedelta(days=365)
            )
        assert [r.price for r in remaining] == [50100.0]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, db, clock) -> None:
        """The job runs on its own ticker."""
        job = RetentionJob(db, interval_seconds=3600.0, clock=clock)
        job.start()
        assert job.is_running
        await job.stop()
        assert not job.is_running

    def test_rejects_zero_retention(self, db) -> None:
        """retention_days must be at least one."""
        with pytest.raises(ValueError):
            RetentionJob(db, retention_days=0)
