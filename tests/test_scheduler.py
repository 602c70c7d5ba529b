"""Tests for the interval scheduler."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from oracle_monitor.scheduler import ManualClock, Ticker


class TestManualClock:
    """Tests for the deterministic clock."""

    def test_advance_moves_both_clocks(self) -> None:
        """advance() moves wall and monotonic time together."""
        start = datetime(2026, 3, 1, tzinfo=UTC)
        clock = ManualClock(start)
        clock.advance(90)
        assert clock.now() == start + timedelta(seconds=90)
        assert clock.monotonic() == 90


class TestTicker:
    """Tests for Ticker."""

    @pytest.mark.asyncio
    async def test_runs_callback_repeatedly(self) -> None:
        """The callback runs every interval until stopped."""
        calls = 0

        async def tick() -> None:
            nonlocal calls
            calls += 1

        ticker = Ticker(tick, 0.01, name="test")
        ticker.start()
        await asyncio.sleep(0.08)
        await ticker.stop()

        assert calls >= 2
        assert not ticker.is_running

    @pytest.mark.asyncio
    async def test_run_immediately(self) -> None:
        """run_immediately fires before the first interval elapses."""
        fired = asyncio.Event()

        async def tick() -> None:
            fired.set()

        ticker = Ticker(tick, 60.0, run_immediately=True)
        ticker.start()
        await asyncio.wait_for(fired.wait(), timeout=1.0)
        await ticker.stop()

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_loop(self) -> None:
        """A failing callback is logged and the loop keeps going."""
        calls = 0

        async def tick() -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        ticker = Ticker(tick, 0.01)
        ticker.start()
        await asyncio.sleep(0.08)
        assert ticker.is_running
        await ticker.stop()
        assert calls >= 2

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self) -> None:
        """start() twice keeps one task; stop() is safe when not running."""

        async def tick() -> None:
            return None

        ticker = Ticker(tick, 60.0)
        await ticker.stop()

        ticker.start()
        ticker.start()
        assert ticker.is_running
        await ticker.stop()
        await ticker.stop()
        assert not ticker.is_running

    def test_rejects_non_positive_interval(self) -> None:
        """Interval must be positive."""

        async def tick() -> None:
            return None

        with pytest.raises(ValueError):
            Ticker(tick, 0)
