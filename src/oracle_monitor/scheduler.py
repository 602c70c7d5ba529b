"""Cancellable interval scheduling with an injectable clock.

Every recurring job in the monitor (sync cycles, alert evaluation, health
sampling, retention) runs on a :class:`Ticker`. Time-dependent components
take a :class:`Clock` so tests can drive them deterministically with
:class:`ManualClock`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[object]]


class Clock:
    """Wall-clock and monotonic time source."""

    def now(self) -> datetime:
        """Current UTC time."""
        return datetime.now(UTC)

    def monotonic(self) -> float:
        """Monotonic seconds, for durations and deadlines."""
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        """Move both wall and monotonic time forward."""
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds


SYSTEM_CLOCK = Clock()


class Ticker:
    """Runs an async callback every ``interval_seconds`` until stopped.

    The callback is awaited inline, so a slow tick delays the next one
    instead of overlapping it. Exceptions raised by the callback are
    logged and the loop keeps running.

    Example:
        ```python
        ticker = Ticker(manager.run_cycle, 60.0, name="chainlink-ethereum")
        ticker.start()
        ...
        await ticker.stop()
        ```
    """

    def __init__(
        self,
        callback: TickCallback,
        interval_seconds: float,
        *,
        name: str = "ticker",
        run_immediately: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._callback = callback
        self._interval = interval_seconds
        self._name = name
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self.ticks = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop. No-op if running."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name=self._name)

    async def stop(self) -> None:
        """Cancel the loop. Safe to call when not running."""
        self._stop_event.set()
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        if self._run_immediately:
            await self._tick()

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass

            if self._stop_event.is_set():
                break
            await self._tick()

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Ticker %s callback failed: %s", self._name, e)
