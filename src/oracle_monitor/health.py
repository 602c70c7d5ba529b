"""Health sampling for the monitor.

Combines transport statistics (stream clients and subscriptions), the
number of active syncs and the sync instances that are failing into one
:class:`HealthCheckResult`. The interval loop only logs failures;
:meth:`HealthCheckManager.check_now` raises them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock, Ticker
from oracle_monitor.storage.database import DatabaseManager
from oracle_monitor.storage.repos import SyncInstanceDTO, SyncInstanceRepository

logger = logging.getLogger(__name__)


class HealthCheckError(Exception):
    """Raised when an on-demand health check cannot be completed."""


@dataclass(frozen=True)
class StreamStats:
    clients: int = 0
    subscriptions: int = 0


class StreamStatsProvider(Protocol):
    """Anything that can report live stream transport statistics."""

    def stream_stats(self) -> StreamStats: ...


class NoStreams:
    """Provider for deployments without a streaming transport."""

    def stream_stats(self) -> StreamStats:
        return StreamStats()


@dataclass
class HealthCheckResult:
    ws_clients: int
    ws_subscriptions: int
    active_syncs: int
    is_running: bool
    checked_at: datetime
    unhealthy_instances: list[SyncInstanceDTO] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return self.is_running and not self.unhealthy_instances

    def to_dict(self) -> dict[str, object]:
        return {
            "ws_clients": self.ws_clients,
            "ws_subscriptions": self.ws_subscriptions,
            "active_syncs": self.active_syncs,
            "is_running": self.is_running,
            "is_healthy": self.is_healthy,
            "checked_at": self.checked_at.isoformat(),
            "unhealthy_instances": [
                {
                    "instance_id": i.instance_id,
                    "status": i.status,
                    "consecutive_failures": i.consecutive_failures,
                    "last_error": i.last_error,
                }
                for i in self.unhealthy_instances
            ],
        }


class HealthCheckManager:
    """Periodically samples stream and sync health.

    Args:
        db: Database manager used to find failing sync instances.
        streams: Source of stream transport statistics.
        active_syncs: Callable returning the number of running syncs.
        failure_threshold: Minimum consecutive failures for an instance in
            ``error``/``stalled`` to count as unhealthy.
        interval_seconds: Sampling interval of the background loop.
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        streams: StreamStatsProvider | None = None,
        active_syncs: Callable[[], int] = lambda: 0,
        failure_threshold: int = 3,
        interval_seconds: float = 60.0,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._db = db
        self._streams = streams or NoStreams()
        self._active_syncs = active_syncs
        self._failure_threshold = failure_threshold
        self._interval = interval_seconds
        self._clock = clock
        self._ticker: Ticker | None = None
        self.last_result: HealthCheckResult | None = None

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and self._ticker.is_running

    def start(self) -> None:
        if self.is_running:
            return
        self._ticker = Ticker(self._tick, self._interval, name="health-check", run_immediately=True)
        self._ticker.start()

    async def stop(self) -> None:
        if self._ticker is None:
            return
        await self._ticker.stop()
        self._ticker = None

    async def _tick(self) -> None:
        try:
            result = await self._sample()
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return

        if result.unhealthy_instances:
            logger.warning(
                "%d unhealthy sync instances: %s",
                len(result.unhealthy_instances),
                ", ".join(i.instance_id for i in result.unhealthy_instances),
            )
        else:
            logger.debug("Health check ok: %d active syncs", result.active_syncs)

    async def check_now(self) -> HealthCheckResult:
        """Sample health immediately.

        Raises:
            HealthCheckError: If sampling fails.
        """
        try:
            return await self._sample()
        except Exception as e:
            logger.error("On-demand health check failed: %s", e)
            raise HealthCheckError(str(e)) from e

    async def _sample(self) -> HealthCheckResult:
        stats = self._streams.stream_stats()
        async with self._db.get_async_session() as session:
            unhealthy = await SyncInstanceRepository(session).list_unhealthy(
                min_failures=self._failure_threshold
            )

        result = HealthCheckResult(
            ws_clients=stats.clients,
            ws_subscriptions=stats.subscriptions,
            active_syncs=self._active_syncs(),
            is_running=self.is_running,
            checked_at=self._clock.now(),
            unhealthy_instances=unhealthy,
        )
        self.last_result = result
        return result
