"""Periodic alert evaluation.

Every ``interval_seconds`` the manager reads the newest observation of
each symbol inside the lookback window and the current sync instance
state, turns them into evaluation contexts and hands them to the rule
engine.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from oracle_monitor.alerts.engine import AlertRuleEngine
from oracle_monitor.alerts.models import AlertEvent, AlertOutcome, EvaluationContext
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock, Ticker
from oracle_monitor.storage.database import DatabaseManager
from oracle_monitor.storage.repos import (
    PriceObservationDTO,
    PriceObservationRepository,
    SyncInstanceDTO,
    SyncInstanceRepository,
)

logger = logging.getLogger(__name__)

UNHEALTHY_STATUSES = frozenset({"error", "stalled"})


@dataclass
class AlertManagerStats:
    runs: int = 0
    contexts_evaluated: int = 0
    alerts_fired: int = 0
    notifications_scheduled: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None


def observation_contexts(observations: list[PriceObservationDTO], now: datetime) -> list[EvaluationContext]:
    """Price, threshold and staleness contexts for the latest observations."""
    contexts: list[EvaluationContext] = []
    for obs in observations:
        updated_at = obs.published_at or obs.timestamp
        common = {
            "timestamp": now,
            "protocol": obs.protocol,
            "chain": obs.chain,
            "symbol": obs.symbol,
            "instance_id": obs.instance_id,
            "price": obs.price,
        }
        if obs.deviation is not None:
            contexts.append(
                EvaluationContext(
                    event=AlertEvent.PRICE_DEVIATION,
                    deviation=obs.deviation,
                    metadata={"reference_price": obs.source_price} if obs.source_price else {},
                    **common,
                )
            )
        contexts.append(EvaluationContext(event=AlertEvent.PRICE_THRESHOLD, **common))
        contexts.append(
            EvaluationContext(
                event=AlertEvent.STALE_DATA,
                age_seconds=max((now - updated_at).total_seconds(), 0.0),
                **common,
            )
        )
    return contexts


def instance_contexts(instances: list[SyncInstanceDTO], now: datetime) -> list[EvaluationContext]:
    """Sync failure contexts per instance and healthy counts per protocol."""
    contexts: list[EvaluationContext] = []
    healthy: dict[str, int] = defaultdict(int)
    total: dict[str, int] = defaultdict(int)

    for instance in instances:
        if not instance.enabled:
            continue
        total[instance.protocol] += 1
        if instance.status not in UNHEALTHY_STATUSES:
            healthy[instance.protocol] += 1
        if instance.consecutive_failures > 0:
            contexts.append(
                EvaluationContext(
                    event=AlertEvent.SYNC_FAILURE,
                    timestamp=now,
                    protocol=instance.protocol,
                    chain=instance.chain,
                    instance_id=instance.instance_id,
                    consecutive_failures=instance.consecutive_failures,
                    metadata={"status": instance.status, "last_error": instance.last_error},
                )
            )

    for protocol, count in sorted(total.items()):
        contexts.append(
            EvaluationContext(
                event=AlertEvent.PROTOCOL_DOWN,
                timestamp=now,
                protocol=protocol,
                healthy_instances=healthy[protocol],
                metadata={"total_instances": count},
            )
        )
    return contexts


class AlertManager:
    """Feeds stored observations and sync state to the rule engine."""

    def __init__(
        self,
        engine: AlertRuleEngine,
        db: DatabaseManager,
        *,
        interval_seconds: float = 60.0,
        lookback_minutes: int = 15,
        drain_timeout_seconds: float = 10.0,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._engine = engine
        self._db = db
        self._interval = interval_seconds
        self._lookback = timedelta(minutes=lookback_minutes)
        self._drain_timeout = drain_timeout_seconds
        self._clock = clock
        self._ticker: Ticker | None = None
        self.stats = AlertManagerStats()

    @property
    def engine(self) -> AlertRuleEngine:
        return self._engine

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and self._ticker.is_running

    def start(self) -> None:
        if self.is_running:
            return
        self._ticker = Ticker(self._tick, self._interval, name="alert-manager")
        self._ticker.start()
        logger.info("Alert manager started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        """Stop evaluating and wait for deliveries already under way."""
        if self._ticker is not None:
            await self._ticker.stop()
            self._ticker = None
            logger.info("Alert manager stopped")
        await self._engine.drain(self._drain_timeout)

    async def _tick(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            self.stats.last_error = str(e)
            logger.error("Alert evaluation run failed: %s", e)

    async def run_once(self) -> list[AlertOutcome]:
        """Evaluate every current context once."""
        now = self._clock.now()
        async with self._db.get_async_session() as session:
            observations = await PriceObservationRepository(session).latest_per_symbol(
                since=now - self._lookback
            )
            instances = await SyncInstanceRepository(session).list_all()

        contexts = observation_contexts(observations, now) + instance_contexts(instances, now)
        outcomes = await self._engine.evaluate_batch(contexts)

        self.stats.runs += 1
        self.stats.contexts_evaluated += len(contexts)
        self.stats.alerts_fired += len(outcomes)
        self.stats.notifications_scheduled += sum(1 for o in outcomes if o.notify)
        self.stats.last_run_at = now
        if outcomes:
            logger.info("Alert run fired %d rules over %d contexts", len(outcomes), len(contexts))
        else:
            logger.debug("Alert run evaluated %d contexts, nothing fired", len(contexts))
        return outcomes
