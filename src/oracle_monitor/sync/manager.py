"""Per-instance polling loop.

A :class:`SyncManager` owns one sync instance: it polls the instance's
protocol client on a :class:`~oracle_monitor.scheduler.Ticker`, computes
deviations against a reference price, persists observations atomically
and tracks instance health.
"""

from __future__ import annotations

import asyncio
import logging
import random

from oracle_monitor.adapters.base import OracleClient
from oracle_monitor.adapters.models import Observation
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock, Ticker
from oracle_monitor.storage.database import DatabaseManager
from oracle_monitor.storage.repos import (
    PriceObservationDTO,
    PriceObservationRepository,
    PriceUpdateDTO,
    PriceUpdateRepository,
    SyncInstanceRepository,
)
from oracle_monitor.sync.models import (
    InstanceDisabledError,
    SyncConfig,
    SyncCycleResult,
    SyncInstance,
    SyncStats,
    SyncStatus,
)
from oracle_monitor.sync.reference import ReferencePriceSource

logger = logging.getLogger(__name__)

BACKOFF_JITTER_RATIO = 0.1


def compute_backoff(
    failures: int,
    *,
    retry_delay_seconds: float,
    max_backoff_seconds: float,
    rng: random.Random | None = None,
) -> float:
    """Post-failure backoff: ``retry_delay * 2^(n-1)`` capped, plus up to 10% jitter."""
    if failures <= 0:
        return 0.0
    delay = min(retry_delay_seconds * (2 ** (failures - 1)), max_backoff_seconds)
    return delay + (rng or random).uniform(0.0, BACKOFF_JITTER_RATIO) * delay


def compute_deviation(price: float, reference: float | None) -> float | None:
    if reference is None or reference <= 0:
        return None
    return abs(price - reference) / reference


class SyncManager:
    """Polls one sync instance and persists what it reads.

    Cycles never overlap: a cycle requested while another is in flight is
    skipped, not queued. After a failed cycle further cycles are skipped
    until the backoff window passes.

    Example:
        ```python
        manager = SyncManager(instance, client, db, config=SyncConfig())
        await manager.start()
        ...
        await manager.stop()
        ```
    """

    def __init__(
        self,
        instance: SyncInstance,
        client: OracleClient,
        db: DatabaseManager,
        *,
        config: SyncConfig | None = None,
        reference: ReferencePriceSource | None = None,
        clock: Clock = SYSTEM_CLOCK,
        rng: random.Random | None = None,
    ) -> None:
        self._instance = instance
        self._client = client
        self._db = db
        self._config = config or SyncConfig()
        self._reference = reference
        self._clock = clock
        self._rng = rng

        self._stats = SyncStats()
        self._cycle_lock = asyncio.Lock()
        self._next_attempt_at = 0.0
        self._last_prices: dict[str, float] = {}
        self._ticker: Ticker | None = None

    @property
    def instance(self) -> SyncInstance:
        return self._instance

    @property
    def client(self) -> OracleClient:
        return self._client

    @property
    def stats(self) -> SyncStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        """True while the polling ticker is scheduled."""
        return self._ticker is not None and self._ticker.is_running

    @property
    def is_syncing(self) -> bool:
        """True while a cycle is in flight."""
        return self._cycle_lock.locked()

    async def start(self) -> None:
        """Run an initial cycle, then poll on the configured interval.

        No-op if already running.

        Raises:
            InstanceDisabledError: If the instance is disabled.
        """
        if self.is_running:
            return
        if not self._instance.enabled:
            raise InstanceDisabledError(f"Sync instance {self._instance.instance_id} is disabled")

        logger.info(
            "Starting sync %s (%d symbols every %.0fs)",
            self._instance.instance_id,
            len(self._instance.symbols),
            self._config.interval_seconds,
        )
        # Claim the ticker before the first await so a concurrent start() sees it.
        self._ticker = Ticker(
            self.run_cycle,
            self._config.interval_seconds,
            name=f"sync-{self._instance.instance_id}",
        )
        self._ticker.start()
        await self.run_cycle()

    async def stop(self) -> None:
        """Stop polling. Safe to call when not running."""
        if self._ticker is None:
            return
        await self._ticker.stop()
        self._ticker = None
        logger.info("Stopped sync %s", self._instance.instance_id)

    async def run_cycle(self) -> SyncCycleResult | None:
        """Run one poll cycle.

        Returns:
            The cycle result, or None if the cycle was skipped because
            another was in flight or the instance is backing off.
        """
        if self._cycle_lock.locked():
            self._stats.skipped_cycles += 1
            logger.debug("Sync %s cycle already in flight, skipping", self._instance.instance_id)
            return None

        async with self._cycle_lock:
            remaining = self._next_attempt_at - self._clock.monotonic()
            if remaining > 0:
                self._stats.backoff_skips += 1
                logger.debug(
                    "Sync %s backing off for another %.1fs",
                    self._instance.instance_id,
                    remaining,
                )
                return None
            return await self._run_cycle_locked()

    async def _run_cycle_locked(self) -> SyncCycleResult:
        instance = self._instance
        started_at = self._clock.now()
        started = self._clock.monotonic()
        self._stats.cycles += 1
        previous_status = instance.status
        instance.status = SyncStatus.RUNNING

        block_number = await self._read_block_number()
        observations, missed = await self._poll_symbols()

        persisted = 0
        updates_recorded = 0
        error: str | None = None
        if observations:
            try:
                persisted, updates_recorded = await self._persist(observations, block_number)
            except Exception as e:
                error = f"persist failed: {e}"
                logger.error("Sync %s failed to persist observations: %s", instance.instance_id, e)
        else:
            error = f"no observations for {len(instance.symbols)} symbols"

        success = persisted > 0
        if success:
            self._record_success(block_number, previous_status)
        else:
            self._record_failure(error or "no observations persisted", previous_status)

        duration_ms = int((self._clock.monotonic() - started) * 1000)
        self._stats.last_cycle_at = started_at
        self._stats.last_cycle_duration_ms = duration_ms
        self._stats.symbol_misses += len(missed)

        await self._save_state()

        return SyncCycleResult(
            instance_id=instance.instance_id,
            started_at=started_at,
            success=success,
            observations_persisted=persisted,
            price_updates_recorded=updates_recorded,
            block_number=block_number,
            missed_symbols=missed,
            error=None if success else instance.last_error,
            duration_ms=duration_ms,
        )

    async def _read_block_number(self) -> int | None:
        try:
            return await self._client.get_block_number()
        except Exception as e:
            logger.warning("Sync %s failed reading block number: %s", self._instance.instance_id, e)
            return None

    async def _poll_symbols(self) -> tuple[list[Observation], list[str]]:
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def poll(symbol: str) -> Observation | None:
            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        self._client.get_price_for_symbol(symbol),
                        timeout=self._config.adapter_timeout_seconds,
                    )
                except TimeoutError:
                    logger.warning(
                        "Sync %s timed out reading %s after %.1fs",
                        self._instance.instance_id,
                        symbol,
                        self._config.adapter_timeout_seconds,
                    )
                    return None
                except Exception as e:
                    logger.warning("Sync %s failed reading %s: %s", self._instance.instance_id, symbol, e)
                    return None

        symbols = list(self._instance.symbols)
        results = await asyncio.gather(*(poll(s) for s in symbols))

        observations = [obs for obs in results if obs is not None]
        missed = [s for s, obs in zip(symbols, results, strict=True) if obs is None]
        return observations, missed

    async def _persist(self, observations: list[Observation], block_number: int | None) -> tuple[int, int]:
        instance = self._instance
        rows: list[PriceObservationDTO] = []
        updates: list[PriceUpdateDTO] = []

        for obs in observations:
            reference = await self._reference_price(obs)
            rows.append(
                PriceObservationDTO(
                    instance_id=instance.instance_id,
                    protocol=obs.protocol,
                    chain=obs.chain,
                    symbol=obs.symbol,
                    price=obs.price,
                    timestamp=obs.timestamp,
                    confidence=obs.confidence,
                    source_price=reference,
                    deviation=compute_deviation(obs.price, reference),
                    latency_ms=obs.latency_ms,
                    block_number=obs.block_number if obs.block_number is not None else block_number,
                    published_at=obs.published_at,
                )
            )
            update = self._price_update(obs)
            if update is not None:
                updates.append(update)

        # One transaction: the whole batch lands or none of it does.
        batch_size = self._config.batch_size
        persisted = 0
        async with self._db.get_async_session() as session:
            repo = PriceObservationRepository(session)
            for i in range(0, len(rows), batch_size):
                persisted += await repo.insert_many(rows[i : i + batch_size])
            if updates:
                await PriceUpdateRepository(session).insert_many(updates)

        for obs in observations:
            self._last_prices[obs.symbol] = obs.price
        self._stats.observations_persisted += persisted
        self._stats.price_updates_recorded += len(updates)
        return persisted, len(updates)

    async def _reference_price(self, obs: Observation) -> float | None:
        if self._reference is None:
            return None
        try:
            return await self._reference.get_reference_price(
                obs.symbol, protocol=obs.protocol, chain=obs.chain
            )
        except Exception as e:
            logger.warning("Reference price lookup failed for %s: %s", obs.symbol, e)
            return None

    def _price_update(self, obs: Observation) -> PriceUpdateDTO | None:
        previous = self._last_prices.get(obs.symbol)
        if previous is None or previous <= 0:
            return None
        change = (obs.price - previous) / previous
        if abs(change) < self._config.price_change_threshold:
            return None
        return PriceUpdateDTO(
            instance_id=self._instance.instance_id,
            protocol=obs.protocol,
            chain=obs.chain,
            symbol=obs.symbol,
            previous_price=previous,
            price=obs.price,
            change_ratio=change,
            timestamp=obs.timestamp,
        )

    def _record_success(self, block_number: int | None, previous_status: SyncStatus) -> None:
        instance = self._instance
        if previous_status == SyncStatus.STALLED or instance.consecutive_failures:
            logger.info(
                "Sync %s recovered after %d failures",
                instance.instance_id,
                instance.consecutive_failures,
            )
        instance.status = SyncStatus.IDLE
        instance.consecutive_failures = 0
        instance.last_success_at = self._clock.now()
        instance.last_error = None
        if block_number is not None:
            instance.last_block_number = block_number
        self._next_attempt_at = 0.0
        self._stats.successful_cycles += 1

    def _record_failure(self, error: str, previous_status: SyncStatus) -> None:
        instance = self._instance
        instance.consecutive_failures += 1
        instance.last_error = error
        self._stats.failed_cycles += 1
        self._stats.last_error = error

        backoff = compute_backoff(
            instance.consecutive_failures,
            retry_delay_seconds=self._config.retry_delay_seconds,
            max_backoff_seconds=self._config.max_backoff_seconds,
            rng=self._rng,
        )
        self._next_attempt_at = self._clock.monotonic() + backoff

        if instance.consecutive_failures >= self._config.stall_threshold:
            if previous_status != SyncStatus.STALLED:
                logger.error(
                    "Sync %s stalled after %d consecutive failures: %s",
                    instance.instance_id,
                    instance.consecutive_failures,
                    error,
                )
            instance.status = SyncStatus.STALLED
        else:
            instance.status = SyncStatus.ERROR
            logger.warning(
                "Sync %s cycle failed (%d in a row), backing off %.1fs: %s",
                instance.instance_id,
                instance.consecutive_failures,
                backoff,
                error,
            )

    async def _save_state(self) -> None:
        try:
            async with self._db.get_async_session() as session:
                await SyncInstanceRepository(session).upsert(self._instance.to_dto())
        except Exception as e:
            logger.error("Failed to save state for sync %s: %s", self._instance.instance_id, e)