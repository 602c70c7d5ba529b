"""Main service orchestrator for the Oracle Monitor.

This module provides the OracleMonitor class that wires together the
sync managers, alerting, health checks and retention, and manages their
lifecycle as one unit.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from redis.asyncio import Redis

from oracle_monitor.adapters import OracleClient, PythClient, create_client
from oracle_monitor.alerts.channels import LogChannel, WebhookChannel
from oracle_monitor.alerts.dispatcher import AlertChannel, NotificationDispatcher
from oracle_monitor.alerts.engine import AlertRuleEngine
from oracle_monitor.alerts.formatter import AlertFormatter
from oracle_monitor.alerts.manager import AlertManager
from oracle_monitor.alerts.models import AlertRule
from oracle_monitor.alerts.rules import default_rules
from oracle_monitor.analytics.aggregation import AggregationConfig, PriceAggregator
from oracle_monitor.analytics.trend import DeviationAnalyzer, TrendConfig
from oracle_monitor.config import Settings, get_settings
from oracle_monitor.health import HealthCheckManager, StreamStatsProvider
from oracle_monitor.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerManager
from oracle_monitor.resilience.rate_limiter import SlidingWindowRateLimiter
from oracle_monitor.resilience.retry import RetryConfig
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock
from oracle_monitor.storage.database import DatabaseManager
from oracle_monitor.storage.repos import SyncInstanceRepository
from oracle_monitor.sync.manager import SyncManager
from oracle_monitor.sync.models import SyncConfig, SyncInstance
from oracle_monitor.sync.reference import CrossProtocolReference
from oracle_monitor.sync.retention import RetentionJob

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., OracleClient]


class MonitorState(str, Enum):
    """Monitor lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class MonitorStats:
    """Statistics for the monitor."""

    started_at: datetime | None = None
    instances_configured: int = 0
    instances_started: int = 0
    instances_failed: int = 0
    rules_loaded: int = 0
    last_error: str | None = None


def _load_json_list(path: Path, key: str) -> list[dict[str, Any]]:
    """Read a JSON file holding either a list or ``{key: [...]}``."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of {key}")
    return data


class OracleMonitor:
    """Main orchestrator for the Oracle Monitor.

    Monitor flow:
        Sync Managers -> Price Observations -> Alert Manager -> Rule Engine -> Channels

    Example:
        ```python
        from oracle_monitor.config import get_settings
        from oracle_monitor.service import OracleMonitor

        monitor = OracleMonitor(get_settings())

        await monitor.start()
        # Syncs, alerting and health checks run until stop() is called
        await monitor.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        db: DatabaseManager | None = None,
        instances: Sequence[SyncInstance] | None = None,
        rules: Sequence[AlertRule] | None = None,
        channels: Sequence[AlertChannel] | None = None,
        client_factory: ClientFactory = create_client,
        streams: StreamStatsProvider | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        """Initialize the monitor.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, alerts are only logged. Overrides settings.dry_run.
            db: Database manager to use instead of one built from settings.
            instances: Sync instances to use instead of MONITOR_INSTANCES_FILE.
            rules: Alert rules to install instead of MONITOR_RULES_FILE.
            channels: Notification channels to use instead of the configured ones.
            client_factory: Builds the protocol client for an instance.
            streams: Stream statistics source for health checks.
            clock: Time source shared by all components.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._injected_db = db
        self._instances_override = list(instances) if instances is not None else None
        self._rules_override = list(rules) if rules is not None else None
        self._channels_override = list(channels) if channels is not None else None
        self._client_factory = client_factory
        self._streams = streams
        self._clock = clock

        self._state = MonitorState.STOPPED
        self._stats = MonitorStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._breakers: CircuitBreakerManager | None = None
        self._rate_limiter: SlidingWindowRateLimiter | None = None
        self._dispatcher: NotificationDispatcher | None = None
        self._engine: AlertRuleEngine | None = None
        self._alert_manager: AlertManager | None = None
        self._health: HealthCheckManager | None = None
        self._retention: RetentionJob | None = None
        self._analyzer: DeviationAnalyzer | None = None
        self._sync_managers: dict[str, SyncManager] = {}
        self._channels: list[AlertChannel] = []

        # Synchronization
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> MonitorState:
        """Current monitor state."""
        return self._state

    @property
    def stats(self) -> MonitorStats:
        """Current monitor statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if the monitor is running."""
        return self._state == MonitorState.RUNNING

    @property
    def sync_managers(self) -> dict[str, SyncManager]:
        return dict(self._sync_managers)

    @property
    def engine(self) -> AlertRuleEngine:
        if self._engine is None:
            raise RuntimeError("Monitor is not started")
        return self._engine

    @property
    def alert_manager(self) -> AlertManager:
        if self._alert_manager is None:
            raise RuntimeError("Monitor is not started")
        return self._alert_manager

    @property
    def health(self) -> HealthCheckManager:
        if self._health is None:
            raise RuntimeError("Monitor is not started")
        return self._health

    @property
    def analyzer(self) -> DeviationAnalyzer:
        if self._analyzer is None:
            raise RuntimeError("Monitor is not started")
        return self._analyzer

    @property
    def breakers(self) -> CircuitBreakerManager:
        if self._breakers is None:
            raise RuntimeError("Monitor is not started")
        return self._breakers

    def active_syncs(self) -> int:
        """Number of sync managers currently polling."""
        return sum(1 for m in self._sync_managers.values() if m.is_running)

    async def start(self) -> None:
        """Start the monitor.

        Initializes all components and starts every enabled sync.

        Raises:
            RuntimeError: If the monitor is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != MonitorState.STOPPED:
            raise RuntimeError(f"Cannot start monitor in state {self._state}")

        self._state = MonitorState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting oracle monitor...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = self._clock.now()
            self._state = MonitorState.RUNNING
            logger.info(
                "Oracle monitor started: %d/%d syncs running, %d rules",
                self._stats.instances_started,
                self._stats.instances_configured,
                self._stats.rules_loaded,
            )
        except Exception as e:
            self._state = MonitorState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start oracle monitor: %s", e)
            await self._stop_background_services()
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the monitor gracefully.

        Stops all background services and cleans up resources.
        """
        if self._state == MonitorState.STOPPED:
            return

        self._state = MonitorState.STOPPING
        logger.info("Stopping oracle monitor...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = MonitorState.STOPPED
        logger.info("Oracle monitor stopped")

    async def _initialize_components(self) -> None:
        """Initialize all monitor components."""
        settings = self._settings

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)
        else:
            logger.info("REDIS_URL not set; rate limits are per-process")

        logger.debug("Initializing database manager...")
        self._db_manager = self._injected_db or DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
        )
        await self._db_manager.init_schema_async()

        resilience = settings.resilience
        self._breakers = CircuitBreakerManager(
            CircuitBreakerConfig(
                failure_threshold=resilience.failure_threshold,
                success_threshold=resilience.success_threshold,
                open_timeout_seconds=resilience.open_timeout_seconds,
                soft_decay=resilience.soft_decay,
            ),
            clock=self._clock,
        )
        retry_config = RetryConfig(
            max_retries=resilience.max_retries,
            base_delay_seconds=resilience.base_delay_seconds,
            max_delay_seconds=resilience.max_delay_seconds,
            multiplier=resilience.backoff_multiplier,
        )
        self._rate_limiter = SlidingWindowRateLimiter(
            resilience.rate_limit_max_requests,
            resilience.rate_limit_window_seconds,
            redis=self._redis,
            max_keys=resilience.rate_limit_max_keys,
            clock=self._clock,
        )

        logger.debug("Initializing alerting...")
        self._channels = self._build_alert_channels()
        self._dispatcher = NotificationDispatcher(self._channels)
        self._engine = AlertRuleEngine(
            self._db_manager,
            self._dispatcher,
            formatter=AlertFormatter(),
            redis=self._redis,
            clock=self._clock,
        )
        await self._install_rules()
        self._alert_manager = AlertManager(
            self._engine,
            self._db_manager,
            interval_seconds=settings.alerts.evaluation_interval_seconds,
            lookback_minutes=settings.alerts.lookback_minutes,
            clock=self._clock,
        )

        self._analyzer = DeviationAnalyzer(
            TrendConfig.from_settings(settings.aggregation),
            aggregator=PriceAggregator(AggregationConfig.from_settings(settings.aggregation)),
            db=self._db_manager,
            clock=self._clock,
        )
        self._health = HealthCheckManager(
            self._db_manager,
            streams=self._streams,
            active_syncs=self.active_syncs,
            failure_threshold=settings.health.failure_threshold,
            interval_seconds=settings.health.interval_seconds,
            clock=self._clock,
        )
        self._retention = RetentionJob(
            self._db_manager,
            retention_days=settings.sync.data_retention_days,
            interval_seconds=settings.sync.retention_interval_seconds,
            clock=self._clock,
        )

        logger.debug("Initializing sync managers...")
        reference = CrossProtocolReference(
            self._db_manager,
            max_age_seconds=settings.sync.reference_max_age_seconds,
            clock=self._clock,
        )
        instances = await self._load_instances()
        self._stats.instances_configured = len(instances)
        for instance in instances:
            if not instance.enabled:
                logger.info("Sync instance %s is disabled", instance.instance_id)
                continue
            try:
                client = self._client_factory(
                    instance,
                    breaker_manager=self._breakers,
                    retry_config=retry_config,
                    rate_limiter=self._rate_limiter,
                    clock=self._clock,
                )
            except Exception as e:
                # Misconfigured instances are not retried; the rest still run.
                self._stats.instances_failed += 1
                logger.error("Cannot create client for %s: %s", instance.instance_id, e)
                continue
            self._sync_managers[instance.instance_id] = SyncManager(
                instance,
                client,
                self._db_manager,
                config=SyncConfig.from_settings(settings.sync, interval_seconds=instance.interval_seconds),
                reference=reference,
                clock=self._clock,
            )

        logger.info("All components initialized")

    def _build_alert_channels(self) -> list[AlertChannel]:
        """Build list of enabled alert channels."""
        if self._channels_override is not None:
            return list(self._channels_override)

        channels: list[AlertChannel] = []
        settings = self._settings

        if self._dry_run:
            logger.info("Dry run: alerts are logged only")
            return [LogChannel()]

        if settings.webhook.enabled and settings.webhook.url:
            channels.append(
                WebhookChannel(
                    settings.webhook.url.get_secret_value(),
                    timeout=settings.webhook.timeout_seconds,
                )
            )
            logger.info("Webhook channel enabled")

        if not channels:
            logger.warning("No alert channels configured")
        channels.append(LogChannel())
        return channels

    async def _install_rules(self) -> None:
        assert self._engine is not None
        rules = self._rules_override
        if rules is None and self._settings.monitor.rules_file:
            path = self._settings.monitor.rules_file
            rules = [AlertRule.from_dict(entry) for entry in _load_json_list(path, "rules")]
            logger.info("Loaded %d alert rules from %s", len(rules), path)

        if rules is None:
            stored = await self._engine.list_rules()
            if not stored and self._settings.alerts.install_default_rules:
                rules = default_rules()
                logger.info("Installing %d default alert rules", len(rules))

        for rule in rules or []:
            await self._engine.create_rule(rule)
        self._stats.rules_loaded = len(await self._engine.reload_rules())

    async def _load_instances(self) -> list[SyncInstance]:
        """Configured instances, with health carried over from storage."""
        assert self._db_manager is not None
        async with self._db_manager.get_async_session() as session:
            stored = {dto.instance_id: dto for dto in await SyncInstanceRepository(session).list_all()}

        if self._instances_override is not None:
            instances = list(self._instances_override)
        elif self._settings.monitor.instances_file:
            path = self._settings.monitor.instances_file
            instances = [SyncInstance.from_dict(entry) for entry in _load_json_list(path, "instances")]
            logger.info("Loaded %d sync instances from %s", len(instances), path)
        else:
            instances = [SyncInstance.from_dto(dto) for dto in stored.values()]
            if not instances:
                logger.warning("No sync instances configured")
            return instances

        for instance in instances:
            dto = stored.get(instance.instance_id)
            if dto is not None:
                instance.restore_state(dto)
        return instances

    async def _start_background_services(self) -> None:
        """Start background services."""
        for instance_id, manager in self._sync_managers.items():
            logger.debug("Starting sync %s...", instance_id)
            await manager.start()
            self._stats.instances_started += 1

        if self._alert_manager:
            self._alert_manager.start()
        if self._health:
            self._health.start()
        if self._retention:
            self._retention.start()

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        for instance_id, manager in self._sync_managers.items():
            logger.debug("Stopping sync %s...", instance_id)
            await manager.stop()
            try:
                await manager.client.close()
            except Exception as e:
                logger.warning("Error closing client for %s: %s", instance_id, e)
        self._sync_managers.clear()

        if self._alert_manager:
            await self._alert_manager.stop()
        if self._health:
            await self._health.stop()
        if self._retention:
            await self._retention.stop()

        for channel in self._channels:
            if isinstance(channel, WebhookChannel):
                await channel.aclose()
        await PythClient.close_shared_client()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        # Injected databases belong to the caller.
        if self._db_manager and self._db_manager is not self._injected_db:
            await self._db_manager.dispose_async()
        self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the monitor and run until interrupted.

        Example:
            ```python
            monitor = OracleMonitor()
            try:
                await monitor.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> OracleMonitor:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
