"""Data models for the sync scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from oracle_monitor.storage.repos import SyncInstanceDTO

if TYPE_CHECKING:
    from oracle_monitor.config import SyncSettings


class SyncError(Exception):
    """Base exception for sync errors."""


class InstanceDisabledError(SyncError):
    """Raised when starting a sync for a disabled instance."""


class SyncStatus(str, Enum):
    """Sync instance states.

    ``ERROR`` is idle with a pending backoff; ``STALLED`` means failures
    crossed the stall threshold and only a later success clears it.
    """

    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"
    STALLED = "stalled"


@dataclass
class SyncInstance:
    """An independently polled (protocol, chain) pairing and its state."""

    instance_id: str
    protocol: str
    chain: str
    symbols: list[str] = field(default_factory=list)
    rpc_url: str | None = None
    protocol_config: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    interval_seconds: float | None = None

    status: SyncStatus = SyncStatus.IDLE
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    last_error: str | None = None
    last_block_number: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncInstance:
        """Build an instance from a JSON config entry."""
        protocol = str(data["protocol"]).lower()
        chain = str(data["chain"]).lower()
        return cls(
            instance_id=str(data.get("instance_id") or f"{protocol}-{chain}"),
            protocol=protocol,
            chain=chain,
            symbols=[str(s) for s in data.get("symbols", [])],
            rpc_url=data.get("rpc_url"),
            protocol_config=dict(data.get("protocol_config", {})),
            enabled=bool(data.get("enabled", True)),
            interval_seconds=data.get("interval_seconds"),
        )

    @classmethod
    def from_dto(cls, dto: SyncInstanceDTO) -> SyncInstance:
        return cls(
            instance_id=dto.instance_id,
            protocol=dto.protocol,
            chain=dto.chain,
            symbols=list(dto.symbols),
            rpc_url=dto.rpc_url,
            protocol_config=dict(dto.protocol_config),
            enabled=dto.enabled,
            status=SyncStatus(dto.status),
            consecutive_failures=dto.consecutive_failures,
            last_success_at=dto.last_success_at,
            last_error=dto.last_error,
            last_block_number=dto.last_block_number,
        )

    def to_dto(self) -> SyncInstanceDTO:
        return SyncInstanceDTO(
            instance_id=self.instance_id,
            protocol=self.protocol,
            chain=self.chain,
            rpc_url=self.rpc_url,
            protocol_config=dict(self.protocol_config),
            symbols=list(self.symbols),
            enabled=self.enabled,
            status=self.status.value,
            consecutive_failures=self.consecutive_failures,
            last_success_at=self.last_success_at,
            last_error=self.last_error,
            last_block_number=self.last_block_number,
        )

    def restore_state(self, dto: SyncInstanceDTO) -> None:
        """Carry persisted health over a restart, keeping current config."""
        self.consecutive_failures = dto.consecutive_failures
        self.last_success_at = dto.last_success_at
        self.last_error = dto.last_error
        self.last_block_number = dto.last_block_number
        status = SyncStatus(dto.status)
        # A crash mid-cycle leaves "running" behind.
        self.status = SyncStatus.IDLE if status == SyncStatus.RUNNING else status


@dataclass(frozen=True)
class SyncConfig:
    """Per-manager scheduling parameters."""

    interval_seconds: float = 60.0
    max_concurrency: int = 3
    adapter_timeout_seconds: float = 30.0
    stall_threshold: int = 5
    retry_delay_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    price_change_threshold: float = 0.001
    batch_size: int = 100

    @classmethod
    def from_settings(cls, settings: SyncSettings, *, interval_seconds: float | None = None) -> SyncConfig:
        return cls(
            interval_seconds=interval_seconds or settings.interval_seconds,
            max_concurrency=settings.max_concurrency,
            adapter_timeout_seconds=settings.adapter_timeout_seconds,
            stall_threshold=settings.stall_threshold,
            retry_delay_seconds=settings.retry_delay_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            price_change_threshold=settings.price_change_threshold,
            batch_size=settings.batch_size,
        )


@dataclass
class SyncStats:
    """Statistics for one sync manager."""

    cycles: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    skipped_cycles: int = 0
    backoff_skips: int = 0
    observations_persisted: int = 0
    price_updates_recorded: int = 0
    symbol_misses: int = 0
    last_cycle_at: datetime | None = None
    last_cycle_duration_ms: int | None = None
    last_error: str | None = None


@dataclass
class SyncCycleResult:
    """Outcome of one completed cycle."""

    instance_id: str
    started_at: datetime
    success: bool
    observations_persisted: int = 0
    price_updates_recorded: int = 0
    block_number: int | None = None
    missed_symbols: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0
