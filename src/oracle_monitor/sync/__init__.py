"""Sync scheduler - per-instance polling, reference prices and retention."""

from oracle_monitor.sync.manager import SyncManager, compute_backoff, compute_deviation
from oracle_monitor.sync.models import (
    InstanceDisabledError,
    SyncConfig,
    SyncCycleResult,
    SyncError,
    SyncInstance,
    SyncStats,
    SyncStatus,
)
from oracle_monitor.sync.reference import (
    CrossProtocolReference,
    ReferencePriceSource,
    StaticReference,
)
from oracle_monitor.sync.retention import RetentionJob, RetentionResult

__all__ = [
    "CrossProtocolReference",
    "InstanceDisabledError",
    "ReferencePriceSource",
    "RetentionJob",
    "RetentionResult",
    "StaticReference",
    "SyncConfig",
    "SyncCycleResult",
    "SyncError",
    "SyncInstance",
    "SyncManager",
    "SyncStats",
    "SyncStatus",
    "compute_backoff",
    "compute_deviation",
]
