"""Storage layer - Database schemas and repositories."""

from oracle_monitor.storage.database import DatabaseManager, create_async_db_engine
from oracle_monitor.storage.models import (
    AlertModel,
    AlertRuleModel,
    Base,
    PriceObservationModel,
    PriceUpdateModel,
    SyncInstanceModel,
)
from oracle_monitor.storage.repos import (
    AlertDTO,
    AlertRepository,
    AlertRuleDTO,
    AlertRuleRepository,
    PriceObservationDTO,
    PriceObservationRepository,
    PriceUpdateDTO,
    PriceUpdateRepository,
    SyncInstanceDTO,
    SyncInstanceRepository,
)

__all__ = [
    "AlertDTO",
    "AlertModel",
    "AlertRepository",
    "AlertRuleDTO",
    "AlertRuleModel",
    "AlertRuleRepository",
    "Base",
    "DatabaseManager",
    "PriceObservationDTO",
    "PriceObservationModel",
    "PriceObservationRepository",
    "PriceUpdateDTO",
    "PriceUpdateModel",
    "PriceUpdateRepository",
    "SyncInstanceDTO",
    "SyncInstanceModel",
    "SyncInstanceRepository",
    "create_async_db_engine",
]
