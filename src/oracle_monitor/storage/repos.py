"""Repository pattern implementations for data access.

This module provides data access abstractions for sync instance state,
price observations, price updates, alert rules and alerts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from oracle_monitor.storage.models import (
    AlertModel,
    AlertRuleModel,
    PriceObservationModel,
    PriceUpdateModel,
    SyncInstanceModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


async def _upsert(
    session: AsyncSession,
    model: type[Any],
    values: dict[str, Any],
    *,
    index_elements: Sequence[str],
    update_columns: Iterable[str],
) -> None:
    """INSERT ... ON CONFLICT DO UPDATE for PostgreSQL and SQLite."""
    dialect = session.get_bind().dialect.name
    insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = insert_fn(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    await session.execute(stmt)


# ============================================================================
# Sync instances
# ============================================================================


@dataclass
class SyncInstanceDTO:
    """Data transfer object for sync instance state."""

    instance_id: str
    protocol: str
    chain: str
    rpc_url: str | None = None
    protocol_config: dict[str, Any] = field(default_factory=dict)
    symbols: list[str] = field(default_factory=list)
    enabled: bool = True
    status: str = "idle"
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    last_error: str | None = None
    last_block_number: int | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SyncInstanceModel) -> SyncInstanceDTO:
        return cls(
            instance_id=model.instance_id,
            protocol=model.protocol,
            chain=model.chain,
            rpc_url=model.rpc_url,
            protocol_config=dict(model.protocol_config or {}),
            symbols=list(model.symbols or []),
            enabled=model.enabled,
            status=model.status,
            consecutive_failures=model.consecutive_failures,
            last_success_at=_utc(model.last_success_at),
            last_error=model.last_error,
            last_block_number=model.last_block_number,
            updated_at=_utc(model.updated_at),
        )


class SyncInstanceRepository:
    """Repository for sync instance configuration and state."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, instance_id: str) -> SyncInstanceDTO | None:
        result = await self.session.execute(
            select(SyncInstanceModel).where(SyncInstanceModel.instance_id == instance_id)
        )
        model = result.scalar_one_or_none()
        return SyncInstanceDTO.from_model(model) if model else None

    async def upsert(self, dto: SyncInstanceDTO) -> SyncInstanceDTO:
        """Upsert instance state by instance_id (idempotent under retry)."""
        now = datetime.now(UTC)
        values = {
            "instance_id": dto.instance_id,
            "protocol": dto.protocol,
            "chain": dto.chain,
            "rpc_url": dto.rpc_url,
            "protocol_config": dto.protocol_config,
            "symbols": dto.symbols,
            "enabled": dto.enabled,
            "status": dto.status,
            "consecutive_failures": dto.consecutive_failures,
            "last_success_at": dto.last_success_at,
            "last_error": dto.last_error,
            "last_block_number": dto.last_block_number,
            "updated_at": now,
        }
        await _upsert(
            self.session,
            SyncInstanceModel,
            {**values, "created_at": now},
            index_elements=["instance_id"],
            update_columns=[k for k in values if k != "instance_id"],
        )
        await self.session.flush()
        dto.updated_at = now
        return dto

    async def list_all(self) -> list[SyncInstanceDTO]:
        result = await self.session.execute(
            select(SyncInstanceModel).order_by(SyncInstanceModel.instance_id)
        )
        return [SyncInstanceDTO.from_model(m) for m in result.scalars().all()]

    async def list_unhealthy(
        self,
        *,
        min_failures: int,
        statuses: Sequence[str] = ("error", "stalled"),
    ) -> list[SyncInstanceDTO]:
        """Enabled instances in a failing status with more than ``min_failures``."""
        result = await self.session.execute(
            select(SyncInstanceModel)
            .where(SyncInstanceModel.enabled.is_(True))
            .where(SyncInstanceModel.status.in_(list(statuses)))
            .where(SyncInstanceModel.consecutive_failures > min_failures)
            .order_by(SyncInstanceModel.consecutive_failures.desc())
        )
        return [SyncInstanceDTO.from_model(m) for m in result.scalars().all()]

    async def set_enabled(self, instance_id: str, enabled: bool) -> bool:
        result = await self.session.execute(
            update(SyncInstanceModel)
            .where(SyncInstanceModel.instance_id == instance_id)
            .values(enabled=enabled, updated_at=datetime.now(UTC))
        )
        return (result.rowcount or 0) > 0


# ============================================================================
# Price observations
# ============================================================================


@dataclass
class PriceObservationDTO:
    """Data transfer object for price observations."""

    instance_id: str
    protocol: str
    chain: str
    symbol: str
    price: float
    timestamp: datetime
    confidence: float | None = None
    source_price: float | None = None
    deviation: float | None = None
    latency_ms: int | None = None
    block_number: int | None = None
    published_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: PriceObservationModel) -> PriceObservationDTO:
        return cls(
            id=model.id,
            instance_id=model.instance_id,
            protocol=model.protocol,
            chain=model.chain,
            symbol=model.symbol,
            price=model.price,
            confidence=model.confidence,
            source_price=model.source_price,
            deviation=model.deviation,
            latency_ms=model.latency_ms,
            block_number=model.block_number,
            published_at=_utc(model.published_at),
            timestamp=_utc(model.timestamp) or model.timestamp,
        )


class PriceObservationRepository:
    """Repository for append-only price observations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, dtos: Sequence[PriceObservationDTO]) -> int:
        models = [
            PriceObservationModel(
                instance_id=dto.instance_id,
                protocol=dto.protocol,
                chain=dto.chain,
                symbol=dto.symbol,
                price=dto.price,
                confidence=dto.confidence,
                source_price=dto.source_price,
                deviation=dto.deviation,
                latency_ms=dto.latency_ms,
                block_number=dto.block_number,
                published_at=dto.published_at,
                timestamp=dto.timestamp,
            )
            for dto in dtos
        ]
        self.session.add_all(models)
        await self.session.flush()
        for dto, model in zip(dtos, models, strict=True):
            dto.id = model.id
        return len(models)

    async def list_for_symbol(
        self,
        symbol: str,
        *,
        since: datetime,
        until: datetime | None = None,
        protocol: str | None = None,
        chain: str | None = None,
    ) -> list[PriceObservationDTO]:
        """Observations for one symbol ordered oldest first."""
        stmt = (
            select(PriceObservationModel)
            .where(PriceObservationModel.symbol == symbol)
            .where(PriceObservationModel.timestamp >= since)
        )
        if until is not None:
            stmt = stmt.where(PriceObservationModel.timestamp <= until)
        if protocol is not None:
            stmt = stmt.where(PriceObservationModel.protocol == protocol)
        if chain is not None:
            stmt = stmt.where(PriceObservationModel.chain == chain)
        stmt = stmt.order_by(PriceObservationModel.timestamp.asc(), PriceObservationModel.id.asc())
        result = await self.session.execute(stmt)
        return [PriceObservationDTO.from_model(m) for m in result.scalars().all()]

    async def latest_by_protocol(
        self,
        symbol: str,
        *,
        since: datetime,
        chain: str | None = None,
        exclude_protocol: str | None = None,
    ) -> list[PriceObservationDTO]:
        """Most recent observation of each protocol for a symbol."""
        stmt = (
            select(PriceObservationModel)
            .where(PriceObservationModel.symbol == symbol)
            .where(PriceObservationModel.timestamp >= since)
        )
        if chain is not None:
            stmt = stmt.where(PriceObservationModel.chain == chain)
        if exclude_protocol is not None:
            stmt = stmt.where(PriceObservationModel.protocol != exclude_protocol)
        stmt = stmt.order_by(PriceObservationModel.timestamp.desc(), PriceObservationModel.id.desc())
        result = await self.session.execute(stmt)

        latest: dict[str, PriceObservationDTO] = {}
        for model in result.scalars().all():
            if model.protocol not in latest:
                latest[model.protocol] = PriceObservationDTO.from_model(model)
        return list(latest.values())

    async def latest_per_symbol(self, *, since: datetime) -> list[PriceObservationDTO]:
        """The newest observation of every symbol seen since ``since``."""
        newest = (
            select(
                PriceObservationModel.symbol.label("symbol"),
                func.max(PriceObservationModel.timestamp).label("ts"),
            )
            .where(PriceObservationModel.timestamp >= since)
            .group_by(PriceObservationModel.symbol)
            .subquery()
        )
        stmt = (
            select(PriceObservationModel)
            .join(
                newest,
                and_(
                    PriceObservationModel.symbol == newest.c.symbol,
                    PriceObservationModel.timestamp == newest.c.ts,
                ),
            )
            .order_by(PriceObservationModel.symbol, PriceObservationModel.id.desc())
        )
        result = await self.session.execute(stmt)

        # Timestamp ties: keep the most recently inserted row.
        by_symbol: dict[str, PriceObservationDTO] = {}
        for model in result.scalars().all():
            by_symbol.setdefault(model.symbol, PriceObservationDTO.from_model(model))
        return list(by_symbol.values())

    async def list_symbols(self, *, since: datetime) -> list[str]:
        result = await self.session.execute(
            select(PriceObservationModel.symbol)
            .where(PriceObservationModel.timestamp >= since)
            .distinct()
            .order_by(PriceObservationModel.symbol)
        )
        return [row[0] for row in result.all()]

    async def delete_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(PriceObservationModel).where(PriceObservationModel.timestamp < cutoff)
        )
        return result.rowcount or 0


# ============================================================================
# Price updates
# ============================================================================


@dataclass
class PriceUpdateDTO:
    """Data transfer object for significant price moves."""

    instance_id: str
    protocol: str
    chain: str
    symbol: str
    previous_price: float
    price: float
    change_ratio: float
    timestamp: datetime

    @classmethod
    def from_model(cls, model: PriceUpdateModel) -> PriceUpdateDTO:
        return cls(
            instance_id=model.instance_id,
            protocol=model.protocol,
            chain=model.chain,
            symbol=model.symbol,
            previous_price=model.previous_price,
            price=model.price,
            change_ratio=model.change_ratio,
            timestamp=_utc(model.timestamp) or model.timestamp,
        )


class PriceUpdateRepository:
    """Repository for recorded price moves."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, dtos: Sequence[PriceUpdateDTO]) -> int:
        self.session.add_all(
            [
                PriceUpdateModel(
                    instance_id=dto.instance_id,
                    protocol=dto.protocol,
                    chain=dto.chain,
                    symbol=dto.symbol,
                    previous_price=dto.previous_price,
                    price=dto.price,
                    change_ratio=dto.change_ratio,
                    timestamp=dto.timestamp,
                )
                for dto in dtos
            ]
        )
        await self.session.flush()
        return len(dtos)

    async def list_for_symbol(self, symbol: str, *, since: datetime) -> list[PriceUpdateDTO]:
        result = await self.session.execute(
            select(PriceUpdateModel)
            .where(PriceUpdateModel.symbol == symbol)
            .where(PriceUpdateModel.timestamp >= since)
            .order_by(PriceUpdateModel.timestamp.asc())
        )
        return [PriceUpdateDTO.from_model(m) for m in result.scalars().all()]

    async def delete_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(PriceUpdateModel).where(PriceUpdateModel.timestamp < cutoff)
        )
        return result.rowcount or 0


# ============================================================================
# Alert rules
# ============================================================================


@dataclass
class AlertRuleDTO:
    """Data transfer object for alert rules."""

    id: str
    name: str
    event: str
    severity: str
    enabled: bool = True
    protocols: list[str] = field(default_factory=list)
    chains: list[str] = field(default_factory=list)
    symbols: list[str] = field(default_factory=list)
    instances: list[str] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)
    channels: list[str] = field(default_factory=list)
    cooldown_minutes: int = 0
    max_notifications_per_hour: int | None = None
    owner: str | None = None

    @classmethod
    def from_model(cls, model: AlertRuleModel) -> AlertRuleDTO:
        return cls(
            id=model.id,
            name=model.name,
            event=model.event,
            severity=model.severity,
            enabled=model.enabled,
            protocols=list(model.protocols or []),
            chains=list(model.chains or []),
            symbols=list(model.symbols or []),
            instances=list(model.instances or []),
            params=dict(model.params or {}),
            channels=list(model.channels or []),
            cooldown_minutes=model.cooldown_minutes,
            max_notifications_per_hour=model.max_notifications_per_hour,
            owner=model.owner,
        )


class AlertRuleRepository:
    """Repository for alert rules."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, rule_id: str) -> AlertRuleDTO | None:
        result = await self.session.execute(select(AlertRuleModel).where(AlertRuleModel.id == rule_id))
        model = result.scalar_one_or_none()
        return AlertRuleDTO.from_model(model) if model else None

    async def upsert(self, dto: AlertRuleDTO) -> AlertRuleDTO:
        now = datetime.now(UTC)
        values = {
            "id": dto.id,
            "name": dto.name,
            "event": dto.event,
            "severity": dto.severity,
            "enabled": dto.enabled,
            "protocols": dto.protocols,
            "chains": dto.chains,
            "symbols": dto.symbols,
            "instances": dto.instances,
            "params": dto.params,
            "channels": dto.channels,
            "cooldown_minutes": dto.cooldown_minutes,
            "max_notifications_per_hour": dto.max_notifications_per_hour,
            "owner": dto.owner,
            "updated_at": now,
        }
        await _upsert(
            self.session,
            AlertRuleModel,
            {**values, "created_at": now},
            index_elements=["id"],
            update_columns=[k for k in values if k != "id"],
        )
        await self.session.flush()
        return dto

    async def list_all(self) -> list[AlertRuleDTO]:
        result = await self.session.execute(select(AlertRuleModel).order_by(AlertRuleModel.id))
        return [AlertRuleDTO.from_model(m) for m in result.scalars().all()]

    async def list_enabled(self) -> list[AlertRuleDTO]:
        result = await self.session.execute(
            select(AlertRuleModel).where(AlertRuleModel.enabled.is_(True)).order_by(AlertRuleModel.id)
        )
        return [AlertRuleDTO.from_model(m) for m in result.scalars().all()]

    async def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        result = await self.session.execute(
            update(AlertRuleModel)
            .where(AlertRuleModel.id == rule_id)
            .values(enabled=enabled, updated_at=datetime.now(UTC))
        )
        return (result.rowcount or 0) > 0


# ============================================================================
# Alerts
# ============================================================================


@dataclass
class AlertDTO:
    """Data transfer object for deduplicated alerts."""

    fingerprint: str
    rule_id: str
    event: str
    severity: str
    title: str
    message: str
    first_seen: datetime
    last_seen: datetime
    protocol: str | None = None
    chain: str | None = None
    symbol: str | None = None
    instance_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    status: str = "active"
    occurrences: int = 1
    last_notified_at: datetime | None = None
    notification_count: int = 0
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AlertModel) -> AlertDTO:
        return cls(
            fingerprint=model.fingerprint,
            rule_id=model.rule_id,
            event=model.event,
            severity=model.severity,
            title=model.title,
            message=model.message,
            protocol=model.protocol,
            chain=model.chain,
            symbol=model.symbol,
            instance_id=model.instance_id,
            context=dict(model.context or {}),
            status=model.status,
            occurrences=model.occurrences,
            first_seen=_utc(model.first_seen) or model.first_seen,
            last_seen=_utc(model.last_seen) or model.last_seen,
            last_notified_at=_utc(model.last_notified_at),
            notification_count=model.notification_count,
            acknowledged_at=_utc(model.acknowledged_at),
            resolved_at=_utc(model.resolved_at),
        )


class AlertRepository:
    """Repository for alerts, upserted by fingerprint."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, fingerprint: str) -> AlertDTO | None:
        result = await self.session.execute(
            select(AlertModel).where(AlertModel.fingerprint == fingerprint)
        )
        model = result.scalar_one_or_none()
        return AlertDTO.from_model(model) if model else None

    async def upsert(self, dto: AlertDTO) -> AlertDTO:
        values = {
            "fingerprint": dto.fingerprint,
            "rule_id": dto.rule_id,
            "event": dto.event,
            "severity": dto.severity,
            "title": dto.title,
            "message": dto.message,
            "protocol": dto.protocol,
            "chain": dto.chain,
            "symbol": dto.symbol,
            "instance_id": dto.instance_id,
            "context": dto.context,
            "status": dto.status,
            "occurrences": dto.occurrences,
            "first_seen": dto.first_seen,
            "last_seen": dto.last_seen,
            "last_notified_at": dto.last_notified_at,
            "notification_count": dto.notification_count,
            "acknowledged_at": dto.acknowledged_at,
            "resolved_at": dto.resolved_at,
        }
        await _upsert(
            self.session,
            AlertModel,
            values,
            index_elements=["fingerprint"],
            update_columns=[k for k in values if k not in ("fingerprint", "first_seen")],
        )
        await self.session.flush()
        return dto

    async def mark_notified(self, fingerprint: str, *, at: datetime) -> None:
        await self.session.execute(
            update(AlertModel)
            .where(AlertModel.fingerprint == fingerprint)
            .values(
                last_notified_at=at,
                notification_count=AlertModel.notification_count + 1,
            )
        )

    async def set_status(self, fingerprint: str, status: str, *, at: datetime) -> AlertDTO | None:
        values: dict[str, Any] = {"status": status}
        if status == "acknowledged":
            values["acknowledged_at"] = at
        elif status == "resolved":
            values["resolved_at"] = at
        result = await self.session.execute(
            update(AlertModel).where(AlertModel.fingerprint == fingerprint).values(**values)
        )
        if not result.rowcount:
            return None
        return await self.get(fingerprint)

    async def list_by_status(self, statuses: Sequence[str], *, limit: int = 500) -> list[AlertDTO]:
        result = await self.session.execute(
            select(AlertModel)
            .where(AlertModel.status.in_(list(statuses)))
            .order_by(AlertModel.last_seen.desc())
            .limit(limit)
        )
        return [AlertDTO.from_model(m) for m in result.scalars().all()]

    async def delete(self, fingerprint: str) -> bool:
        result = await self.session.execute(
            delete(AlertModel).where(AlertModel.fingerprint == fingerprint)
        )
        await self.session.flush()
        return bool(result.rowcount)
