"""Data models for alert rules, contexts and notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from oracle_monitor.storage.repos import AlertDTO, AlertRuleDTO


class AlertError(Exception):
    """Base exception for alerting errors."""


class InvalidRuleError(AlertError):
    """Raised when a rule has an unknown event or invalid parameters."""


class AlertNotFoundError(AlertError):
    """Raised when a lifecycle action targets an unknown fingerprint."""


class AlertEvent(str, Enum):
    PRICE_DEVIATION = "price_deviation"
    PRICE_THRESHOLD = "price_threshold"
    STALE_DATA = "stale_data"
    SYNC_FAILURE = "sync_failure"
    PROTOCOL_DOWN = "protocol_down"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    SILENCED = "silenced"


@dataclass
class AlertRule:
    """Operator-configured alert rule.

    Empty filter lists match everything. ``params`` carries the event's
    condition parameters, e.g. ``{"threshold": 0.01}`` for
    ``price_deviation``.
    """

    id: str
    name: str
    event: AlertEvent
    severity: Severity = Severity.WARNING
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
    def from_dict(cls, data: dict[str, Any]) -> AlertRule:
        """Build a rule from a JSON config entry.

        Raises:
            InvalidRuleError: Unknown event or severity.
        """
        try:
            event = AlertEvent(data["event"])
            severity = Severity(data.get("severity", Severity.WARNING.value))
        except (KeyError, ValueError) as e:
            raise InvalidRuleError(f"Invalid rule {data.get('id')!r}: {e}") from e
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            event=event,
            severity=severity,
            enabled=bool(data.get("enabled", True)),
            protocols=list(data.get("protocols", [])),
            chains=list(data.get("chains", [])),
            symbols=list(data.get("symbols", [])),
            instances=list(data.get("instances", [])),
            params=dict(data.get("params", {})),
            channels=list(data.get("channels", [])),
            cooldown_minutes=int(data.get("cooldown_minutes", 0)),
            max_notifications_per_hour=data.get("max_notifications_per_hour"),
            owner=data.get("owner"),
        )

    @classmethod
    def from_dto(cls, dto: AlertRuleDTO) -> AlertRule:
        return cls(
            id=dto.id,
            name=dto.name,
            event=AlertEvent(dto.event),
            severity=Severity(dto.severity),
            enabled=dto.enabled,
            protocols=list(dto.protocols),
            chains=list(dto.chains),
            symbols=list(dto.symbols),
            instances=list(dto.instances),
            params=dict(dto.params),
            channels=list(dto.channels),
            cooldown_minutes=dto.cooldown_minutes,
            max_notifications_per_hour=dto.max_notifications_per_hour,
            owner=dto.owner,
        )

    def to_dto(self) -> AlertRuleDTO:
        return AlertRuleDTO(
            id=self.id,
            name=self.name,
            event=self.event.value,
            severity=self.severity.value,
            enabled=self.enabled,
            protocols=list(self.protocols),
            chains=list(self.chains),
            symbols=list(self.symbols),
            instances=list(self.instances),
            params=dict(self.params),
            channels=list(self.channels),
            cooldown_minutes=self.cooldown_minutes,
            max_notifications_per_hour=self.max_notifications_per_hour,
            owner=self.owner,
        )


@dataclass(frozen=True)
class EvaluationContext:
    """One observed condition offered to the rule engine."""

    event: AlertEvent
    timestamp: datetime
    protocol: str | None = None
    chain: str | None = None
    symbol: str | None = None
    instance_id: str | None = None
    price: float | None = None
    deviation: float | None = None
    age_seconds: float | None = None
    consecutive_failures: int | None = None
    healthy_instances: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AlertPayload:
    """What a notification channel delivers."""

    title: str
    message: str
    severity: Severity
    fingerprint: str
    rule_id: str | None = None
    event: str | None = None
    protocol: str | None = None
    chain: str | None = None
    symbol: str | None = None
    occurrences: int = 1
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "fingerprint": self.fingerprint,
            "rule_id": self.rule_id,
            "event": self.event,
            "protocol": self.protocol,
            "chain": self.chain,
            "symbol": self.symbol,
            "occurrences": self.occurrences,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass
class AlertOutcome:
    """Result of one rule firing against one context."""

    rule: AlertRule
    alert: AlertDTO
    is_new: bool
    notify: bool
    suppressed_reason: str | None = None
