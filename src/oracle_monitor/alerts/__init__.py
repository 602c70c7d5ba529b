"""Alerting - rules, deduplicated alerts and notification channels."""

from oracle_monitor.alerts.channels import LogChannel, WebhookChannel
from oracle_monitor.alerts.dispatcher import (
    AlertChannel,
    ChannelResult,
    DispatchResult,
    NotificationDispatcher,
)
from oracle_monitor.alerts.engine import AlertRuleEngine, compute_fingerprint
from oracle_monitor.alerts.formatter import AlertFormatter, alert_title
from oracle_monitor.alerts.manager import AlertManager, AlertManagerStats
from oracle_monitor.alerts.models import (
    AlertError,
    AlertEvent,
    AlertNotFoundError,
    AlertOutcome,
    AlertPayload,
    AlertRule,
    AlertStatus,
    EvaluationContext,
    InvalidRuleError,
    Severity,
)
from oracle_monitor.alerts.rules import default_rules, validate_rule

__all__ = [
    "AlertChannel",
    "AlertError",
    "AlertEvent",
    "AlertFormatter",
    "AlertManager",
    "AlertManagerStats",
    "AlertNotFoundError",
    "AlertOutcome",
    "AlertPayload",
    "AlertRule",
    "AlertRuleEngine",
    "AlertStatus",
    "ChannelResult",
    "DispatchResult",
    "EvaluationContext",
    "InvalidRuleError",
    "LogChannel",
    "NotificationDispatcher",
    "Severity",
    "WebhookChannel",
    "alert_title",
    "compute_fingerprint",
    "default_rules",
    "validate_rule",
]
