"""Rule validation, event conditions and the built-in rule set."""

from __future__ import annotations

import logging
import operator
from collections.abc import Callable
from typing import Any

from oracle_monitor.alerts.models import (
    AlertEvent,
    AlertRule,
    EvaluationContext,
    InvalidRuleError,
    Severity,
)

logger = logging.getLogger(__name__)

COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": operator.eq,
}


def _require_number(rule: AlertRule, key: str, *, minimum: float = 0.0, strict: bool = True) -> float:
    value = rule.params.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRuleError(f"Rule {rule.id}: params.{key} must be a number")
    if value < minimum or (strict and value == minimum):
        bound = ">" if strict else ">="
        raise InvalidRuleError(f"Rule {rule.id}: params.{key} must be {bound} {minimum}")
    return float(value)


def validate_rule(rule: AlertRule) -> AlertRule:
    """Check a rule's event, params and limits.

    Raises:
        InvalidRuleError: If the rule cannot be evaluated.
    """
    if not rule.id:
        raise InvalidRuleError("Rule id is required")
    if not isinstance(rule.event, AlertEvent):
        raise InvalidRuleError(f"Rule {rule.id}: unknown event {rule.event!r}")
    if not isinstance(rule.severity, Severity):
        raise InvalidRuleError(f"Rule {rule.id}: unknown severity {rule.severity!r}")
    if rule.cooldown_minutes < 0:
        raise InvalidRuleError(f"Rule {rule.id}: cooldown_minutes must be >= 0")
    if rule.max_notifications_per_hour is not None and rule.max_notifications_per_hour < 1:
        raise InvalidRuleError(f"Rule {rule.id}: max_notifications_per_hour must be >= 1")

    if rule.event == AlertEvent.PRICE_DEVIATION:
        _require_number(rule, "threshold")
    elif rule.event == AlertEvent.PRICE_THRESHOLD:
        if rule.params.get("operator") not in COMPARATORS:
            raise InvalidRuleError(
                f"Rule {rule.id}: params.operator must be one of {', '.join(COMPARATORS)}"
            )
        _require_number(rule, "value", strict=False)
    elif rule.event == AlertEvent.STALE_DATA:
        _require_number(rule, "max_age_minutes")
    elif rule.event == AlertEvent.SYNC_FAILURE:
        _require_number(rule, "consecutive_failures", minimum=1, strict=False)
    elif rule.event == AlertEvent.PROTOCOL_DOWN:
        _require_number(rule, "min_healthy_instances", minimum=1, strict=False)
    return rule


def _matches_filter(values: list[str], value: str | None) -> bool:
    if not values:
        return True
    return value is not None and value in values


def rule_applies(rule: AlertRule, context: EvaluationContext) -> bool:
    """Event and dimension filters only; the condition is checked separately."""
    return (
        rule.enabled
        and rule.event == context.event
        and _matches_filter(rule.protocols, context.protocol)
        and _matches_filter(rule.chains, context.chain)
        and _matches_filter(rule.symbols, context.symbol)
        and _matches_filter(rule.instances, context.instance_id)
    )


def condition_holds(rule: AlertRule, context: EvaluationContext) -> bool:
    params: dict[str, Any] = rule.params
    event = rule.event

    if event == AlertEvent.PRICE_DEVIATION:
        return context.deviation is not None and context.deviation >= float(params["threshold"])
    if event == AlertEvent.PRICE_THRESHOLD:
        if context.price is None:
            return False
        return COMPARATORS[params["operator"]](context.price, float(params["value"]))
    if event == AlertEvent.STALE_DATA:
        return (
            context.age_seconds is not None
            and context.age_seconds > float(params["max_age_minutes"]) * 60
        )
    if event == AlertEvent.SYNC_FAILURE:
        return (
            context.consecutive_failures is not None
            and context.consecutive_failures >= int(params["consecutive_failures"])
        )
    if event == AlertEvent.PROTOCOL_DOWN:
        return (
            context.healthy_instances is not None
            and context.healthy_instances < int(params["min_healthy_instances"])
        )
    return False


def describe(rule: AlertRule, context: EvaluationContext) -> str:
    """Human-readable message for a fired rule."""
    subject = context.symbol or context.instance_id or context.protocol or "monitor"
    where = "/".join(p for p in (context.protocol, context.chain) if p)
    suffix = f" on {where}" if where else ""

    if rule.event == AlertEvent.PRICE_DEVIATION:
        return (
            f"{subject}{suffix} deviates {context.deviation:.2%} from reference "
            f"(threshold {float(rule.params['threshold']):.2%})"
        )
    if rule.event == AlertEvent.PRICE_THRESHOLD:
        return (
            f"{subject}{suffix} price {context.price:,.6g} is "
            f"{rule.params['operator']} {float(rule.params['value']):,.6g}"
        )
    if rule.event == AlertEvent.STALE_DATA:
        return (
            f"{subject}{suffix} last updated {context.age_seconds / 60:.1f} minutes ago "
            f"(limit {rule.params['max_age_minutes']} minutes)"
        )
    if rule.event == AlertEvent.SYNC_FAILURE:
        return (
            f"Sync {subject}{suffix} failed {context.consecutive_failures} times in a row"
        )
    return (
        f"Protocol {context.protocol} has {context.healthy_instances} healthy instances "
        f"(minimum {rule.params['min_healthy_instances']})"
    )


def default_rules() -> list[AlertRule]:
    """Rules installed when no rule file is configured."""
    return [
        AlertRule(
            id="price-deviation-warning",
            name="Price deviation warning",
            event=AlertEvent.PRICE_DEVIATION,
            severity=Severity.WARNING,
            params={"threshold": 0.01},
            cooldown_minutes=5,
        ),
        AlertRule(
            id="price-deviation-critical",
            name="Price deviation critical",
            event=AlertEvent.PRICE_DEVIATION,
            severity=Severity.CRITICAL,
            params={"threshold": 0.05},
            cooldown_minutes=10,
        ),
        AlertRule(
            id="stale-data",
            name="Stale oracle data",
            event=AlertEvent.STALE_DATA,
            severity=Severity.WARNING,
            params={"max_age_minutes": 5},
            cooldown_minutes=15,
        ),
        AlertRule(
            id="sync-failure",
            name="Sync failures",
            event=AlertEvent.SYNC_FAILURE,
            severity=Severity.CRITICAL,
            params={"consecutive_failures": 3},
            cooldown_minutes=15,
        ),
    ]
