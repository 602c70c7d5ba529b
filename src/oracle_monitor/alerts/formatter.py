"""Alert message formatting.

Turns a fired rule and its persisted alert into the channel-agnostic
:class:`AlertPayload`, plus the plain-text and webhook renderings of it.
"""

from __future__ import annotations

from typing import Any, Literal

from oracle_monitor.alerts.models import AlertPayload, AlertRule, Severity
from oracle_monitor.storage.repos import AlertDTO

# Webhook embed colors (decimal values)
COLOR_CRITICAL = 15158332  # Red (#E74C3C)
COLOR_WARNING = 15105570  # Orange (#E67E22)
COLOR_INFO = 3447003  # Blue (#3498DB)

SEVERITY_COLORS = {
    Severity.CRITICAL: COLOR_CRITICAL,
    Severity.WARNING: COLOR_WARNING,
    Severity.INFO: COLOR_INFO,
}


def alert_title(severity: Severity, subject: str | None, rule_name: str) -> str:
    """``[SEVERITY] subject - rule name``."""
    return f"[{severity.value.upper()}] {subject or 'monitor'} - {rule_name}"


class AlertFormatter:
    """Formats alerts for delivery.

    ``compact`` drops the location and occurrence lines from text bodies.
    """

    def __init__(self, verbosity: Literal["compact", "detailed"] = "detailed") -> None:
        self.verbosity = verbosity

    def build_payload(self, rule: AlertRule, alert: AlertDTO) -> AlertPayload:
        subject = alert.symbol or alert.instance_id or alert.protocol
        return AlertPayload(
            title=alert_title(rule.severity, subject, rule.name),
            message=alert.message,
            severity=rule.severity,
            fingerprint=alert.fingerprint,
            rule_id=rule.id,
            event=rule.event.value,
            protocol=alert.protocol,
            chain=alert.chain,
            symbol=alert.symbol,
            occurrences=alert.occurrences,
            timestamp=alert.last_seen,
        )

    def plain_text(self, payload: AlertPayload) -> str:
        lines = [payload.title, payload.message]
        if self.verbosity == "detailed":
            where = "/".join(p for p in (payload.protocol, payload.chain) if p)
            if where:
                lines.append(f"Source: {where}")
            if payload.occurrences > 1:
                lines.append(f"Occurrences: {payload.occurrences}")
            lines.append(f"Fingerprint: {payload.fingerprint}")
        return "\n".join(lines)

    def webhook_body(self, payload: AlertPayload) -> dict[str, Any]:
        """JSON body posted by the webhook channel."""
        fields = [
            {"name": "Severity", "value": payload.severity.value.upper(), "inline": True},
        ]
        if payload.protocol:
            fields.append({"name": "Protocol", "value": payload.protocol, "inline": True})
        if payload.chain:
            fields.append({"name": "Chain", "value": payload.chain, "inline": True})
        if payload.occurrences > 1:
            fields.append({"name": "Occurrences", "value": str(payload.occurrences), "inline": True})

        return {
            "alert": payload.to_dict(),
            "embeds": [
                {
                    "title": payload.title,
                    "description": payload.message,
                    "color": SEVERITY_COLORS[payload.severity],
                    "fields": fields,
                    "footer": {"text": payload.fingerprint},
                }
            ],
        }
