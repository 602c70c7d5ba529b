"""Logging-only channel, used for dry runs and as a fallback."""

from __future__ import annotations

import logging

from oracle_monitor.alerts.formatter import AlertFormatter
from oracle_monitor.alerts.models import AlertPayload, Severity

logger = logging.getLogger(__name__)

_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


class LogChannel:
    name = "log"

    def __init__(self, formatter: AlertFormatter | None = None) -> None:
        self._formatter = formatter or AlertFormatter(verbosity="compact")
        self.sent = 0

    async def send(self, payload: AlertPayload) -> bool:
        logger.log(_LEVELS[payload.severity], "ALERT %s", self._formatter.plain_text(payload))
        self.sent += 1
        return True
