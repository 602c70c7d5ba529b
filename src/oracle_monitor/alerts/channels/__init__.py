"""Notification channels."""

from oracle_monitor.alerts.channels.log import LogChannel
from oracle_monitor.alerts.channels.webhook import WebhookChannel

__all__ = ["LogChannel", "WebhookChannel"]
