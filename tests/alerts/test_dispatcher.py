"""Tests for notification fan-out and formatting."""

from datetime import UTC, datetime

import pytest

from oracle_monitor.alerts import (
    AlertEvent,
    AlertFormatter,
    AlertPayload,
    AlertRule,
    LogChannel,
    NotificationDispatcher,
    Severity,
)
from oracle_monitor.alerts.formatter import COLOR_CRITICAL, alert_title
from oracle_monitor.storage.repos import AlertDTO

NOW = datetime(2026, 1, 1, tzinfo=UTC)


class ExplodingChannel:
    name = "exploding"

    async def send(self, payload: AlertPayload) -> bool:
        raise ConnectionError("smtp down")


def _payload(**kwargs) -> AlertPayload:
    values = {
        "title": "[CRITICAL] ETH/USD - Price deviation critical",
        "message": "ETH/USD on chainlink/ethereum deviates 6.00% from reference (threshold 5.00%)",
        "severity": Severity.CRITICAL,
        "fingerprint": "abc123",
        "protocol": "chainlink",
        "chain": "ethereum",
        "symbol": "ETH/USD",
    }
    values.update(kwargs)
    return AlertPayload(**values)


class TestNotificationDispatcher:
    """Tests for NotificationDispatcher."""

    @pytest.mark.asyncio
    async def test_empty_selection_means_all_channels(self, channel) -> None:
        """An empty channel list delivers everywhere."""
        log = LogChannel()
        dispatcher = NotificationDispatcher([channel, log])

        result = await dispatcher.notify_alert(_payload())

        assert result.all_succeeded
        assert {r.channel for r in result.channel_results} == {"recording", "log"}
        assert log.sent == 1
        assert len(channel.payloads) == 1

    @pytest.mark.asyncio
    async def test_channel_failure_is_isolated(self, channel) -> None:
        """A raising channel is reported without affecting the others."""
        dispatcher = NotificationDispatcher([channel, ExplodingChannel()])

        result = await dispatcher.notify_alert(_payload())

        assert result.success
        assert not result.all_succeeded
        assert result.failure_count == 1
        failed = next(r for r in result.channel_results if not r.success)
        assert failed.channel == "exploding"
        assert failed.error == "smtp down"

    @pytest.mark.asyncio
    async def test_named_selection_and_unknown_names(self, channel) -> None:
        """Only named channels are used; unknown names fail."""
        dispatcher = NotificationDispatcher([channel, LogChannel()])

        result = await dispatcher.notify_alert(_payload(), ["recording", "pagerduty"])

        assert result.success_count == 1
        assert [r.error for r in result.channel_results if not r.success] == ["unknown channel"]

    @pytest.mark.asyncio
    async def test_no_channels(self) -> None:
        """With nothing registered the dispatch is an empty failure."""
        result = await NotificationDispatcher().notify_alert(_payload())
        assert not result.success
        assert result.channel_results == []


class TestAlertFormatter:
    """Tests for AlertFormatter."""

    def test_title(self) -> None:
        assert alert_title(Severity.INFO, None, "Heartbeat") == "[INFO] monitor - Heartbeat"

    def test_build_payload(self) -> None:
        """Payloads carry the rule and alert identity."""
        rule = AlertRule(
            id="stale-data",
            name="Stale oracle data",
            event=AlertEvent.STALE_DATA,
            params={"max_age_minutes": 5},
        )
        alert = AlertDTO(
            fingerprint="fp",
            rule_id="stale-data",
            event="stale_data",
            severity="warning",
            title="",
            message="LINK/USD on redstone/base last updated 7.5 minutes ago (limit 5 minutes)",
            first_seen=NOW,
            last_seen=NOW,
            occurrences=3,
            protocol="redstone",
            chain="base",
            symbol="LINK/USD",
        )

        payload = AlertFormatter().build_payload(rule, alert)

        assert payload.title == "[WARNING] LINK/USD - Stale oracle data"
        assert payload.occurrences == 3
        assert payload.to_dict()["timestamp"] == NOW.isoformat()

    def test_plain_text_verbosity(self) -> None:
        """Compact text drops the detail lines."""
        payload = _payload(occurrences=4)
        detailed = AlertFormatter().plain_text(payload)
        compact = AlertFormatter(verbosity="compact").plain_text(payload)

        assert "Source: chainlink/ethereum" in detailed
        assert "Occurrences: 4" in detailed
        assert compact == f"{payload.title}\n{payload.message}"

    def test_webhook_body(self) -> None:
        body = AlertFormatter().webhook_body(_payload())
        embed = body["embeds"][0]
        assert embed["color"] == COLOR_CRITICAL
        assert embed["footer"]["text"] == "abc123"
        assert body["alert"]["severity"] == "critical"
