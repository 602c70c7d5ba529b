"""Fan-out of alert payloads to notification channels.

Channel failures are reported per channel and never raised: delivery
must not interfere with alert persistence or with other channels.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from oracle_monitor.alerts.models import AlertPayload

logger = logging.getLogger(__name__)


@runtime_checkable
class AlertChannel(Protocol):
    """A notification destination."""

    name: str

    async def send(self, payload: AlertPayload) -> bool: ...


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    error: str | None = None


@dataclass
class DispatchResult:
    """Outcome of one dispatch across channels."""

    channel_results: list[ChannelResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when at least one channel delivered."""
        return any(r.success for r in self.channel_results)

    @property
    def all_succeeded(self) -> bool:
        return bool(self.channel_results) and all(r.success for r in self.channel_results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.channel_results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.channel_results if not r.success)


class NotificationDispatcher:
    """Delivers payloads to named channels concurrently.

    A rule's channel list selects channels by name; an empty list means
    every registered channel. Unknown names are reported as failures.
    """

    def __init__(self, channels: Iterable[AlertChannel] = ()) -> None:
        self._channels: dict[str, AlertChannel] = {}
        for channel in channels:
            self.register(channel)

    def register(self, channel: AlertChannel) -> None:
        self._channels[channel.name] = channel

    @property
    def channel_names(self) -> list[str]:
        return sorted(self._channels)

    async def notify_alert(self, payload: AlertPayload, channels: Sequence[str] = ()) -> DispatchResult:
        names = list(channels) or self.channel_names
        if not names:
            logger.warning("No notification channels for alert %s", payload.fingerprint)
            return DispatchResult()

        results = await asyncio.gather(*(self._send(name, payload) for name in names))
        result = DispatchResult(channel_results=list(results))

        if result.all_succeeded:
            logger.info("Alert %s delivered to %s", payload.fingerprint, ", ".join(names))
        else:
            logger.warning(
                "Alert %s partially failed: %d/%d channels succeeded",
                payload.fingerprint,
                result.success_count,
                len(result.channel_results),
            )
        return result

    async def _send(self, name: str, payload: AlertPayload) -> ChannelResult:
        channel = self._channels.get(name)
        if channel is None:
            return ChannelResult(channel=name, success=False, error="unknown channel")
        try:
            delivered = await channel.send(payload)
        except Exception as e:
            logger.error("Channel %s failed for alert %s: %s", name, payload.fingerprint, e)
            return ChannelResult(channel=name, success=False, error=str(e))
        return ChannelResult(
            channel=name,
            success=bool(delivered),
            error=None if delivered else "channel reported failure",
        )
