"""Shared fixtures for alerting tests."""

import pytest

from oracle_monitor.alerts import AlertPayload, AlertRuleEngine, NotificationDispatcher


class RecordingChannel:
    """Channel that keeps every payload it is asked to send."""

    def __init__(self, name: str = "recording", *, succeed: bool = True) -> None:
        self.name = name
        self.succeed = succeed
        self.payloads: list[AlertPayload] = []

    async def send(self, payload: AlertPayload) -> bool:
        self.payloads.append(payload)
        return self.succeed


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
async def engine(db, clock, channel):
    engine = AlertRuleEngine(db, NotificationDispatcher([channel]), clock=clock)
    yield engine
    await engine.drain(timeout=1.0)
