"""Tests for the alert rule engine."""

import asyncio
from datetime import timedelta

import pytest

from oracle_monitor.alerts import (
    AlertEvent,
    AlertNotFoundError,
    AlertPayload,
    AlertRule,
    AlertRuleEngine,
    EvaluationContext,
    InvalidRuleError,
    NotificationDispatcher,
    Severity,
    compute_fingerprint,
)
from oracle_monitor.storage.repos import AlertRuleDTO, AlertRuleRepository


def _deviation_rule(**kwargs) -> AlertRule:
    values = {
        "id": "btc-deviation",
        "name": "BTC deviation",
        "event": AlertEvent.PRICE_DEVIATION,
        "severity": Severity.WARNING,
        "params": {"threshold": 0.01},
        "cooldown_minutes": 5,
    }
    values.update(kwargs)
    return AlertRule(**values)


def _context(clock, deviation: float = 0.015, **kwargs) -> EvaluationContext:
    values = {
        "protocol": "pyth",
        "chain": "ethereum",
        "symbol": "BTC/USD",
        "instance_id": "pyth-ethereum",
        "price": 50750.0,
        "deviation": deviation,
    }
    values.update(kwargs)
    return EvaluationContext(event=AlertEvent.PRICE_DEVIATION, timestamp=clock.now(), **values)


async def _evaluate(engine, context):
    """Evaluate and wait for the deliveries it scheduled."""
    outcomes = await engine.evaluate(context)
    await engine.drain()
    return outcomes


class BlockingChannel:
    """Channel whose sends wait until released."""

    name = "blocking"

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.payloads: list[AlertPayload] = []

    async def send(self, payload: AlertPayload) -> bool:
        await self.release.wait()
        self.payloads.append(payload)
        return True


class TestFingerprint:
    """Tests for compute_fingerprint."""

    def test_stable_and_subject_specific(self, clock) -> None:
        """Same rule and subject give the same fingerprint; other subjects differ."""
        rule = _deviation_rule()
        first = compute_fingerprint(rule, _context(clock))
        assert first == compute_fingerprint(rule, _context(clock, deviation=0.5))
        assert first != compute_fingerprint(rule, _context(clock, symbol="ETH/USD"))
        assert len(first) == 32


class TestRules:
    """Tests for rule management."""

    @pytest.mark.asyncio
    async def test_create_rule_validates(self, engine) -> None:
        """Invalid rules are never stored."""
        with pytest.raises(InvalidRuleError):
            await engine.create_rule(_deviation_rule(params={}))
        assert await engine.list_rules() == []

    @pytest.mark.asyncio
    async def test_disabled_rule_stops_firing(self, engine, clock) -> None:
        """Disabling a rule takes effect on the next evaluation."""
        await engine.create_rule(_deviation_rule())
        assert len(await _evaluate(engine, _context(clock))) == 1

        assert await engine.set_rule_enabled("btc-deviation", False) is True
        assert await _evaluate(engine, _context(clock)) == []

    @pytest.mark.asyncio
    async def test_reload_skips_invalid_stored_rules(self, engine, db) -> None:
        """A broken row in storage does not take the engine down."""
        async with db.get_async_session() as session:
            await AlertRuleRepository(session).upsert(
                AlertRuleDTO(id="broken", name="Broken", event="price_deviation", severity="warning")
            )
        await engine.create_rule(_deviation_rule())

        rules = await engine.reload_rules()

        assert [r.id for r in rules] == ["btc-deviation"]


class TestEvaluate:
    """Tests for evaluation, dedup and notification gating."""

    @pytest.mark.asyncio
    async def test_first_firing_creates_and_notifies(self, engine, clock, channel) -> None:
        """A new detection creates one alert and one notification."""
        await engine.create_rule(_deviation_rule())

        outcomes = await _evaluate(engine, _context(clock))

        assert len(outcomes) == 1
        outcome = outcomes[0]
        assert outcome.is_new
        assert outcome.notify
        assert len(channel.payloads) == 1
        payload = channel.payloads[0]
        assert payload.title == "[WARNING] BTC/USD - BTC deviation"
        assert payload.message == "BTC/USD on pyth/ethereum deviates 1.50% from reference (threshold 1.00%)"

        stored = await engine.get_alert(outcome.alert.fingerprint)
        assert stored.status == "active"
        assert stored.occurrences == 1
        assert stored.notification_count == 1
        assert stored.last_notified_at == clock.now()
        assert stored.context["deviation"] == 0.015

    @pytest.mark.asyncio
    async def test_below_threshold_does_nothing(self, engine, clock, channel) -> None:
        await engine.create_rule(_deviation_rule())
        assert await _evaluate(engine, _context(clock, deviation=0.005)) == []
        assert channel.payloads == []

    @pytest.mark.asyncio
    async def test_repeat_within_cooldown_deduplicates(self, engine, clock, channel) -> None:
        """Repeats bump occurrences but stay quiet during the cooldown."""
        await engine.create_rule(_deviation_rule(cooldown_minutes=5))
        first = (await _evaluate(engine, _context(clock)))[0]

        clock.advance(60)
        second = (await _evaluate(engine, _context(clock, deviation=0.02)))[0]

        assert not second.is_new
        assert not second.notify
        assert second.suppressed_reason == "cooldown"
        assert second.alert.fingerprint == first.alert.fingerprint
        assert len(channel.payloads) == 1

        stored = await engine.get_alert(first.alert.fingerprint)
        assert stored.occurrences == 2
        assert stored.first_seen == clock.now() - timedelta(seconds=60)
        assert stored.last_seen == clock.now()
        assert stored.context["deviation"] == 0.02

    @pytest.mark.asyncio
    async def test_notifies_again_after_cooldown(self, engine, clock, channel) -> None:
        await engine.create_rule(_deviation_rule(cooldown_minutes=5))
        await _evaluate(engine, _context(clock))

        clock.advance(5 * 60)
        outcome = (await _evaluate(engine, _context(clock)))[0]

        assert outcome.notify
        assert len(channel.payloads) == 2
        assert channel.payloads[1].occurrences == 2

    @pytest.mark.asyncio
    async def test_hourly_cap(self, engine, clock, channel) -> None:
        """No more than max_notifications_per_hour notifications per rule."""
        await engine.create_rule(_deviation_rule(cooldown_minutes=0, max_notifications_per_hour=2))

        reasons = []
        for _ in range(3):
            outcome = (await _evaluate(engine, _context(clock)))[0]
            reasons.append(outcome.suppressed_reason)
            clock.advance(60)

        assert reasons == [None, None, "hourly cap"]
        assert len(channel.payloads) == 2

        clock.advance(3600)
        assert (await _evaluate(engine, _context(clock)))[0].notify

    @pytest.mark.asyncio
    async def test_failed_delivery_is_not_marked_notified(self, engine, clock, channel) -> None:
        """A failed dispatch leaves the cooldown unarmed."""
        channel.succeed = False
        await engine.create_rule(_deviation_rule())

        outcome = (await _evaluate(engine, _context(clock)))[0]

        stored = await engine.get_alert(outcome.alert.fingerprint)
        assert stored.last_notified_at is None
        assert stored.notification_count == 0

        channel.succeed = True
        clock.advance(60)
        assert (await _evaluate(engine, _context(clock)))[0].notify

    @pytest.mark.asyncio
    async def test_failed_delivery_releases_hourly_slot(self, engine, clock, channel) -> None:
        """Only delivered notifications count against the hourly cap."""
        channel.succeed = False
        await engine.create_rule(_deviation_rule(cooldown_minutes=0, max_notifications_per_hour=1))
        await _evaluate(engine, _context(clock))

        channel.succeed = True
        clock.advance(60)
        assert (await _evaluate(engine, _context(clock)))[0].notify

        clock.advance(60)
        assert (await _evaluate(engine, _context(clock)))[0].suppressed_reason == "hourly cap"
        assert len(channel.payloads) == 2
        assert (engine.stats.scheduled, engine.stats.delivered, engine.stats.failed) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_slow_channel_does_not_block_batch(self, db, clock) -> None:
        """Alerts for later contexts are stored while earlier deliveries hang."""
        blocking = BlockingChannel()
        engine = AlertRuleEngine(db, NotificationDispatcher([blocking]), clock=clock)
        await engine.create_rule(_deviation_rule())

        outcomes = await asyncio.wait_for(
            engine.evaluate_batch([_context(clock), _context(clock, symbol="ETH/USD")]),
            timeout=1.0,
        )

        assert [o.alert.symbol for o in outcomes] == ["BTC/USD", "ETH/USD"]
        assert engine.pending_deliveries == 2
        assert {a.symbol for a in await engine.list_active()} == {"BTC/USD", "ETH/USD"}
        assert blocking.payloads == []

        repeat = (await engine.evaluate(_context(clock)))[0]
        assert repeat.suppressed_reason == "delivery pending"
        assert repeat.alert.occurrences == 2

        blocking.release.set()
        await engine.drain()

        assert engine.pending_deliveries == 0
        assert len(blocking.payloads) == 2
        for outcome in outcomes:
            stored = await engine.get_alert(outcome.alert.fingerprint)
            assert stored.notification_count == 1

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels_pending_delivery(self, db, clock) -> None:
        """Deliveries cut off by drain() are not marked notified and free their slot."""
        blocking = BlockingChannel()
        engine = AlertRuleEngine(db, NotificationDispatcher([blocking]), clock=clock)
        await engine.create_rule(_deviation_rule(cooldown_minutes=0, max_notifications_per_hour=1))

        outcome = (await engine.evaluate(_context(clock)))[0]
        assert outcome.notify
        await engine.drain(timeout=0.01)

        assert engine.pending_deliveries == 0
        assert engine.stats.failed == 1
        stored = await engine.get_alert(outcome.alert.fingerprint)
        assert stored.notification_count == 0
        assert stored.last_notified_at is None

        blocking.release.set()
        assert (await _evaluate(engine, _context(clock)))[0].notify
        assert len(blocking.payloads) == 1

    @pytest.mark.asyncio
    async def test_multiple_rules_fire_independently(self, engine, clock, channel) -> None:
        """Each fired rule gets its own alert."""
        await engine.create_rule(_deviation_rule())
        await engine.create_rule(
            _deviation_rule(id="btc-critical", name="BTC critical", severity=Severity.CRITICAL, params={"threshold": 0.05})
        )

        outcomes = await _evaluate(engine, _context(clock, deviation=0.06))

        assert {o.rule.id for o in outcomes} == {"btc-deviation", "btc-critical"}
        assert len({o.alert.fingerprint for o in outcomes}) == 2
        assert len(channel.payloads) == 2

    @pytest.mark.asyncio
    async def test_evaluate_batch_isolates_failures(self, engine, clock, monkeypatch) -> None:
        """One failing context does not stop the rest."""
        await engine.create_rule(_deviation_rule())
        original = engine.evaluate
        calls = 0

        async def flaky(context):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("db hiccup")
            return await original(context)

        monkeypatch.setattr(engine, "evaluate", flaky)
        outcomes = await engine.evaluate_batch([_context(clock), _context(clock, symbol="ETH/USD")])

        assert [o.alert.symbol for o in outcomes] == ["ETH/USD"]


class TestLifecycle:
    """Tests for acknowledge, resolve and silence."""

    @pytest.mark.asyncio
    async def test_silenced_alert_stays_quiet(self, engine, clock, channel) -> None:
        """Silenced alerts keep counting occurrences without notifying."""
        await engine.create_rule(_deviation_rule(cooldown_minutes=0))
        fingerprint = (await _evaluate(engine, _context(clock)))[0].alert.fingerprint

        silenced = await engine.silence(fingerprint)
        assert silenced.status == "silenced"

        outcome = (await _evaluate(engine, _context(clock)))[0]
        assert outcome.suppressed_reason == "silenced"
        assert outcome.alert.occurrences == 2
        assert len(channel.payloads) == 1

    @pytest.mark.asyncio
    async def test_acknowledged_alert_is_not_renotified(self, engine, clock, channel) -> None:
        await engine.create_rule(_deviation_rule(cooldown_minutes=0))
        fingerprint = (await _evaluate(engine, _context(clock)))[0].alert.fingerprint

        acknowledged = await engine.acknowledge(fingerprint)
        assert acknowledged.acknowledged_at == clock.now()

        outcome = (await _evaluate(engine, _context(clock)))[0]
        assert outcome.suppressed_reason == "acknowledged"
        assert len(channel.payloads) == 1

    @pytest.mark.asyncio
    async def test_resolved_alert_refires_as_new_episode(self, engine, clock, channel) -> None:
        """After resolution the next detection starts a fresh alert."""
        await engine.create_rule(_deviation_rule(cooldown_minutes=30))
        fingerprint = (await _evaluate(engine, _context(clock)))[0].alert.fingerprint
        await engine.resolve(fingerprint)
        assert [a.fingerprint for a in await engine.list_active()] == []

        clock.advance(60)
        outcome = (await _evaluate(engine, _context(clock)))[0]

        assert outcome.is_new
        assert outcome.notify
        stored = await engine.get_alert(fingerprint)
        assert stored.status == "active"
        assert stored.occurrences == 1
        assert stored.first_seen == clock.now()
        assert len(channel.payloads) == 2

    @pytest.mark.asyncio
    async def test_unknown_fingerprint(self, engine) -> None:
        with pytest.raises(AlertNotFoundError):
            await engine.acknowledge("does-not-exist")

    @pytest.mark.asyncio
    async def test_list_active(self, engine, clock) -> None:
        """Active, acknowledged and silenced alerts are listed; resolved are not."""
        await engine.create_rule(_deviation_rule())
        fingerprints = []
        for symbol in ("BTC/USD", "ETH/USD", "LINK/USD"):
            outcome = (await _evaluate(engine, _context(clock, symbol=symbol)))[0]
            fingerprints.append(outcome.alert.fingerprint)
            clock.advance(1)

        await engine.acknowledge(fingerprints[0])
        await engine.resolve(fingerprints[1])

        active = await engine.list_active()
        assert {a.fingerprint for a in active} == {fingerprints[0], fingerprints[2]}
