"""Alert rule engine.

Matches evaluation contexts against enabled rules, deduplicates repeat
detections into one alert per fingerprint, and decides whether each
firing may notify (cooldown, hourly cap, silence). Notifications are
delivered by background tasks started after the alert transaction has
committed, so a slow channel never holds up evaluation. ``drain()`` waits
for them on shutdown.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import timedelta

from redis.asyncio import Redis

from oracle_monitor.alerts.dispatcher import NotificationDispatcher
from oracle_monitor.alerts.formatter import AlertFormatter, alert_title
from oracle_monitor.alerts.models import (
    AlertNotFoundError,
    AlertOutcome,
    AlertRule,
    AlertStatus,
    EvaluationContext,
)
from oracle_monitor.alerts.rules import condition_holds, describe, rule_applies, validate_rule
from oracle_monitor.resilience.rate_limiter import SlidingWindowRateLimiter
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock
from oracle_monitor.storage.database import DatabaseManager
from oracle_monitor.storage.repos import AlertDTO, AlertRepository, AlertRuleRepository

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 32
HOURLY_WINDOW_SECONDS = 3600.0


@dataclass
class DeliveryStats:
    scheduled: int = 0
    delivered: int = 0
    failed: int = 0


def compute_fingerprint(rule: AlertRule, context: EvaluationContext) -> str:
    """Stable identity of "this rule firing for this subject"."""
    parts = [
        rule.event.value,
        rule.id,
        context.protocol or "",
        context.chain or "",
        context.symbol or "",
        context.instance_id or "",
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


class AlertRuleEngine:
    """Evaluates rules and maintains deduplicated alerts.

    Example:
        ```python
        engine = AlertRuleEngine(db, dispatcher)
        await engine.create_rule(rule)
        outcomes = await engine.evaluate(context)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        dispatcher: NotificationDispatcher,
        *,
        formatter: AlertFormatter | None = None,
        redis: Redis | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._db = db
        self._dispatcher = dispatcher
        self._formatter = formatter or AlertFormatter()
        self._redis = redis
        self._clock = clock
        self._rules: list[AlertRule] | None = None
        self._hourly_limiters: dict[str, SlidingWindowRateLimiter] = {}
        # fingerprint -> hourly-cap token held by the delivery in flight
        self._in_flight: dict[str, str | None] = {}
        self._deliveries: set[asyncio.Task[None]] = set()
        self.stats = DeliveryStats()

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def create_rule(self, rule: AlertRule) -> AlertRule:
        """Validate and store a rule, replacing any rule with the same id.

        Raises:
            InvalidRuleError: If the rule is malformed.
        """
        validate_rule(rule)
        async with self._db.get_async_session() as session:
            await AlertRuleRepository(session).upsert(rule.to_dto())
        self._rules = None
        logger.info("Stored alert rule %s (%s)", rule.id, rule.event.value)
        return rule

    async def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        async with self._db.get_async_session() as session:
            changed = await AlertRuleRepository(session).set_enabled(rule_id, enabled)
        self._rules = None
        return changed

    async def list_rules(self) -> list[AlertRule]:
        async with self._db.get_async_session() as session:
            dtos = await AlertRuleRepository(session).list_all()
        return [AlertRule.from_dto(dto) for dto in dtos]

    async def reload_rules(self) -> list[AlertRule]:
        async with self._db.get_async_session() as session:
            dtos = await AlertRuleRepository(session).list_enabled()
        rules: list[AlertRule] = []
        for dto in dtos:
            try:
                rules.append(validate_rule(AlertRule.from_dto(dto)))
            except Exception as e:
                logger.error("Skipping stored rule %s: %s", dto.id, e)
        self._rules = rules
        return rules

    async def _enabled_rules(self) -> list[AlertRule]:
        if self._rules is None:
            return await self.reload_rules()
        return self._rules

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self, context: EvaluationContext) -> list[AlertOutcome]:
        """Evaluate one context against every enabled rule.

        Returns:
            One outcome per rule that fired.
        """
        fired = [
            rule
            for rule in await self._enabled_rules()
            if rule_applies(rule, context) and condition_holds(rule, context)
        ]
        if not fired:
            return []

        outcomes: list[AlertOutcome] = []
        try:
            async with self._db.get_async_session() as session:
                repo = AlertRepository(session)
                for rule in fired:
                    outcomes.append(await self._record(repo, rule, context))
        except Exception:
            # Nothing was committed, so nothing will be delivered.
            for outcome in outcomes:
                if outcome.notify:
                    await self._release(outcome)
            raise

        for outcome in outcomes:
            if outcome.notify:
                self._schedule_delivery(outcome)
        return outcomes

    async def evaluate_batch(self, contexts: Iterable[EvaluationContext]) -> list[AlertOutcome]:
        """Evaluate many contexts; a failing context is logged and skipped."""
        outcomes: list[AlertOutcome] = []
        for context in contexts:
            try:
                outcomes.extend(await self.evaluate(context))
            except Exception as e:
                logger.error(
                    "Alert evaluation failed for %s %s: %s",
                    context.event.value,
                    context.symbol or context.instance_id or context.protocol,
                    e,
                )
        return outcomes

    async def _record(self, repo: AlertRepository, rule: AlertRule, context: EvaluationContext) -> AlertOutcome:
        now = self._clock.now()
        fingerprint = compute_fingerprint(rule, context)
        subject = context.symbol or context.instance_id or context.protocol
        message = describe(rule, context)
        existing = await repo.get(fingerprint)

        if existing is None or existing.status == AlertStatus.RESOLVED.value:
            alert = AlertDTO(
                fingerprint=fingerprint,
                rule_id=rule.id,
                event=rule.event.value,
                severity=rule.severity.value,
                title=alert_title(rule.severity, subject, rule.name),
                message=message,
                first_seen=now,
                last_seen=now,
                protocol=context.protocol,
                chain=context.chain,
                symbol=context.symbol,
                instance_id=context.instance_id,
                context=self._context_snapshot(context),
            )
            if existing is not None:
                # A resolved alert firing again starts a new episode.
                await repo.delete(fingerprint)
            is_new = True
        else:
            alert = replace(
                existing,
                severity=rule.severity.value,
                message=message,
                last_seen=now,
                occurrences=existing.occurrences + 1,
                context=self._context_snapshot(context),
            )
            is_new = False

        await repo.upsert(alert)
        notify, reason = await self._should_notify(rule, alert)
        if reason:
            logger.debug("Alert %s not notified: %s", fingerprint, reason)
        return AlertOutcome(rule=rule, alert=alert, is_new=is_new, notify=notify, suppressed_reason=reason)

    async def _should_notify(self, rule: AlertRule, alert: AlertDTO) -> tuple[bool, str | None]:
        if alert.status == AlertStatus.SILENCED.value:
            return False, "silenced"
        if alert.status == AlertStatus.ACKNOWLEDGED.value:
            return False, "acknowledged"
        if alert.fingerprint in self._in_flight:
            return False, "delivery pending"
        if alert.last_notified_at is not None and rule.cooldown_minutes > 0:
            cooldown_ends = alert.last_notified_at + timedelta(minutes=rule.cooldown_minutes)
            if self._clock.now() < cooldown_ends:
                return False, "cooldown"
        token: str | None = None
        if rule.max_notifications_per_hour is not None:
            result = await self._hourly_limiter(rule).check(f"rule:{rule.id}")
            if not result.allowed:
                return False, "hourly cap"
            token = result.token
        self._in_flight[alert.fingerprint] = token
        return True, None

    def _hourly_limiter(self, rule: AlertRule) -> SlidingWindowRateLimiter:
        assert rule.max_notifications_per_hour is not None
        limiter = self._hourly_limiters.get(rule.id)
        if limiter is None or limiter.max_requests != rule.max_notifications_per_hour:
            limiter = SlidingWindowRateLimiter(
                rule.max_notifications_per_hour,
                HOURLY_WINDOW_SECONDS,
                redis=self._redis,
                key_prefix="oracle_monitor:alerts:hourly:",
                clock=self._clock,
            )
            self._hourly_limiters[rule.id] = limiter
        return limiter

    async def _release(self, outcome: AlertOutcome) -> None:
        """Drop the in-flight mark and hand back the hourly slot it held."""
        token = self._in_flight.pop(outcome.alert.fingerprint, None)
        limiter = self._hourly_limiters.get(outcome.rule.id)
        if token is None or limiter is None:
            return
        try:
            await limiter.release(f"rule:{outcome.rule.id}", token)
        except Exception as e:
            logger.warning("Could not release hourly slot for rule %s: %s", outcome.rule.id, e)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _schedule_delivery(self, outcome: AlertOutcome) -> None:
        task = asyncio.create_task(
            self._deliver(outcome),
            name=f"alert-delivery-{outcome.alert.fingerprint[:8]}",
        )
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)
        self.stats.scheduled += 1

    def _delivery_done(self, task: asyncio.Task[None]) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Alert delivery task %s crashed: %s", task.get_name(), error)

    async def _deliver(self, outcome: AlertOutcome) -> None:
        fingerprint = outcome.alert.fingerprint
        delivered = False
        try:
            payload = self._formatter.build_payload(outcome.rule, outcome.alert)
            result = await self._dispatcher.notify_alert(payload, outcome.rule.channels)
            delivered = result.success
            if delivered:
                notified_at = self._clock.now()
                async with self._db.get_async_session() as session:
                    await AlertRepository(session).mark_notified(fingerprint, at=notified_at)
                outcome.alert.last_notified_at = notified_at
                outcome.alert.notification_count += 1
        except Exception as e:
            logger.error("Delivery failed for alert %s: %s", fingerprint, e)
        finally:
            if delivered:
                self._in_flight.pop(fingerprint, None)
                self.stats.delivered += 1
                logger.debug("Alert %s delivered", fingerprint)
            else:
                await self._release(outcome)
                self.stats.failed += 1
                logger.warning("Alert %s was not delivered to any channel", fingerprint)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight deliveries, cancelling any still running after ``timeout``."""
        if not self._deliveries:
            return
        _, still_running = await asyncio.wait(set(self._deliveries), timeout=timeout)
        if still_running:
            logger.warning("Cancelling %d alert deliveries still pending", len(still_running))
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    @staticmethod
    def _context_snapshot(context: EvaluationContext) -> dict[str, object]:
        snapshot: dict[str, object] = {
            "price": context.price,
            "deviation": context.deviation,
            "age_seconds": context.age_seconds,
            "consecutive_failures": context.consecutive_failures,
            "healthy_instances": context.healthy_instances,
        }
        snapshot = {k: v for k, v in snapshot.items() if v is not None}
        snapshot.update(context.metadata)
        return snapshot

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def acknowledge(self, fingerprint: str) -> AlertDTO:
        return await self._set_status(fingerprint, AlertStatus.ACKNOWLEDGED)

    async def resolve(self, fingerprint: str) -> AlertDTO:
        return await self._set_status(fingerprint, AlertStatus.RESOLVED)

    async def silence(self, fingerprint: str) -> AlertDTO:
        return await self._set_status(fingerprint, AlertStatus.SILENCED)

    async def list_active(self, *, limit: int = 500) -> list[AlertDTO]:
        """Alerts that are not resolved, most recently seen first."""
        statuses = [AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value, AlertStatus.SILENCED.value]
        async with self._db.get_async_session() as session:
            return await AlertRepository(session).list_by_status(statuses, limit=limit)

    async def get_alert(self, fingerprint: str) -> AlertDTO | None:
        async with self._db.get_async_session() as session:
            return await AlertRepository(session).get(fingerprint)

    async def _set_status(self, fingerprint: str, status: AlertStatus) -> AlertDTO:
        async with self._db.get_async_session() as session:
            alert = await AlertRepository(session).set_status(fingerprint, status.value, at=self._clock.now())
        if alert is None:
            raise AlertNotFoundError(f"No alert with fingerprint {fingerprint}")
        logger.info("Alert %s marked %s", fingerprint, status.value)
        return alert
