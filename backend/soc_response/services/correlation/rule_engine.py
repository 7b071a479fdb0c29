# backend/soc_response/services/correlation/rule_engine.py
import logging
from datetime import datetime, timedelta
from string import Template
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from soc_response.schemas.correlation import TriggeredAlert
from soc_response.schemas.events import SecurityEvent
from soc_response.schemas.rules import AlertRule, AlertRuleCreate, RuleAction, RuleActionType
from soc_response.services.alerting.alert_dispatcher import AlertDispatcher
from soc_response.services.correlation.conditions import event_document, matches_all
from soc_response.services.correlation.rule_store_service import RuleStoreService
from soc_response.services.events.event_bus import TOPIC_RULE_INCIDENT, EventBus
from soc_response.services.events.event_store_service import EventStoreService

logger = logging.getLogger(__name__)

ACTION_CHANNELS = {
    RuleActionType.EMAIL: "email",
    RuleActionType.WEBHOOK: "webhook",
    RuleActionType.SLACK: "slack",
    RuleActionType.SMS: "sms",
}

DEFAULT_MESSAGE = (
    "Rule '$rule_name' triggered: $count matching events within "
    "$time_window seconds (threshold $threshold). User: $user_id, IP: $ip_address."
)


def suppression_key(rule: AlertRule, event: SecurityEvent) -> str:
    return f"{rule.id}:{event.user_id or 'anonymous'}:{event.ip_address or 'unknown'}"


class AlertRuleEngine:
    """
    Threshold rules over the event store.

    A rule fires when the current event satisfies all its conditions and at
    least `threshold` stored events inside `time_window` do as well. Each
    (rule, user, ip) is then quiet for `suppression_time` seconds.

    The live rule set is an immutable tuple swapped on every change.
    """

    def __init__(
        self,
        rule_store: RuleStoreService,
        event_store: EventStoreService,
        notifier: AlertDispatcher,
        bus: EventBus,
    ) -> None:
        self.rule_store = rule_store
        self.event_store = event_store
        self.notifier = notifier
        self.bus = bus
        self._rules: Tuple[AlertRule, ...] = ()
        # suppression key -> quiet-until timestamp
        self._suppressions: Dict[str, datetime] = {}

    # -------------------------------------------------------------------------
    # Rule set
    # -------------------------------------------------------------------------
    @property
    def rules(self) -> Tuple[AlertRule, ...]:
        return self._rules

    @property
    def active_suppressions(self) -> int:
        return len(self._suppressions)

    def load(self) -> None:
        rules = self.rule_store.list_rules()
        self._rules = tuple(rules)
        logger.info("Loaded %d alert rules.", len(rules))

    def seed_defaults(self, rules: List[AlertRuleCreate], now: datetime) -> None:
        self.rule_store.seed_defaults(rules, now)
        self.load()

    def create_rule(self, data: AlertRuleCreate, now: datetime) -> AlertRule:
        rule = self.rule_store.create(data, now)
        self._rules = self._rules + (rule,)
        logger.info("Created alert rule %s (%s).", rule.id, rule.name)
        return rule

    def _bump_trigger(self, rule_id: str, now: datetime) -> None:
        self._rules = tuple(
            r.model_copy(update={"trigger_count": r.trigger_count + 1, "last_triggered": now})
            if r.id == rule_id else r
            for r in self._rules
        )

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------
    async def evaluate(
        self,
        event: SecurityEvent,
        rules: Optional[Sequence[AlertRule]] = None,
    ) -> List[TriggeredAlert]:
        active = self._rules if rules is None else tuple(rules)
        doc = event_document(event)

        triggered: List[TriggeredAlert] = []
        for rule in active:
            if not rule.enabled:
                continue
            try:
                alert = await self._evaluate_rule(rule, event, doc)
            except Exception:
                logger.exception("Alert rule %s (%s) failed to evaluate.", rule.id, rule.name)
                continue
            if alert is not None:
                triggered.append(alert)
        return triggered

    async def _evaluate_rule(
        self,
        rule: AlertRule,
        event: SecurityEvent,
        doc: dict,
    ) -> Optional[TriggeredAlert]:
        if not matches_all(rule.conditions, doc):
            return None

        now = event.timestamp
        matching = self.event_store.find_recent(rule.conditions, rule.time_window, now)
        if len(matching) < rule.threshold:
            return None

        key = suppression_key(rule, event)
        if self.is_suppressed(key, now):
            logger.debug("Rule %s suppressed for %s.", rule.name, key)
            return None
        # claimed before dispatch so concurrent evaluations see it
        if rule.suppression_time:
            self._suppressions[key] = now + timedelta(seconds=rule.suppression_time)

        alert = TriggeredAlert(
            rule_id=rule.id,
            rule_name=rule.name,
            severity=rule.severity.value,
            event_id=event.id,
            suppression_key=key,
            matching_event_ids=[e.id for e in matching],
            threshold=rule.threshold,
            actual_count=len(matching),
            actions=[a.type.value for a in rule.actions],
            triggered_at=now,
        )
        logger.info(
            "Alert rule %s triggered by event %s (%d/%d).",
            rule.name, event.id, alert.actual_count, rule.threshold,
        )

        for action in rule.actions:
            try:
                await self._dispatch(action, rule, alert, event)
            except Exception as exc:
                logger.warning("Action %s for rule %s failed: %s", action.type.value, rule.name, exc)
                alert.failed_actions.append(action.type.value)

        self._bump_trigger(rule.id, now)
        self.rule_store.record_trigger(rule.id, now)
        return alert

    async def _dispatch(
        self,
        action: RuleAction,
        rule: AlertRule,
        alert: TriggeredAlert,
        event: SecurityEvent,
    ) -> None:
        if action.type == RuleActionType.CREATE_INCIDENT:
            alert.incident_requested = action.target
            await self.bus.publish(
                TOPIC_RULE_INCIDENT, {"alert": alert, "rule": rule, "event": event}
            )
            return

        message = Template(action.template or DEFAULT_MESSAGE).safe_substitute(
            rule_name=rule.name,
            count=alert.actual_count,
            threshold=rule.threshold,
            time_window=rule.time_window,
            user_id=event.user_id or "anonymous",
            ip_address=event.ip_address or "unknown",
            event_id=event.id,
        )
        await self.notifier.send(
            ACTION_CHANNELS[action.type],
            [action.target],
            f"Security Alert: {rule.name}",
            message,
            rule.severity.value,
        )

    # -------------------------------------------------------------------------
    # Suppression bookkeeping
    # -------------------------------------------------------------------------
    def is_suppressed(self, key: str, now: datetime) -> bool:
        until = self._suppressions.get(key)
        return until is not None and now < until

    def cleanup_suppressions(self, now: datetime) -> int:
        expired: Iterable[str] = [k for k, until in self._suppressions.items() if until <= now]
        count = 0
        for key in expired:
            self._suppressions.pop(key, None)
            count += 1
        if count:
            logger.debug("Removed %d expired suppression entries.", count)
        return count
