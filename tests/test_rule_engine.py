import pytest

from soc_response.core.errors import ConflictError, ValidationError
from soc_response.schemas.rules import AlertRule, ConditionOperator, RuleCondition

pytestmark = pytest.mark.asyncio


def _api_rule(**overrides):
    data = {
        "name": "API burst",
        "description": "API access burst from one client",
        "severity": "MEDIUM",
        "conditions": [{"field": "event_type", "operator": "equals", "value": "API_ACCESS"}],
        "time_window": 60,
        "threshold": 1,
        "actions": [{"type": "EMAIL", "target": "soc@example.com"}],
        "suppression_time": 300,
    }
    data.update(overrides)
    return data


def _fired(response, name):
    return [a for a in response.triggered_alerts if a.rule_name == name]


async def test_default_rules_are_seeded(engine):
    names = {r.name for r in engine.list_rules()}
    assert {"Multiple Failed Logins", "Admin Operations Off Hours"} <= names


async def test_duplicate_rule_name_conflicts(engine):
    engine.create_alert_rule(_api_rule())
    with pytest.raises(ConflictError):
        engine.create_alert_rule(_api_rule())


async def test_invalid_rules_rejected(engine):
    with pytest.raises(ValidationError):
        engine.create_alert_rule(_api_rule(time_window=30))
    with pytest.raises(ValidationError):
        engine.create_alert_rule(
            _api_rule(conditions=[{"field": "title", "operator": "regex", "value": "("}])
        )
    with pytest.raises(ValidationError):
        engine.create_alert_rule(
            _api_rule(conditions=[{"field": "threat_score", "operator": "greater_than", "value": "high"}])
        )


async def test_threshold_counts_stored_matching_events(engine, event_payload):
    engine.create_alert_rule(_api_rule(threshold=3))

    first = await engine.ingest_event(event_payload(0, event_type="API_ACCESS"))
    second = await engine.ingest_event(event_payload(10, event_type="API_ACCESS"))
    third = await engine.ingest_event(event_payload(20, event_type="API_ACCESS"))

    assert _fired(first, "API burst") == []
    assert _fired(second, "API burst") == []
    [alert] = _fired(third, "API burst")
    assert alert.actual_count == 3
    assert alert.threshold == 3


async def test_suppression_per_rule_user_and_ip(engine, event_payload, notifier):
    rule = engine.create_alert_rule(_api_rule())

    first = await engine.ingest_event(event_payload(0, event_type="API_ACCESS"))
    repeat = await engine.ingest_event(event_payload(10, event_type="API_ACCESS"))
    other_user = await engine.ingest_event(event_payload(20, event_type="API_ACCESS", user_id="u2"))
    after_quiet = await engine.ingest_event(event_payload(301, event_type="API_ACCESS"))

    assert _fired(first, "API burst")[0].suppression_key == f"{rule.id}:u1:203.0.113.7"
    assert _fired(repeat, "API burst") == []
    assert len(_fired(other_user, "API burst")) == 1
    assert len(_fired(after_quiet, "API burst")) == 1

    emails = [s for s in notifier.sent if s["title"] == "Security Alert: API burst"]
    assert len(emails) == 3

    stored = next(r for r in engine.list_rules() if r.id == rule.id)
    assert stored.trigger_count == 3


async def test_failed_action_is_recorded_and_others_still_run(engine, event_payload, notifier):
    notifier.fail_channels.add("email")
    engine.create_alert_rule(
        _api_rule(actions=[
            {"type": "EMAIL", "target": "soc@example.com"},
            {"type": "SLACK", "target": "#soc"},
        ])
    )

    response = await engine.ingest_event(event_payload(0, event_type="API_ACCESS"))
    [alert] = _fired(response, "API burst")
    assert alert.failed_actions == ["EMAIL"]
    assert [s["channel"] for s in notifier.sent if "API burst" in s["title"]] == ["slack"]


async def test_broken_rule_does_not_block_other_rules(engine, make_event):
    good = engine.create_alert_rule(_api_rule())
    broken = AlertRule.model_construct(
        **{
            **good.model_dump(),
            "id": "broken",
            "name": "broken",
            "conditions": [
                RuleCondition.model_construct(field="title", operator=ConditionOperator.REGEX, value="(")
            ],
        }
    )
    event = make_event(0, event_type="API_ACCESS", title="x")
    engine.event_store.save(event)

    alerts = await engine.rule_engine.evaluate(event, rules=[broken, good])
    assert [a.rule_name for a in alerts] == ["API burst"]


async def test_cleanup_drops_expired_suppressions(engine, event_payload, clock):
    engine.create_alert_rule(_api_rule())
    await engine.ingest_event(event_payload(0, event_type="API_ACCESS"))
    assert engine.rule_engine.active_suppressions >= 1

    clock.advance(hours=3)
    engine.rule_engine.cleanup_suppressions(clock())
    assert engine.rule_engine.active_suppressions == 0
