from datetime import timedelta

import pytest

from conftest import BASE_TIME
from soc_response.services.correlation.correlation_engine import CorrelationEngine, correlation_key

pytestmark = pytest.mark.asyncio


async def _observe_all(engine, events):
    matches = []
    for event in events:
        matches = await engine.observe(event)
    return matches


async def test_velocity_fires_when_five_events_span_under_a_minute(make_event):
    engine = CorrelationEngine()
    matches = await _observe_all(engine, [make_event(t) for t in (0, 15, 30, 45, 59)])

    assert [m.type for m in matches] == ["VELOCITY_ATTACK"]
    assert matches[0].severity == "HIGH"
    assert matches[0].correlation_key == "user:u1|ip:203.0.113.7"
    assert len(matches[0].event_ids) == 5


async def test_velocity_quiet_when_span_reaches_a_minute(make_event):
    engine = CorrelationEngine()
    matches = await _observe_all(engine, [make_event(t) for t in (0, 15, 30, 45, 61)])
    assert matches == []


async def test_bruteforce_then_success(make_event):
    engine = CorrelationEngine()
    events = [make_event(t) for t in (0, 10, 20)]
    success = make_event(30, metadata={"success": True})
    matches = await _observe_all(engine, events + [success])

    assert [m.type for m in matches] == ["BRUTE_FORCE_SUCCESS"]
    assert matches[0].severity == "CRITICAL"
    assert matches[0].event_ids == [e.id for e in events] + [success.id]
    assert matches[0].detected_at == BASE_TIME + timedelta(seconds=30)


async def test_success_before_failures_is_not_bruteforce(make_event):
    engine = CorrelationEngine()
    events = [make_event(0, metadata={"success": True})] + [make_event(t) for t in (10, 20, 30)]
    assert await _observe_all(engine, events) == []


async def test_success_at_same_instant_as_last_failure_is_ignored(make_event):
    engine = CorrelationEngine()
    events = [make_event(t) for t in (0, 10, 20)] + [make_event(20, metadata={"success": True})]
    assert await _observe_all(engine, events) == []


async def test_out_of_order_arrival_is_sorted_by_timestamp(make_event):
    engine = CorrelationEngine()
    success = make_event(30, metadata={"success": True})
    late_failure = make_event(5)
    matches = await _observe_all(
        engine, [make_event(0), success, make_event(10), late_failure]
    )
    # failures at 0, 5, 10 all precede the success at 30
    assert [m.type for m in matches] == ["BRUTE_FORCE_SUCCESS"]


async def test_privilege_escalation(make_event):
    engine = CorrelationEngine()
    matches = await _observe_all(
        engine, [make_event(t, event_type="ADMIN_OPERATION") for t in (0, 90)]
    )
    assert [m.type for m in matches] == ["PRIVILEGE_ESCALATION"]


async def test_exfiltration_payload_is_last_ten(make_event):
    engine = CorrelationEngine()
    events = [make_event(t * 20, event_type="DATA_ACCESS") for t in range(12)]
    matches = await _observe_all(engine, events)

    assert [m.type for m in matches] == ["DATA_EXFILTRATION"]
    assert matches[0].event_ids == [e.id for e in events[-10:]]
    assert matches[0].metadata["total_data_events"] == 12


async def test_window_drops_events_older_than_newest(make_event):
    engine = CorrelationEngine(window_seconds=300)
    first = make_event(0)
    await engine.observe(first)
    await engine.observe(make_event(400))

    group = engine.get_group(correlation_key(first))
    assert [e.timestamp for e in group.events] == [BASE_TIME + timedelta(seconds=400)]


async def test_failing_detector_does_not_block_others(make_event):
    engine = CorrelationEngine()

    def broken(group):
        raise ValueError("bad detector")

    engine.register_detector(broken)
    matches = await _observe_all(
        engine, [make_event(t, event_type="ADMIN_OPERATION") for t in (0, 90)]
    )
    assert [m.type for m in matches] == ["PRIVILEGE_ESCALATION"]


async def test_prune_removes_empty_groups(make_event):
    engine = CorrelationEngine(window_seconds=300)
    await engine.observe(make_event(0))
    await engine.observe(make_event(0, user_id="u2"))
    assert engine.group_count == 2

    removed = engine.prune(BASE_TIME + timedelta(minutes=10))
    assert removed == 2
    assert engine.group_count == 0


async def test_key_falls_back_to_event_type(make_event):
    event = make_event(0, user_id=None, ip_address=None, event_type="SYSTEM_OPERATION")
    assert correlation_key(event) == "type:SYSTEM_OPERATION"
