import pytest

from soc_response.schemas.incidents import ActionStatus, IncidentCategory, IncidentSeverity

pytestmark = pytest.mark.asyncio


def _by_pattern(incidents, pattern):
    return [i for i in incidents if i.metadata.get("pattern_type") == pattern]


async def test_failed_login_burst_becomes_incident(engine, event_payload, notifier):
    responses = [await engine.ingest_event(event_payload(t)) for t in (0, 2, 4, 6, 8)]
    last = responses[-1]

    assert "VELOCITY_ATTACK" in [m.type for m in last.pattern_matches]
    assert "Multiple Failed Logins" in [a.rule_name for a in last.triggered_alerts]
    assert all(r.event.processed for r in responses)

    incidents = engine.list_incidents()
    assert incidents
    for incident in incidents:
        assert incident.metadata["auto_detected"] is True
        assert incident.category == IncidentCategory.SECURITY_BREACH
        assert incident.severity in (IncidentSeverity.P1_CRITICAL, IncidentSeverity.P2_HIGH)
        assert any(
            a.automated and a.status in (ActionStatus.COMPLETED, ActionStatus.IN_PROGRESS)
            for a in incident.actions
        )

    [velocity] = _by_pattern(incidents, "VELOCITY_ATTACK")
    assert velocity.metadata["correlation_key"] == "user:u1|ip:203.0.113.7"
    assert "Security Alert: Multiple Failed Logins" in notifier.titles()


async def test_repeat_detection_lands_on_open_incident(engine, event_payload):
    for t in (0, 2, 4, 6, 8):
        await engine.ingest_event(event_payload(t))
    count = len(engine.list_incidents())

    await engine.ingest_event(event_payload(9))
    incidents = engine.list_incidents()
    assert len(incidents) == count

    [velocity] = _by_pattern(incidents, "VELOCITY_ATTACK")
    assert [e.action for e in velocity.timeline].count("PATTERN_REDETECTED") == 1


async def test_bruteforce_success_opens_critical_incident(engine, event_payload):
    for t in (0, 2, 4, 6, 8):
        await engine.ingest_event(event_payload(t))
    response = await engine.ingest_event(event_payload(12, metadata={"success": True}))

    assert "BRUTE_FORCE_SUCCESS" in [m.type for m in response.pattern_matches]
    [breach] = _by_pattern(engine.list_incidents(), "BRUTE_FORCE_SUCCESS")
    assert breach.severity == IncidentSeverity.P1_CRITICAL
    assert breach.incident_commander == "security-commander-1"

    assert engine.auto_detector.rebuild() == 2


async def test_resolved_pattern_incident_allows_a_new_one(engine, event_payload):
    for t in (0, 2, 4, 6, 8):
        await engine.ingest_event(event_payload(t))
    [first] = _by_pattern(engine.list_incidents(), "VELOCITY_ATTACK")
    await engine.update_incident(first.id, {"status": "RESOLVED"})

    await engine.ingest_event(event_payload(9))
    velocity = _by_pattern(engine.list_incidents(), "VELOCITY_ATTACK")
    assert len(velocity) == 2


async def test_critical_high_score_event_opens_incident(engine, event_payload):
    await engine.ingest_event(
        event_payload(
            0,
            event_type="THREAT_DETECTED",
            severity="CRITICAL",
            source="edr",
            title="Ransomware beacon",
            description="Ransomware beacon observed on finance laptop",
            user_id="u7",
        )
    )
    [incident] = engine.list_incidents()
    assert incident.severity == IncidentSeverity.P1_CRITICAL
    assert incident.category == IncidentCategory.SECURITY_BREACH
    assert incident.metadata["event_id"]


async def test_metrics_reflect_pipeline(engine, event_payload, clock):
    for t in (0, 2, 4, 6, 8):
        await engine.ingest_event(event_payload(t))
    clock.advance(minutes=1)

    metrics = engine.get_security_metrics()
    assert metrics.events_by_type["AUTHENTICATION"] == 5
    assert metrics.total_events >= 5
    assert metrics.open_incidents == len(engine.incidents.open_incidents) > 0
    assert metrics.incident_count == len(engine.list_incidents())
    assert metrics.active_alerts >= 1
    assert {t.type for t in metrics.top_threats} >= {"VELOCITY_ATTACK"}
    assert metrics.system_health.status == "healthy"
    assert metrics.system_health.failed_events == 0


async def test_prune_forgets_patterns_of_resolved_incidents(engine, event_payload):
    for t in (0, 2, 4, 6, 8):
        await engine.ingest_event(event_payload(t))
    [velocity] = _by_pattern(engine.list_incidents(), "VELOCITY_ATTACK")
    detector = engine.auto_detector

    assert detector.prune() == 0
    assert len(detector._locks) == 1

    await engine.update_incident(velocity.id, {"status": "RESOLVED"})
    assert detector.prune() == 1
    assert detector._by_pattern == {}
    assert detector._locks == {}

    await engine.ingest_event(event_payload(9))
    assert len(_by_pattern(engine.list_incidents(), "VELOCITY_ATTACK")) == 2
