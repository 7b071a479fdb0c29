from datetime import timedelta

import pytest

from conftest import BASE_TIME
from soc_response.core.errors import (
    ConflictError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from soc_response.schemas.incidents import (
    ActionStatus,
    CommunicationStatus,
    CommunicationType,
    IncidentCategory,
    IncidentStatus,
)
from soc_response.services.alerting.alert_dispatcher import AlertDispatcher

pytestmark = pytest.mark.asyncio


class FailingRunner:
    async def execute(self, action_type, definition, context):
        raise DependencyError(f"{definition.script} exited with 2: permission denied")


class FailingCommanders:
    async def assign(self, severity):
        raise DependencyError("on-call roster unavailable")


def _actions(incident):
    return {a.action_type: a for a in incident.actions}


def _timeline(incident):
    return [e.action for e in incident.timeline]


async def test_create_declares_and_runs_automated_actions(engine, incident_payload, notifier):
    incident = await engine.create_incident(incident_payload())

    assert incident.id.startswith("INC-P2-")
    assert incident.id == incident.id.upper()
    assert incident.status == IncidentStatus.NEW
    assert incident.priority == 2
    assert incident.incident_commander == "security-commander-1"
    assert incident.playbook == "security-breach-response"
    assert incident.stakeholders == ["security-team", "operations", "management"]
    assert incident.metadata["initial_evidence"] == ["evt-1"]
    assert incident.metadata["auto_detected"] is False

    actions = _actions(incident)
    assert actions["isolate-systems"].status == ActionStatus.PENDING
    assert actions["isolate-systems"].confirmation_required
    assert actions["collect-evidence"].status == ActionStatus.COMPLETED
    assert actions["collect-evidence"].results.startswith("[dry-run]")
    assert actions["notify-stakeholders"].status == ActionStatus.COMPLETED

    [declared] = incident.communications
    assert declared.type == CommunicationType.DECLARED
    assert declared.status == CommunicationStatus.SENT
    assert declared.message.startswith("[INCIDENT] P2_HIGH - Suspicious access to payroll database")
    assert {s["channel"] for s in notifier.sent} == {"email", "slack"}

    assert _timeline(incident)[0] == "INCIDENT_CREATED"
    assert engine.incidents.scheduler.get(incident.id) is not None


async def test_create_logs_itself_as_a_security_event(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())

    logged = [e for e in engine.list_events() if e.source == "IncidentResponse"]
    assert len(logged) == 1
    assert logged[0].event_type.value == "SECURITY_ALERT"
    assert logged[0].severity.value == "HIGH"
    assert logged[0].metadata["incident_id"] == incident.id
    # the self-log never loops back into a new incident
    assert len(engine.list_incidents()) == 1


async def test_invalid_incident_is_rejected_before_any_write(engine, incident_payload):
    with pytest.raises(ValidationError):
        await engine.create_incident(incident_payload(title="short"))
    with pytest.raises(ValidationError):
        await engine.create_incident(incident_payload(description="too brief"))
    assert engine.list_incidents() == []


async def test_acknowledge_sets_response_time_once(engine, incident_payload, clock):
    incident = await engine.create_incident(incident_payload())

    clock.advance(minutes=7)
    acked = await engine.update_incident(incident.id, {"status": "ACKNOWLEDGED"}, "analyst-1")
    assert acked.acknowledged_at == BASE_TIME + timedelta(minutes=7)
    assert acked.response_time == 7

    clock.advance(minutes=5)
    await engine.update_incident(incident.id, {"status": "INVESTIGATING"})
    again = await engine.update_incident(incident.id, {"status": "ACKNOWLEDGED"})
    assert again.acknowledged_at == BASE_TIME + timedelta(minutes=7)
    assert again.response_time == 7


async def test_close_requires_resolution_and_is_terminal(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())

    with pytest.raises(ConflictError):
        await engine.update_incident(incident.id, {"status": "CLOSED"})
    assert engine.get_incident(incident.id).status == IncidentStatus.NEW

    await engine.update_incident(incident.id, {"status": "RESOLVED", "resolution": "Credentials rotated"})
    closed = await engine.update_incident(incident.id, {"status": "CLOSED"})
    assert closed.closed_at is not None
    assert incident.id not in {i.id for i in engine.incidents.open_incidents}

    assert incident.id not in engine.incidents._locks

    with pytest.raises(ConflictError):
        await engine.update_incident(incident.id, {"status": "INVESTIGATING"})
    with pytest.raises(ConflictError):
        await engine.execute_incident_action(incident.id, {"action_type": "block-ip"})


async def test_resolution_cancels_escalation_and_schedules_review(engine, incident_payload, clock, notifier):
    incident = await engine.create_incident(incident_payload())

    clock.advance(minutes=45)
    resolved = await engine.update_incident(
        incident.id,
        {"status": "RESOLVED", "resolution": "Service account disabled and keys rotated"},
        "analyst-1",
    )

    assert resolved.resolved_at == BASE_TIME + timedelta(minutes=45)
    assert resolved.resolution_time == 45
    assert engine.incidents.scheduler.get(incident.id) is None
    assert resolved.metadata["post_incident_review_due"] == (
        BASE_TIME + timedelta(minutes=45, days=5)
    ).isoformat()

    timeline = _timeline(resolved)
    assert "STATUS_CHANGED" in timeline
    assert "RESOLUTION_ADDED" in timeline
    assert timeline[-1] == "POST_INCIDENT_REVIEW_SCHEDULED"

    kinds = [c.type for c in resolved.communications]
    assert kinds[-2:] == [CommunicationType.STATUS_UPDATE, CommunicationType.RESOLUTION]
    assert "Duration: 45 minutes" in resolved.communications[-1].message


async def test_one_timeline_entry_per_changed_field(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())
    before = len(incident.timeline)

    updated = await engine.update_incident(
        incident.id,
        {"assigned_to": "analyst-2", "priority": 1, "progress": "Reviewing DB audit logs"},
        "lead-1",
    )
    assert _timeline(updated)[before:] == ["ASSIGNED", "PRIORITY_CHANGED", "PROGRESS_UPDATE"]
    assert updated.timeline[-1].actor == "lead-1"

    unchanged = await engine.update_incident(incident.id, {"assigned_to": "analyst-2", "priority": 1})
    assert len(unchanged.timeline) == len(updated.timeline)


async def test_completed_action_is_returned_unchanged(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())
    completed = _actions(incident)["collect-evidence"]

    again = await engine.execute_incident_action(incident.id, {"action_type": "collect-evidence"})
    by_id = await engine.execute_incident_action(
        incident.id, {"action_id": completed.id}
    )

    assert again.id == by_id.id == completed.id
    assert by_id.completed_at == completed.completed_at
    assert len(engine.get_incident(incident.id).timeline) == len(incident.timeline)


async def test_confirmation_gated_action_runs_when_triggered(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())
    pending = _actions(incident)["isolate-systems"]

    done = await engine.execute_incident_action(
        incident.id,
        {"action_id": pending.id},
        actor="analyst-1",
    )
    assert done.id == pending.id
    assert done.status == ActionStatus.COMPLETED
    assert "isolate_systems.sh" in done.results


async def test_manual_request_creates_pending_action(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())
    action = await engine.execute_incident_action(
        incident.id, {"action_type": "block-ip", "assigned_to": "analyst-3"}
    )
    assert action.status == ActionStatus.PENDING
    assert action.automated is False
    assert engine.get_incident(incident.id).timeline[-1].actor == "analyst-3"


async def test_unknown_action_type_is_rejected(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())
    with pytest.raises(ValidationError):
        await engine.execute_incident_action(incident.id, {"action_type": "format-disk"})


async def test_failed_action_is_recorded_and_retried_as_new_action(engine, incident_payload):
    runner = engine.incidents.runner
    engine.incidents.runner = FailingRunner()
    incident = await engine.create_incident(incident_payload())

    failed = _actions(incident)["collect-evidence"]
    assert failed.status == ActionStatus.FAILED
    assert "permission denied" in failed.results
    assert _timeline(incident).count("ACTION_FAILED") == 2

    engine.incidents.runner = runner
    retry = await engine.execute_incident_action(
        incident.id, {"action_id": failed.id}
    )
    assert retry.id != failed.id
    assert retry.status == ActionStatus.COMPLETED
    assert retry.metadata["retry_of"] == failed.id

    stored = engine.get_incident(incident.id)
    assert next(a for a in stored.actions if a.id == failed.id).status == ActionStatus.FAILED


async def test_communication_failure_is_recorded_not_raised(engine, incident_payload, notifier):
    incident = await engine.create_incident(incident_payload())
    notifier.fail_channels.add("slack")

    comm = await engine.send_incident_communication(
        incident.id,
        {
            "type": "STAKEHOLDER_NOTIFICATION",
            "message": "Payroll DB access revoked for svc-report.",
            "recipients": ["management"],
            "channels": ["email", "slack"],
        },
    )
    assert comm.status == CommunicationStatus.FAILED
    assert "slack" in comm.error
    assert _timeline(engine.get_incident(incident.id))[-1] == "COMMUNICATION_FAILED"


async def test_commander_failure_leaves_incident_unassigned(engine, incident_payload):
    engine.incidents.commanders = FailingCommanders()
    incident = await engine.create_incident(incident_payload())

    assert incident.incident_commander is None
    assert "COMMANDER_ASSIGNMENT_FAILED" in _timeline(incident)


async def test_self_log_failure_goes_on_timeline(engine, incident_payload):
    async def broken_ingest(payload):
        raise DependencyError("SIEM unavailable")

    engine.incidents.ingest = broken_ingest
    incident = await engine.create_incident(incident_payload())
    assert _timeline(engine.get_incident(incident.id))[-1] == "SIEM_LOG_FAILED"


async def test_evidence_gets_chain_of_custody(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())
    evidence = await engine.add_evidence(
        incident.id,
        {
            "type": "LOG_FILE",
            "file_name": "db-audit.log",
            "file_path": "/evidence/db-audit.log",
            "collected_by": "analyst-1",
            "hash": "A" * 64,
        },
    )
    assert evidence.hash == "a" * 64
    assert evidence.chain_of_custody[0].transferred_to == "analyst-1"
    assert _timeline(engine.get_incident(incident.id))[-1] == "EVIDENCE_ADDED"

    with pytest.raises(ValidationError):
        await engine.add_evidence(
            incident.id,
            {
                "type": "LOG_FILE",
                "file_name": "x",
                "file_path": "/x",
                "collected_by": "analyst-1",
                "hash": "not-a-hash",
            },
        )


async def test_lookup_and_filters(engine, incident_payload):
    high = await engine.create_incident(incident_payload())
    low = await engine.create_incident(
        incident_payload(severity="P4_LOW", category="COMPLIANCE_VIOLATION", title="Audit finding on retention")
    )
    await engine.update_incident(low.id, {"status": "ACKNOWLEDGED"})

    with pytest.raises(NotFoundError):
        engine.get_incident("INC-P1-NOPE-0000")

    assert [i.id for i in engine.list_incidents({"severity": "P4_LOW"})] == [low.id]
    assert [i.id for i in engine.list_incidents({"status": "NEW"})] == [high.id]
    assert len(engine.list_incidents({"category": "COMPLIANCE_VIOLATION", "limit": 1})) == 1


async def test_playbook_lookup(engine):
    playbook = engine.incidents.get_playbook(IncidentCategory.SECURITY_BREACH)
    assert playbook.id == "security-breach-response"
    with pytest.raises(NotFoundError):
        engine.incidents.get_playbook(IncidentCategory.OTHER)


async def test_quick_resolution_still_records_positive_duration(engine, incident_payload, clock):
    incident = await engine.create_incident(incident_payload())

    clock.advance(seconds=20)
    resolved = await engine.update_incident(incident.id, {"status": "RESOLVED"})
    assert resolved.resolution_time == 1


async def test_second_resolution_keeps_first_resolution_record(engine, incident_payload, clock):
    incident = await engine.create_incident(incident_payload())

    clock.advance(minutes=20)
    first = await engine.update_incident(
        incident.id, {"status": "RESOLVED", "resolution": "Keys rotated"}
    )
    clock.advance(minutes=10)
    await engine.update_incident(incident.id, {"status": "MONITORING"})
    clock.advance(minutes=10)
    again = await engine.update_incident(incident.id, {"status": "RESOLVED"})

    assert again.resolved_at == first.resolved_at == BASE_TIME + timedelta(minutes=20)
    assert again.resolution_time == first.resolution_time == 20
    assert [c.type for c in again.communications].count(CommunicationType.RESOLUTION) == 1
    assert _timeline(again).count("POST_INCIDENT_REVIEW_SCHEDULED") == 1
    assert len(again.timeline) > len(first.timeline)
    assert again.timeline[: len(first.timeline)] == first.timeline


async def test_unconfigured_channels_leave_communication_pending(engine, incident_payload):
    engine.incidents.notifier = AlertDispatcher()
    incident = await engine.create_incident(incident_payload())

    [declared] = incident.communications
    assert declared.status == CommunicationStatus.PENDING
    assert "not configured" in declared.error
    timeline = _timeline(incident)
    assert "COMMUNICATION_NOT_DELIVERED" in timeline
    assert "COMMUNICATION_SENT" not in timeline


async def test_action_request_needs_exactly_one_target(engine, incident_payload):
    incident = await engine.create_incident(incident_payload())
    pending = _actions(incident)["isolate-systems"]

    with pytest.raises(ValidationError):
        await engine.execute_incident_action(
            incident.id, {"action_type": "isolate-systems", "action_id": pending.id}
        )
    with pytest.raises(ValidationError):
        await engine.execute_incident_action(incident.id, {"assigned_to": "analyst-1"})
