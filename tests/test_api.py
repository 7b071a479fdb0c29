import httpx
import pytest
import pytest_asyncio

from soc_response.main import create_app

pytestmark = pytest.mark.asyncio

API = "/api/v1"


@pytest_asyncio.fixture
async def client(engine):
    """Async HTTP client against the in-memory ASGI app wired to the test engine."""
    app = create_app(engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _jsonable(payload):
    out = dict(payload)
    out["timestamp"] = out["timestamp"].isoformat()
    return out


async def test_health(client):
    resp = await client.get(f"{API}/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


async def test_ingest_and_read_back(client, event_payload):
    resp = await client.post(f"{API}/events/ingest", json=_jsonable(event_payload(0)))
    assert resp.status_code == 202
    event = resp.json()["event"]
    assert event["threat_score"] == 15
    assert event["processed"] is True

    one = await client.get(f"{API}/events/{event['id']}")
    assert one.status_code == 200
    assert one.json()["id"] == event["id"]

    latest = await client.get(f"{API}/events/latest", params={"limit": 5})
    assert event["id"] in [e["id"] for e in latest.json()]


async def test_unknown_event_maps_to_404(client):
    resp = await client.get(f"{API}/events/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFoundError"
    assert "does-not-exist" in resp.json()["detail"]


async def test_malformed_event_rejected(client):
    resp = await client.post(f"{API}/events/ingest", json={"event_type": "NOPE", "source": "x"})
    assert resp.status_code == 422


async def test_rules_and_indicators(client):
    rule = {
        "name": "Off-hours exports",
        "severity": "HIGH",
        "conditions": [{"field": "action", "operator": "equals", "value": "export"}],
        "time_window": 600,
        "threshold": 3,
        "actions": [{"type": "SLACK", "target": "#soc"}],
    }
    created = await client.post(f"{API}/rules", json=rule)
    assert created.status_code == 201
    dup = await client.post(f"{API}/rules", json=rule)
    assert dup.status_code == 409
    assert dup.json()["error"] == "ConflictError"
    names = [r["name"] for r in (await client.get(f"{API}/rules")).json()]
    assert "Off-hours exports" in names

    indicator = {
        "type": "MALICIOUS_IP",
        "value": "198.51.100.23",
        "severity": "CRITICAL",
        "confidence": 95,
        "source": "partner-feed",
    }
    resp = await client.post(f"{API}/indicators", json=indicator)
    assert resp.status_code == 201
    listed = (await client.get(f"{API}/indicators")).json()
    assert [i["value"] for i in listed] == ["198.51.100.23"]


async def test_incident_workflow(client, incident_payload):
    created = await client.post(f"{API}/incidents", json=incident_payload())
    assert created.status_code == 201
    incident_id = created.json()["id"]

    acked = await client.patch(
        f"{API}/incidents/{incident_id}",
        params={"updated_by": "analyst-1"},
        json={"status": "ACKNOWLEDGED"},
    )
    assert acked.status_code == 200
    assert acked.json()["status"] == "ACKNOWLEDGED"

    premature_close = await client.patch(f"{API}/incidents/{incident_id}", json={"status": "CLOSED"})
    assert premature_close.status_code == 409

    bad_action = await client.post(
        f"{API}/incidents/{incident_id}/actions", json={"action_type": "format-disk"}
    )
    assert bad_action.status_code == 422
    assert bad_action.json()["error"] == "ValidationError"

    action = await client.post(
        f"{API}/incidents/{incident_id}/actions", json={"action_type": "block-ip"}
    )
    assert action.status_code == 200
    assert action.json()["status"] == "PENDING"

    comm = await client.post(
        f"{API}/incidents/{incident_id}/communications",
        json={
            "type": "STAKEHOLDER_NOTIFICATION",
            "message": "Containment in progress.",
            "recipients": ["management"],
        },
    )
    assert comm.status_code == 201
    assert comm.json()["status"] == "SENT"

    evidence = await client.post(
        f"{API}/incidents/{incident_id}/evidence",
        json={
            "type": "SCREENSHOT",
            "file_name": "console.png",
            "file_path": "/evidence/console.png",
            "collected_by": "analyst-1",
            "hash": "0" * 64,
        },
    )
    assert evidence.status_code == 201

    escalated = await client.post(
        f"{API}/incidents/{incident_id}/escalate", json={"reason": "Scope growing"}
    )
    assert escalated.status_code == 200
    assert escalated.json()["escalated_at"] is not None

    fetched = (await client.get(f"{API}/incidents/{incident_id}")).json()
    assert len(fetched["evidence"]) == 1
    assert [c["type"] for c in fetched["communications"]][:2] == ["DECLARED", "STATUS_UPDATE"]

    listed = await client.get(f"{API}/incidents", params={"status": "ACKNOWLEDGED"})
    assert [i["id"] for i in listed.json()] == [incident_id]


async def test_invalid_incident_body(client, incident_payload):
    resp = await client.post(f"{API}/incidents", json=incident_payload(title="short"))
    assert resp.status_code == 422


async def test_unknown_incident(client):
    resp = await client.get(f"{API}/incidents/INC-P1-NOPE-0000")
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFoundError"


async def test_playbook_route(client):
    resp = await client.get(f"{API}/incidents/playbooks/SECURITY_BREACH")
    assert resp.status_code == 200
    assert resp.json()["id"] == "security-breach-response"


async def test_metrics_route(client, event_payload):
    await client.post(f"{API}/events/ingest", json=_jsonable(event_payload(-60)))
    resp = await client.get(f"{API}/metrics")
    assert resp.status_code == 200
    body = resp.json()
    assert body["total_events"] == 1
    assert body["events_by_type"] == {"AUTHENTICATION": 1}
    assert body["system_health"]["processed_events"] == 1
