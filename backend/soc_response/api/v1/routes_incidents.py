# backend/soc_response/api/v1/routes_incidents.py

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from soc_response.api.deps import get_engine
from soc_response.schemas.events import to_naive_utc
from soc_response.schemas.incidents import (
    Incident,
    IncidentAction,
    IncidentActionRequest,
    IncidentCategory,
    IncidentCommunication,
    IncidentCommunicationCreate,
    IncidentCreate,
    IncidentEvidence,
    IncidentEvidenceCreate,
    IncidentFilters,
    IncidentSeverity,
    IncidentStatus,
    IncidentUpdate,
)
from soc_response.services.engine import SecurityEngine
from soc_response.services.incidents.incident_config import Playbook

router = APIRouter(prefix="/incidents", tags=["incidents"])


@router.post("", response_model=Incident, status_code=status.HTTP_201_CREATED)
async def create_incident(
    payload: IncidentCreate,
    engine: SecurityEngine = Depends(get_engine),
) -> Incident:
    """
    Declare an incident: assigns a commander, queues the category's
    automated actions, notifies stakeholders and arms escalation.
    """
    return await engine.create_incident(payload)


@router.get("", response_model=List[Incident])
def list_incidents(
    status_: Optional[IncidentStatus] = Query(None, alias="status"),
    severity: Optional[IncidentSeverity] = None,
    category: Optional[IncidentCategory] = None,
    assigned_to: Optional[str] = None,
    site_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    engine: SecurityEngine = Depends(get_engine),
) -> List[Incident]:
    filters = IncidentFilters(
        status=status_,
        severity=severity,
        category=category,
        assigned_to=assigned_to,
        site_id=site_id,
        start=to_naive_utc(start),
        end=to_naive_utc(end),
        limit=limit,
    )
    return engine.list_incidents(filters)


@router.get("/playbooks/{category}", response_model=Playbook)
def get_playbook(category: IncidentCategory, engine: SecurityEngine = Depends(get_engine)) -> Playbook:
    return engine.incidents.get_playbook(category)


@router.get("/{incident_id}", response_model=Incident)
def get_incident(incident_id: str, engine: SecurityEngine = Depends(get_engine)) -> Incident:
    return engine.get_incident(incident_id)


@router.patch("/{incident_id}", response_model=Incident)
async def update_incident(
    incident_id: str,
    payload: IncidentUpdate,
    updated_by: str = Query("SYSTEM", min_length=1),
    engine: SecurityEngine = Depends(get_engine),
) -> Incident:
    return await engine.update_incident(incident_id, payload, updated_by)


@router.post("/{incident_id}/escalate", response_model=Incident)
async def escalate_incident(
    incident_id: str,
    reason: Optional[str] = Body(None, embed=True),
    actor: str = Query("SYSTEM", min_length=1),
    engine: SecurityEngine = Depends(get_engine),
) -> Incident:
    return await engine.escalate_incident(incident_id, reason, actor)


@router.post("/{incident_id}/actions", response_model=IncidentAction)
async def execute_incident_action(
    incident_id: str,
    payload: IncidentActionRequest,
    actor: str = Query("SYSTEM", min_length=1),
    engine: SecurityEngine = Depends(get_engine),
) -> IncidentAction:
    """
    Request an action by type, or pass `action_id` to confirm a pending
    confirmation-gated action. Completed actions are returned unchanged.
    """
    return await engine.execute_incident_action(incident_id, payload, actor)


@router.post(
    "/{incident_id}/communications",
    response_model=IncidentCommunication,
    status_code=status.HTTP_201_CREATED,
)
async def send_incident_communication(
    incident_id: str,
    payload: IncidentCommunicationCreate,
    engine: SecurityEngine = Depends(get_engine),
) -> IncidentCommunication:
    return await engine.send_incident_communication(incident_id, payload)


@router.post(
    "/{incident_id}/evidence",
    response_model=IncidentEvidence,
    status_code=status.HTTP_201_CREATED,
)
async def add_evidence(
    incident_id: str,
    payload: IncidentEvidenceCreate,
    engine: SecurityEngine = Depends(get_engine),
) -> IncidentEvidence:
    return await engine.add_evidence(incident_id, payload)
