# backend/soc_response/api/v1/routes_events.py

from typing import List

from fastapi import APIRouter, Depends, Query, status

from soc_response.api.deps import get_engine
from soc_response.schemas.events import (
    EventIngestResponse,
    SecurityEvent,
    SecurityEventIn,
)
from soc_response.services.engine import SecurityEngine

router = APIRouter(
    prefix="/events",
    tags=["events", "siem"],
)


@router.post(
    "/ingest",
    response_model=EventIngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a security event",
)
async def ingest_event(
    payload: SecurityEventIn,
    engine: SecurityEngine = Depends(get_engine),
) -> EventIngestResponse:
    """
    Score, match against live indicators, correlate and evaluate alert rules.
    Detections are returned inline and published for incident handling.
    """
    return await engine.ingest_event(payload)


@router.get("/latest", response_model=List[SecurityEvent], summary="List latest ingested events")
def list_latest_events(
    limit: int = Query(50, ge=1, le=500),
    engine: SecurityEngine = Depends(get_engine),
) -> List[SecurityEvent]:
    return engine.list_events(limit=limit)


@router.get("/{event_id}", response_model=SecurityEvent, summary="Get a single ingested event")
def get_event(event_id: str, engine: SecurityEngine = Depends(get_engine)) -> SecurityEvent:
    return engine.get_event(event_id)
