# backend/soc_response/api/v1/routes_indicators.py

from typing import List

from fastapi import APIRouter, Depends, status

from soc_response.api.deps import get_engine
from soc_response.schemas.indicators import ThreatIndicator, ThreatIndicatorCreate
from soc_response.services.engine import SecurityEngine

router = APIRouter(prefix="/indicators", tags=["threat-intel"])


@router.post("", response_model=ThreatIndicator, status_code=status.HTTP_201_CREATED)
def create_indicator(
    payload: ThreatIndicatorCreate,
    engine: SecurityEngine = Depends(get_engine),
) -> ThreatIndicator:
    """Register an IOC; it is matched against every event ingested afterwards."""
    return engine.create_indicator(payload)


@router.get("", response_model=List[ThreatIndicator])
def list_indicators(engine: SecurityEngine = Depends(get_engine)) -> List[ThreatIndicator]:
    return engine.list_indicators()
