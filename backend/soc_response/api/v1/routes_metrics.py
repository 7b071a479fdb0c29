# backend/soc_response/api/v1/routes_metrics.py

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends

from soc_response.api.deps import get_engine
from soc_response.schemas.events import to_naive_utc
from soc_response.schemas.metrics import SecurityMetrics
from soc_response.services.engine import SecurityEngine

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_model=SecurityMetrics)
def get_security_metrics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    engine: SecurityEngine = Depends(get_engine),
) -> SecurityMetrics:
    """Event, alert and incident rollup; defaults to the last 24 hours."""
    return engine.get_security_metrics(to_naive_utc(start), to_naive_utc(end))
