from fastapi import APIRouter, Depends

from soc_response.api.deps import get_engine
from soc_response.core.config import settings
from soc_response.services.engine import SecurityEngine
from soc_response.services.metrics.metrics_service import health_status

router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check(engine: SecurityEngine = Depends(get_engine)) -> dict:
    """
    Liveness / readiness check with the pipeline failure-rate verdict.
    """
    pipeline = engine.pipeline
    return {
        "status": health_status(pipeline.processed_events, pipeline.failed_events),
        "service": settings.APP_NAME,
        "environment": settings.ENVIRONMENT,
        "processed_events": pipeline.processed_events,
        "failed_events": pipeline.failed_events,
        "open_incidents": len(engine.incidents.open_incidents),
    }
