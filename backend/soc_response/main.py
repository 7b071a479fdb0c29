import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from soc_response.api.v1.routes_events import router as events_router
from soc_response.api.v1.routes_health import router as health_router
from soc_response.api.v1.routes_incidents import router as incidents_router
from soc_response.api.v1.routes_indicators import router as indicators_router
from soc_response.api.v1.routes_metrics import router as metrics_router
from soc_response.api.v1.routes_rules import router as rules_router
from soc_response.core.config import settings
from soc_response.core.errors import SocResponseError
from soc_response.db.session import build_engine, build_session_factory
from soc_response.services.engine import SecurityEngine

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(engine: Optional[SecurityEngine] = None) -> FastAPI:
    app = FastAPI(
        title="SoC Response Engine",
        version="0.1.0",
        description="Security event correlation, alert rules and incident response lifecycle.",
    )
    app.state.engine = engine

    @app.on_event("startup")
    async def on_startup() -> None:
        if app.state.engine is None:
            db_engine = build_engine()
            app.state.engine = SecurityEngine(settings, db_engine, build_session_factory(db_engine))
        await app.state.engine.start()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        if app.state.engine is not None:
            await app.state.engine.stop()

    @app.exception_handler(SocResponseError)
    async def handle_soc_error(request: Request, exc: SocResponseError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(
                {"detail": exc.message, "error": type(exc).__name__, "details": exc.details}
            ),
        )

    @app.get("/", tags=["root"])
    async def root() -> dict:
        return {
            "status": "ok",
            "service": settings.APP_NAME,
            "environment": settings.ENVIRONMENT,
        }

    # API v1
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(events_router, prefix="/api/v1")
    app.include_router(indicators_router, prefix="/api/v1")
    app.include_router(rules_router, prefix="/api/v1")
    app.include_router(incidents_router, prefix="/api/v1")
    app.include_router(metrics_router, prefix="/api/v1")
    return app


app = create_app()
