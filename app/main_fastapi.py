from fastapi import FastAPI
from fastapi.responses import Response

from app.routers.health import router as health_router
from app.routers.sessions import router as sessions_router
from app.observability.metrics import PrometheusMiddleware, router as metrics_router
from app.middleware.error_handler import ErrorHandlerMiddleware, setup_exception_handlers
from app.db import base as db
from app import config


def create_app(enable_tracing: bool | None = None) -> FastAPI:
    """Build the API application.

    Run with: uvicorn app.main_fastapi:create_app --factory
    """
    app = FastAPI(
        title="Session Sync API",
        description="Shared session state with versioned merges and heartbeat presence",
        version="1.0.0",
    )

    # Middleware order matters: last added = outermost
    app.add_middleware(PrometheusMiddleware)
    # Error handler outermost so it sees everything
    app.add_middleware(ErrorHandlerMiddleware, debug=config.DEBUG)

    setup_exception_handlers(app)

    app.include_router(health_router)  # Health checks at root level
    app.include_router(metrics_router)
    app.include_router(sessions_router, prefix="/api")

    @app.get("/favicon.ico", include_in_schema=False)
    async def favicon():
        """Return empty response for favicon to prevent 404 errors."""
        return Response(status_code=204)

    if enable_tracing is None:
        enable_tracing = config.settings.OTEL_ENABLED
    if enable_tracing:
        from app.utils.telemetry import init_otel
        init_otel(app=app, engine=db.get_engine(), service_name=config.SERVICE_NAME, debug=config.DEBUG)

    return app
