"""
Main FastAPI application for the mining slots engine.
Configures the API server with routes, middleware and the engine lifecycle.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from mining_engine.api.middleware import add_middleware
from mining_engine.api.routes import earnings, slots
from mining_engine.api.schemas.common import APIResponse, HealthCheckResponse
from mining_engine.core.config import settings
from mining_engine.core.logging import setup_logging
from mining_engine.engine import MiningEngine
from mining_engine.websocket.websocket_handler import websocket_router


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting mining engine API server", environment=settings.environment)

    owned = getattr(app.state, "engine", None) is None
    if owned:
        engine = await MiningEngine.create(settings, create_tables=settings.is_development)
        app.state.engine = engine
        app.state.connection_manager = engine.connection_manager
    engine: MiningEngine = app.state.engine

    await engine.start()

    yield

    logger.info("Shutting down mining engine API server")
    try:
        if owned:
            await engine.close()
        else:
            await engine.stop()
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))


def create_app(engine: Optional[MiningEngine] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    A prebuilt ``engine`` is used as is and left open on shutdown; otherwise
    one is created from settings at startup and closed on shutdown.
    """
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Time-proportional earnings on mining slots: accrual, claims, expiration and live updates.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    if engine is not None:
        app.state.engine = engine
        app.state.connection_manager = engine.connection_manager

    add_middleware(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server health and service status"
    )
    async def health_check():
        current: Optional[MiningEngine] = getattr(app.state, "engine", None)
        if current is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "starting", "services": {"api": "healthy"}},
            )

        report = await current.health_check()
        services = {
            "api": "healthy",
            "database": report["database"],
            "scheduler": "healthy" if all(p["healthy"] for p in report["processors"].values()) else "unhealthy",
        }
        if "cache" in report:
            services["cache"] = "healthy"
        if "redis" in report:
            services["redis"] = report["redis"].get("status", "unknown")

        response = HealthCheckResponse(
            status="healthy" if report["healthy"] else "unhealthy",
            version=settings.app_version,
            services=services,
        )
        if report["database"] != "healthy":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=response.model_dump(mode="json"),
            )
        return response

    @app.get(
        "/",
        response_model=APIResponse,
        tags=["System"],
        summary="API Information",
    )
    async def root():
        return APIResponse(message=f"{settings.app_name} v{settings.app_version} - Ready to serve!")

    app.include_router(earnings.router, prefix=f"{settings.api_v1_prefix}/earnings", tags=["Earnings"])
    app.include_router(slots.router, prefix=f"{settings.api_v1_prefix}/slots", tags=["Slots"])
    app.include_router(websocket_router)

    logger.info("FastAPI application created", version=settings.app_version)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mining_engine.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_config=None,
    )
