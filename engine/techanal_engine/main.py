"""
TechAnal Engine - FastAPI Application

Main entry point for the request-governance service.
Rate limits API traffic, caches chart analyses and streams live server
events to the monitoring console.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from techanal_engine import __version__
from techanal_engine.api.ai_routes import router as ai_router
from techanal_engine.api.diagnostics_routes import router as diagnostics_router
from techanal_engine.api.performance_routes import router as performance_router
from techanal_engine.api.rate_limit import RateLimitMiddleware
from techanal_engine.api.request_events import RequestEventMiddleware
from techanal_engine.api.system_routes import logs_router
from techanal_engine.api.system_routes import router as system_router
from techanal_engine.config import Settings, get_settings, get_settings_dep
from techanal_engine.interfaces.analysis_client import AnalysisClient
from techanal_engine.logging import get_logger, setup_logging
from techanal_engine.runtime.context import GovernanceContext

# Setup logging
setup_logging(level=get_settings().log_level, json_output=get_settings().log_json)
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    time: str
    uptime_seconds: float


class ApiHealthResponse(BaseModel):
    """Container health check response."""

    status: str = "ok"
    message: str = "API health"
    timestamp: str


# =============================================================================
# Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    # Startup
    logger.info("Starting TechAnal Engine v%s (%s)", __version__, settings.env.value)
    logger.info("Server: http://%s:%d", settings.host, settings.port)

    app.state.start_time = datetime.now(UTC)
    governance = GovernanceContext.from_settings(settings)
    app.state.governance = governance
    governance.start()

    governance.event_bus.publish(
        level="info",
        message=f"TechAnal Engine v{__version__} started",
        source="server",
        details={"env": settings.env.value},
    )

    yield

    # Shutdown
    logger.info("Shutting down TechAnal Engine")
    await governance.shutdown()
    app.state.governance = None


# =============================================================================
# FastAPI Application
# =============================================================================


def create_app(
    settings: Settings | None = None,
    analysis_client: AnalysisClient | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use (defaults to the environment)
        analysis_client: Analysis provider; /api/ai/analyze answers 503 without one
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="TechAnal Engine",
        description="Rate limiting, response caching and live diagnostics for chart analysis",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.analysis_client = analysis_client
    app.state.governance = None
    app.state.start_time = datetime.now(UTC)

    # Last added runs first: CORS, then request events, then rate limiting
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestEventMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )

    # Include API routers
    app.include_router(ai_router)
    app.include_router(system_router)
    app.include_router(logs_router)
    app.include_router(performance_router)
    app.include_router(diagnostics_router)

    # =========================================================================
    # REST Endpoints
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """
        Health check endpoint.

        Returns current status, version, and uptime.
        """
        now = datetime.now(UTC)
        uptime = (now - app.state.start_time).total_seconds()
        return HealthResponse(
            status="healthy",
            version=__version__,
            time=now.isoformat(),
            uptime_seconds=round(uptime, 2),
        )

    @app.get("/api/health", response_model=ApiHealthResponse)
    async def api_health() -> ApiHealthResponse:
        return ApiHealthResponse(timestamp=datetime.now(UTC).isoformat())

    @app.get("/config")
    async def config(
        current: Settings = Depends(get_settings_dep),
    ) -> dict[str, Any]:
        """
        Get current configuration (redacted).
        """
        return current.get_redacted_config()

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API info."""
        return {
            "name": "TechAnal Engine",
            "status": "ok",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Run the server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "techanal_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
