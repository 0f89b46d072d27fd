"""
FastAPI dependencies resolving the application's governance components.

Routes never reach for module globals: everything comes from the
GovernanceContext stored on ``app.state`` by the lifespan handler, so
tests can swap any piece with ``app.dependency_overrides``.
"""

from fastapi import Depends, HTTPException, Request

from techanal_engine.interfaces.analysis_client import AnalysisClient
from techanal_engine.runtime.context import GovernanceContext
from techanal_engine.runtime.live_events import LiveEventBus
from techanal_engine.runtime.response_cache import ResponseCache
from techanal_engine.services.analysis import AnalysisService


def get_governance(request: Request) -> GovernanceContext:
    governance: GovernanceContext | None = getattr(request.app.state, "governance", None)
    if governance is None:
        raise HTTPException(status_code=503, detail="Engine is not initialized")
    return governance


def get_event_bus(governance: GovernanceContext = Depends(get_governance)) -> LiveEventBus:
    return governance.event_bus


def get_response_cache(governance: GovernanceContext = Depends(get_governance)) -> ResponseCache:
    return governance.cache


def get_analysis_client(request: Request) -> AnalysisClient:
    """
    The configured analysis provider.

    Raises:
        HTTPException: 503 when no provider is configured
    """
    client: AnalysisClient | None = getattr(request.app.state, "analysis_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="Analysis provider not configured")
    return client


def get_analysis_service(
    client: AnalysisClient = Depends(get_analysis_client),
    governance: GovernanceContext = Depends(get_governance),
) -> AnalysisService:
    return AnalysisService(client, governance.cache, event_bus=governance.event_bus)
