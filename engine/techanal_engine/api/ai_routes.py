"""
AI chart analysis routes.

Requests are rate limited by the /api/ai policy before they arrive here,
then served from the response cache when an identical analysis exists.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from techanal_engine.api.deps import get_analysis_service
from techanal_engine.runtime.response_cache import AnalysisRequest
from techanal_engine.services.analysis import AnalysisError, AnalysisService

router = APIRouter(prefix="/api/ai", tags=["AI Analysis"])


# =============================================================================
# Request/Response Models
# =============================================================================


class AnalyzeResponse(BaseModel):
    """Analysis result with cache provenance."""

    success: bool = True
    cached: bool
    fingerprint: str
    duration_ms: float
    result: Any
    timestamp: str


class ProviderHealthResponse(BaseModel):
    """Analysis provider health."""

    healthy: bool
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


# =============================================================================
# Routes
# =============================================================================


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_chart(
    request: AnalysisRequest,
    service: AnalysisService = Depends(get_analysis_service),
) -> AnalyzeResponse:
    """
    Analyze a chart image.

    Returns 502 if the analysis provider fails and 503 if none is configured.
    """
    try:
        outcome = await service.analyze(request)
    except AnalysisError as e:
        raise HTTPException(status_code=502, detail=f"Analysis provider failed: {e}") from e

    return AnalyzeResponse(
        cached=outcome.cached,
        fingerprint=outcome.fingerprint,
        duration_ms=round(outcome.duration_ms, 2),
        result=outcome.result,
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/health", response_model=ProviderHealthResponse)
async def provider_health(
    service: AnalysisService = Depends(get_analysis_service),
) -> ProviderHealthResponse:
    """Check the analysis provider."""
    return ProviderHealthResponse(healthy=await service.provider_healthy())
