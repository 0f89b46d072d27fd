"""
Performance routes: response cache management and request metrics.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError

from techanal_engine.api.deps import get_response_cache
from techanal_engine.logging import get_logger
from techanal_engine.runtime.response_cache import ResponseCache

router = APIRouter(prefix="/api/performance", tags=["Performance"])
logger = get_logger(__name__)


# =============================================================================
# Request/Response Models
# =============================================================================


class PerformanceMetricsResponse(BaseModel):
    success: bool = True
    timestamp: str
    metrics: dict[str, Any]
    cache: dict[str, Any]


class CacheStatsResponse(BaseModel):
    success: bool = True
    cache: dict[str, Any]
    timestamp: str


class ActionResponse(BaseModel):
    """Acknowledgement of a management action."""

    success: bool = True
    message: str
    timestamp: str
    config: dict[str, Any] | None = None


class CacheConfigUpdate(BaseModel):
    """Partial cache configuration; omitted fields keep their value."""

    enabled: bool | None = None
    ttl_seconds: float | None = Field(default=None, description="Entry lifetime in seconds")
    max_size: int | None = None
    cleanup_interval_seconds: float | None = None
    eviction_fraction: float | None = None


class PerformanceHealthResponse(BaseModel):
    success: bool = True
    status: str
    timestamp: str
    components: dict[str, Any] = Field(default_factory=dict)


def _now() -> str:
    return datetime.now(UTC).isoformat()


# =============================================================================
# Routes
# =============================================================================


@router.get("/metrics", response_model=PerformanceMetricsResponse)
async def get_performance_metrics(cache: ResponseCache = Depends(get_response_cache)) -> PerformanceMetricsResponse:
    """Get request metrics and cache occupancy."""
    return PerformanceMetricsResponse(
        timestamp=_now(),
        metrics=cache.get_metrics(),
        cache=cache.get_cache_stats(),
    )


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats(cache: ResponseCache = Depends(get_response_cache)) -> CacheStatsResponse:
    return CacheStatsResponse(cache=cache.get_cache_stats(), timestamp=_now())


@router.post("/cache/clear", response_model=ActionResponse)
async def clear_cache(cache: ResponseCache = Depends(get_response_cache)) -> ActionResponse:
    """Drop every cached analysis."""
    cache.clear_cache()
    return ActionResponse(message="Cache cleared successfully", timestamp=_now())


@router.post("/cache/config", response_model=ActionResponse)
async def update_cache_config(
    update: CacheConfigUpdate,
    cache: ResponseCache = Depends(get_response_cache),
) -> ActionResponse:
    """
    Update cache configuration.

    Invalid values are rejected with 422 and leave the configuration as is.
    """
    try:
        config = cache.update_config(**update.model_dump(exclude_none=True))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid cache configuration: {e.errors()}") from e
    return ActionResponse(
        message="Cache configuration updated",
        timestamp=_now(),
        config=config.model_dump(),
    )


@router.get("/health", response_model=PerformanceHealthResponse)
async def performance_health(cache: ResponseCache = Depends(get_response_cache)) -> PerformanceHealthResponse:
    """
    Advisory health from memory usage and error rate.

    Always answers 200; the status field carries the verdict.
    """
    cache_health = cache.health_check()
    return PerformanceHealthResponse(
        status=cache_health["status"],
        timestamp=_now(),
        components={"cache": cache_health},
    )


@router.post("/metrics/reset", response_model=ActionResponse)
async def reset_metrics(cache: ResponseCache = Depends(get_response_cache)) -> ActionResponse:
    cache.reset_metrics()
    logger.info("Performance metrics reset")
    return ActionResponse(message="Performance metrics reset successfully", timestamp=_now())
