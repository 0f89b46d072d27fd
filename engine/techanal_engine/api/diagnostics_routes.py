"""
Diagnostics API routes.

Provides governance health and usage:
- Process memory and cache occupancy
- Rate limiter usage
- Live event bus state
"""

from datetime import UTC, datetime
from typing import Any

import psutil
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from techanal_engine.api.deps import get_governance
from techanal_engine.runtime.context import GovernanceContext

router = APIRouter(prefix="/diagnostics", tags=["Diagnostics"])


# =============================================================================
# Response Models
# =============================================================================


class MemoryDiagnostics(BaseModel):
    """Memory usage diagnostics."""

    rss_mb: float = 0.0
    cache: dict[str, Any] = Field(default_factory=dict)
    estimated_cache_mb: float = 0.0
    timestamp: str


class RateLimiterDiagnostics(BaseModel):
    """Rate limiter diagnostics."""

    enabled: bool = True
    limiters: dict[str, dict[str, Any]] = Field(default_factory=dict)
    timestamp: str


class LiveEventsDiagnostics(BaseModel):
    """Live event bus diagnostics."""

    subscribers: int = 0
    buffered_events: int = 0
    max_buffer: int = 0
    keepalive_running: bool = False
    stats: dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class FullDiagnostics(BaseModel):
    """Complete diagnostics snapshot."""

    memory: MemoryDiagnostics
    rate_limiters: RateLimiterDiagnostics
    live_events: LiveEventsDiagnostics
    timestamp: str


# =============================================================================
# Routes
# =============================================================================


@router.get("/memory", response_model=MemoryDiagnostics)
async def get_memory_diagnostics(
    governance: GovernanceContext = Depends(get_governance),
) -> MemoryDiagnostics:
    """
    Get memory usage diagnostics.

    Returns process RSS and the estimated size of cached results.
    """
    cache_stats = governance.cache.get_cache_stats()
    return MemoryDiagnostics(
        rss_mb=round(psutil.Process().memory_info().rss / 1024 / 1024, 1),
        cache=cache_stats,
        estimated_cache_mb=round(cache_stats["estimated_bytes"] / 1024 / 1024, 3),
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/rate-limiters", response_model=RateLimiterDiagnostics)
async def get_rate_limiter_diagnostics(
    governance: GovernanceContext = Depends(get_governance),
) -> RateLimiterDiagnostics:
    """Get rate limiter usage stats."""
    return RateLimiterDiagnostics(
        enabled=governance.rate_limit_enabled,
        limiters={name: limiter.get_stats() for name, limiter in governance.limiters.items()},
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/live-events", response_model=LiveEventsDiagnostics)
async def get_live_events_diagnostics(
    governance: GovernanceContext = Depends(get_governance),
) -> LiveEventsDiagnostics:
    bus = governance.event_bus
    stats = bus.get_stats()
    return LiveEventsDiagnostics(
        subscribers=bus.subscriber_count,
        buffered_events=stats["buffered"],
        max_buffer=bus.max_buffer,
        keepalive_running=bus.keepalive_running,
        stats=stats,
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/all", response_model=FullDiagnostics)
async def get_all_diagnostics(
    governance: GovernanceContext = Depends(get_governance),
) -> FullDiagnostics:
    """
    Get complete diagnostics snapshot.

    Combines memory, rate limiter and live event diagnostics.
    """
    return FullDiagnostics(
        memory=await get_memory_diagnostics(governance),
        rate_limiters=await get_rate_limiter_diagnostics(governance),
        live_events=await get_live_events_diagnostics(governance),
        timestamp=datetime.now(UTC).isoformat(),
    )
