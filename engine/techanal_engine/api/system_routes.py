"""
System routes: live logs and governance state.

Provides:
- Recent live events and the live event stream (SSE)
- Log ingestion from external clients
- Rate limiter usage
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from techanal_engine.api.deps import get_event_bus, get_governance
from techanal_engine.logging import get_logger
from techanal_engine.runtime.context import GovernanceContext
from techanal_engine.runtime.live_events import LiveEventBus, LiveLogLevel
from techanal_engine.runtime.sse import LiveEventStream, LiveEventStreamResponse

router = APIRouter(prefix="/api/system", tags=["System"])
logs_router = APIRouter(prefix="/api/logs", tags=["System"])
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class LogsResponse(BaseModel):
    """Recent live events, oldest first."""

    success: bool = True
    timestamp: str
    logs: list[dict[str, Any]] = Field(default_factory=list)


class IngestResponse(BaseModel):
    success: bool = True
    id: str


class RateLimitStatsResponse(BaseModel):
    """Per-limiter usage."""

    enabled: bool
    limiters: dict[str, dict[str, Any]] = Field(default_factory=dict)
    timestamp: str


# =============================================================================
# Routes
# =============================================================================


@router.get("/logs", response_model=LogsResponse)
async def get_logs(
    limit: int | None = Query(default=None, ge=1, le=1000),
    bus: LiveEventBus = Depends(get_event_bus),
) -> LogsResponse:
    """
    Get buffered live events.

    Args:
        limit: Return only the most recent N events
    """
    return LogsResponse(
        timestamp=datetime.now(UTC).isoformat(),
        logs=[event.to_dict() for event in bus.get_recent_events(limit)],
    )


@router.get("/logs/stream")
async def stream_logs(governance: GovernanceContext = Depends(get_governance)) -> LiveEventStreamResponse:
    """
    Stream live events as server-sent events.

    Replays the buffered backlog first, then forwards new events as they
    are published. Comment heartbeats keep idle connections open.
    """
    stream = LiveEventStream(
        governance.event_bus,
        heartbeat_interval_s=governance.sse_heartbeat_s,
        max_pending=governance.sse_max_pending,
    )
    return LiveEventStreamResponse(stream)


@router.get("/rate-limits", response_model=RateLimitStatsResponse)
async def get_rate_limits(governance: GovernanceContext = Depends(get_governance)) -> RateLimitStatsResponse:
    """Get usage of every rate limiter."""
    return RateLimitStatsResponse(
        enabled=governance.rate_limit_enabled,
        limiters={name: limiter.get_stats() for name, limiter in governance.limiters.items()},
        timestamp=datetime.now(UTC).isoformat(),
    )


@logs_router.post("/ingest", response_model=IngestResponse)
async def ingest_log(
    body: dict[str, Any] = Body(default_factory=dict),
    bus: LiveEventBus = Depends(get_event_bus),
) -> IngestResponse:
    """
    Publish an external log line onto the live event bus.

    Accepts ``level`` or ``severity``, ``message`` or ``msg``, ``source`` or
    ``type`` and an optional ``timestamp``. Unknown levels become info.
    """
    event = bus.publish(
        level=LiveLogLevel.coerce(body.get("level") or body.get("severity")),
        message=body.get("message", body.get("msg", "")),
        source=str(body.get("source") or body.get("type") or "ingest"),
        timestamp=body.get("timestamp"),
        details=body,
    )
    logger.debug("Ingested %s log line from %s", event.level.value, event.source)
    return IngestResponse(id=event.id)
