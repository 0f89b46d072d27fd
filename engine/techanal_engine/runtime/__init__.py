"""
Runtime utilities for the TechAnal engine.

Provides:
- Live event bus with bounded replay buffer
- Server-sent events stream over the bus
- Fixed-window rate limiter
- Fingerprint-addressed response cache with metrics
- Cancelable periodic tasks
- Governance context tying them together
"""

from techanal_engine.runtime.context import GovernanceContext, RateLimitPolicy
from techanal_engine.runtime.live_events import (
    LiveEvent,
    LiveEventBus,
    LiveLogLevel,
    normalize_event,
)
from techanal_engine.runtime.periodic import PeriodicTask
from techanal_engine.runtime.rate_limiter import (
    RateLimitConfig,
    RateLimitDecision,
    RateLimiter,
    default_key_generator,
)
from techanal_engine.runtime.response_cache import (
    AnalysisRequest,
    CacheConfig,
    ResponseCache,
    compute_fingerprint,
)
from techanal_engine.runtime.sse import LiveEventStream, LiveEventStreamResponse, StreamState

__all__ = [
    # Context
    "GovernanceContext",
    "RateLimitPolicy",
    # Live events
    "LiveEvent",
    "LiveEventBus",
    "LiveLogLevel",
    "normalize_event",
    "LiveEventStream",
    "LiveEventStreamResponse",
    "StreamState",
    # Rate limiting
    "RateLimitConfig",
    "RateLimitDecision",
    "RateLimiter",
    "default_key_generator",
    # Cache
    "AnalysisRequest",
    "CacheConfig",
    "ResponseCache",
    "compute_fingerprint",
    # Timers
    "PeriodicTask",
]
