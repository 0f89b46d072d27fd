"""
Per-key fixed-window rate limiting.

Each key gets a counter that resets at fixed window boundaries. This is a
fixed-window limiter, not a sliding log or token bucket: a client can get
up to ``2 * max_requests`` requests through in quick succession by
straddling a window boundary. That burst allowance is accepted.
"""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from techanal_engine.logging import get_logger
from techanal_engine.runtime.periodic import PeriodicTask

if TYPE_CHECKING:
    from techanal_engine.runtime.live_events import LiveEventBus

logger = get_logger(__name__)

# Shared key used when the key generator fails
FALLBACK_KEY = "anonymous"

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR


def default_key_generator(request: Any) -> str:
    """
    Derive a rate limit key from a request.

    Uses the first X-Forwarded-For hop, then X-Real-IP, then the socket
    peer address. Authenticated requests get ``:<user_id>`` appended so
    users behind one address do not share a bucket.
    """
    headers = getattr(request, "headers", None) or {}
    ip = None
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    if not ip:
        ip = (headers.get("x-real-ip") or "").strip()
    if not ip:
        client = getattr(request, "client", None)
        ip = client.host if client is not None and client.host else "unknown"

    state = getattr(request, "state", None)
    user_id = getattr(state, "user_id", None) if state is not None else None
    if user_id:
        return f"{ip}:{user_id}"
    return ip


def peer_key_generator(request: Any) -> str:
    """Key on the socket peer only, ignoring proxy headers."""
    client = getattr(request, "client", None)
    ip = client.host if client is not None and client.host else "unknown"
    state = getattr(request, "state", None)
    user_id = getattr(state, "user_id", None) if state is not None else None
    return f"{ip}:{user_id}" if user_id else ip


class RateLimitConfig(BaseModel):
    """
    Rate limiter configuration.

    Validated on construction: a non-positive window or limit raises
    ``pydantic.ValidationError``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    window_seconds: float = Field(gt=0, description="Fixed window length in seconds")
    max_requests: int = Field(ge=1, description="Requests allowed per window")
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False
    key_generator: Callable[[Any], str] = default_key_generator
    on_limit_reached: Callable[[str, float], None] | None = None
    # Builds the HTTP response for a denied request: (request, decision) -> Response
    handler: Callable[..., Any] | None = None


@dataclass
class RateLimitEntry:
    """Counter state for one key within its current window."""

    key: str
    count: int
    window_reset_at: float

    def expired(self, now: float) -> bool:
        return now > self.window_reset_at


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""

    key: str
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: float

    def headers(self) -> dict[str, str]:
        """Rate limit response headers; Retry-After only on denial."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    @property
    def retry_after_seconds(self) -> int:
        """Retry hint rounded up to whole seconds."""
        return max(0, math.ceil(self.retry_after))


class RateLimiter:
    """
    Fixed-window rate limiter keyed by caller identity.

    ``check`` never raises: a failing ``on_limit_reached`` callback is
    logged and ignored. Expired windows are treated as absent on access;
    the periodic sweep only bounds memory.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        name: str = "api",
        clock: Callable[[], float] = time.time,
        event_bus: "LiveEventBus | None" = None,
        cleanup_interval_s: float = 60.0,
        **options: Any,
    ):
        """
        Initialize rate limiter.

        Args:
            config: Full configuration; alternatively pass its fields as
                keyword options (window_seconds=..., max_requests=...)
            name: Name for logging and diagnostics
            clock: Time source returning epoch seconds
            event_bus: Optional bus receiving throttle events
            cleanup_interval_s: Interval of the expired-entry sweep
        """
        if config is None:
            config = RateLimitConfig(**options)
        elif options:
            config = RateLimitConfig(**{**config.model_dump(), **options})

        self._config = config
        self._name = name
        self._clock = clock
        self._event_bus = event_bus
        self._store: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicTask(f"rate-limit-sweep:{name}", cleanup_interval_s, self.cleanup)

        # Stats
        self._total_requests = 0
        self._rejected_requests = 0

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._name

    # ------------------------------------------------------------------
    # Presets
    # ------------------------------------------------------------------

    @classmethod
    def strict(cls, **kwargs: Any) -> "RateLimiter":
        """100 requests per 15 minutes."""
        return cls(window_seconds=15 * MINUTE, max_requests=100, **kwargs)

    @classmethod
    def moderate(cls, **kwargs: Any) -> "RateLimiter":
        """1000 requests per 15 minutes."""
        return cls(window_seconds=15 * MINUTE, max_requests=1000, **kwargs)

    @classmethod
    def lenient(cls, **kwargs: Any) -> "RateLimiter":
        """10000 requests per 15 minutes."""
        return cls(window_seconds=15 * MINUTE, max_requests=10000, **kwargs)

    @classmethod
    def per_minute(cls, max_requests: int, **kwargs: Any) -> "RateLimiter":
        return cls(window_seconds=MINUTE, max_requests=max_requests, **kwargs)

    @classmethod
    def per_hour(cls, max_requests: int, **kwargs: Any) -> "RateLimiter":
        return cls(window_seconds=HOUR, max_requests=max_requests, **kwargs)

    @classmethod
    def per_day(cls, max_requests: int, **kwargs: Any) -> "RateLimiter":
        return cls(window_seconds=DAY, max_requests=max_requests, **kwargs)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def resolve_key(self, context: Any) -> str:
        """
        Run the configured key generator for a request context.

        Fails open: if the generator raises or returns an empty key, the
        request is counted against the shared FALLBACK_KEY instead of being
        rejected.
        """
        try:
            key = self._config.key_generator(context)
        except Exception as e:
            logger.warning("%s rate limit key generator failed, using shared key: %s", self._name, e)
            return FALLBACK_KEY
        if not key:
            return FALLBACK_KEY
        return str(key)

    def check(self, key: str) -> RateLimitDecision:
        """
        Reserve one request for ``key`` if the window allows it.

        Denied requests do not increment the counter.
        """
        limit = self._config.max_requests
        now = self._clock()

        with self._lock:
            self._total_requests += 1
            entry = self._store.get(key)
            if entry is None or entry.expired(now):
                entry = RateLimitEntry(key=key, count=0, window_reset_at=now + self._config.window_seconds)
                self._store[key] = entry

            if entry.count + 1 > limit:
                self._rejected_requests += 1
                decision = RateLimitDecision(
                    key=key,
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=entry.window_reset_at,
                    retry_after=max(0.0, entry.window_reset_at - now),
                )
            else:
                entry.count += 1
                decision = RateLimitDecision(
                    key=key,
                    allowed=True,
                    limit=limit,
                    remaining=limit - entry.count,
                    reset_at=entry.window_reset_at,
                    retry_after=0.0,
                )

        if not decision.allowed:
            self._limit_reached(decision)
        return decision

    def _limit_reached(self, decision: RateLimitDecision) -> None:
        logger.warning(
            "%s rate limit exceeded for %s (retry after %.2fs)",
            self._name,
            decision.key,
            decision.retry_after,
        )
        if self._event_bus is not None:
            try:
                self._event_bus.publish(
                    level="warning",
                    message=f"Rate limit exceeded ({self._name})",
                    source="rate-limiter",
                    details={
                        "limiter": self._name,
                        "key": decision.key,
                        "limit": decision.limit,
                        "retry_after_s": round(decision.retry_after, 3),
                    },
                )
            except Exception:
                logger.debug("Failed to publish rate limit event", exc_info=True)
        callback = self._config.on_limit_reached
        if callback is not None:
            try:
                callback(decision.key, decision.retry_after)
            except Exception:
                logger.warning("%s on_limit_reached callback failed", self._name, exc_info=True)

    def record_outcome(self, decision: RateLimitDecision, success: bool) -> bool:
        """
        Report the outcome of an admitted request.

        With ``skip_successful_requests`` / ``skip_failed_requests`` set, the
        matching outcome gives its reservation back. Only reverts while the
        window that admitted the request is still current.

        Returns:
            True if the counter was decremented
        """
        if not decision.allowed:
            return False
        skip = (success and self._config.skip_successful_requests) or (
            not success and self._config.skip_failed_requests
        )
        if not skip:
            return False

        with self._lock:
            entry = self._store.get(decision.key)
            if entry is None or entry.window_reset_at != decision.reset_at:
                return False
            entry.count = max(0, entry.count - 1)
        return True

    def cleanup(self) -> int:
        """
        Remove entries whose window has elapsed.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._store.items() if entry.expired(now)]
            for key in expired:
                del self._store[key]
        if expired:
            logger.debug("%s rate limiter swept %d expired keys", self._name, len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_key_info(self, key: str) -> RateLimitDecision | None:
        """Current window state for a key, without reserving a request."""
        now = self._clock()
        limit = self._config.max_requests
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                return RateLimitDecision(
                    key=key,
                    allowed=True,
                    limit=limit,
                    remaining=limit,
                    reset_at=now + self._config.window_seconds,
                    retry_after=0.0,
                )
            remaining = max(0, limit - entry.count)
            return RateLimitDecision(
                key=key,
                allowed=remaining > 0,
                limit=limit,
                remaining=remaining,
                reset_at=entry.window_reset_at,
                retry_after=max(0.0, entry.window_reset_at - now) if remaining == 0 else 0.0,
            )

    @property
    def store_size(self) -> int:
        with self._lock:
            return len(self._store)

    def store_keys(self) -> list[str]:
        with self._lock:
            return list(self._store.keys())

    def clear_store(self) -> None:
        with self._lock:
            self._store.clear()

    def get_stats(self) -> dict[str, Any]:
        """Get rate limiter statistics."""
        with self._lock:
            total = self._total_requests
            rejected = self._rejected_requests
            active = len(self._store)
        return {
            "name": self._name,
            "window_seconds": self._config.window_seconds,
            "max_requests": self._config.max_requests,
            "total_requests": total,
            "rejected_requests": rejected,
            "rejection_rate": rejected / total * 100 if total > 0 else 0,
            "active_keys": active,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic sweep (requires a running event loop)."""
        self._sweeper.start()

    async def shutdown(self) -> None:
        """Stop the periodic sweep."""
        await self._sweeper.stop()

