"""
Governance context: the per-application set of limiters, cache and bus.

Built once from Settings, stored on ``app.state`` and handed to routes via
FastAPI dependencies, so tests and tenants can run isolated instances.
"""

from dataclasses import dataclass, field
from typing import Any

from techanal_engine.config import Settings
from techanal_engine.logging import (
    LiveEventLogHandler,
    attach_live_event_handler,
    detach_live_event_handler,
    get_logger,
)
from techanal_engine.runtime.live_events import LiveEventBus
from techanal_engine.runtime.rate_limiter import (
    MINUTE,
    RateLimitConfig,
    RateLimiter,
    default_key_generator,
    peer_key_generator,
)
from techanal_engine.runtime.response_cache import CacheConfig, HealthThresholds, ResponseCache

logger = get_logger(__name__)


@dataclass
class RateLimitPolicy:
    """A limiter applied to every request whose path starts with ``prefix``."""

    prefix: str
    limiter: RateLimiter

    def matches(self, path: str) -> bool:
        return path == self.prefix or path.startswith(self.prefix.rstrip("/") + "/")


@dataclass
class GovernanceContext:
    """Owns the governance components and their background tasks."""

    event_bus: LiveEventBus
    cache: ResponseCache
    policies: list[RateLimitPolicy] = field(default_factory=list)
    rate_limit_enabled: bool = True
    sse_heartbeat_s: float = 15.0
    sse_max_pending: int = 1000
    live_log_level: str = "WARNING"
    _log_handler: LiveEventLogHandler | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GovernanceContext":
        """Build the standard context from application settings."""
        bus = LiveEventBus(
            max_buffer=settings.live_events_buffer_size,
            keepalive_interval_s=settings.live_events_keepalive_s,
        )
        cache = ResponseCache(
            CacheConfig(
                enabled=settings.cache_enabled,
                ttl_seconds=settings.cache_ttl_s,
                max_size=settings.cache_max_size,
                cleanup_interval_seconds=settings.cache_cleanup_interval_s,
                eviction_fraction=settings.cache_eviction_fraction,
            ),
            thresholds=HealthThresholds(
                memory_warning_mb=settings.health_memory_warning_mb,
                memory_unhealthy_mb=settings.health_memory_unhealthy_mb,
                error_rate_warning=settings.health_error_rate_warning,
                error_rate_unhealthy=settings.health_error_rate_unhealthy,
            ),
            event_bus=bus,
        )

        key_generator = default_key_generator if settings.rate_limit_trust_forwarded else peer_key_generator

        def limiter(name: str, window_s: float, max_requests: int) -> RateLimiter:
            return RateLimiter(
                RateLimitConfig(
                    window_seconds=window_s,
                    max_requests=max_requests,
                    key_generator=key_generator,
                ),
                name=name,
                event_bus=bus,
                cleanup_interval_s=settings.rate_limit_cleanup_interval_s,
            )

        # Order matters: broader prefixes are evaluated first
        policies = [
            RateLimitPolicy(
                "/api",
                limiter("global", settings.rate_limit_global_window_s, settings.rate_limit_global_max),
            ),
            RateLimitPolicy("/api/ai", limiter("ai", MINUTE, settings.rate_limit_ai_per_minute)),
            RateLimitPolicy("/api/system", limiter("system", MINUTE, settings.rate_limit_system_per_minute)),
            RateLimitPolicy("/api/auth", limiter("auth", MINUTE, settings.rate_limit_auth_per_minute)),
            RateLimitPolicy("/api/upload", limiter("upload", MINUTE, settings.rate_limit_upload_per_minute)),
        ]

        return cls(
            event_bus=bus,
            cache=cache,
            policies=policies,
            rate_limit_enabled=settings.rate_limit_enabled,
            sse_heartbeat_s=settings.sse_heartbeat_s,
            sse_max_pending=settings.sse_max_pending,
            live_log_level=settings.live_events_log_level,
        )

    @property
    def limiters(self) -> dict[str, RateLimiter]:
        return {p.limiter.name: p.limiter for p in self.policies}

    def policies_for(self, path: str) -> list[RateLimitPolicy]:
        """Policies applying to a path, broadest first."""
        return [p for p in self.policies if p.matches(path)]

    def start(self) -> None:
        """Start periodic sweeps (call from the running event loop)."""
        if self._log_handler is None:
            self._log_handler = attach_live_event_handler(self.event_bus, self.live_log_level)
        self.cache.start()
        for policy in self.policies:
            policy.limiter.start()
        logger.info(
            "Governance started: %d rate limit policies, cache %s",
            len(self.policies),
            "enabled" if self.cache.config.enabled else "disabled",
        )

    async def shutdown(self) -> None:
        """Cancel every background task owned by the components."""
        for policy in self.policies:
            await policy.limiter.shutdown()
        await self.cache.shutdown()
        if self._log_handler is not None:
            detach_live_event_handler(self._log_handler)
            self._log_handler = None
        await self.event_bus.shutdown()
        logger.info("Governance stopped")

    def get_diagnostics(self) -> dict[str, Any]:
        return {
            "rate_limit_enabled": self.rate_limit_enabled,
            "rate_limiters": {name: lim.get_stats() for name, lim in self.limiters.items()},
            "cache": self.cache.get_cache_stats(),
            "live_events": self.event_bus.get_stats(),
        }
