"""
Fingerprint-addressed response cache with TTL and usage-based eviction.

Avoids re-running an expensive chart analysis for a logically identical
request. Expiry is two-phase: reads check the TTL lazily, and a periodic
sweep removes stale entries that are never read again.

Eviction is a composite LFU+LRU policy, not pure LRU: when the cache is
full, entries are ranked by (access_count, last_accessed_at) ascending and
the lowest ``eviction_fraction`` (20% by default) is removed before the new
entry is inserted. A frequently read entry therefore survives even if it
is the least recently used one.
"""

import hashlib
import json
import math
import re
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

import psutil
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from techanal_engine.logging import get_logger
from techanal_engine.runtime.periodic import PeriodicTask

if TYPE_CHECKING:
    from techanal_engine.runtime.live_events import LiveEventBus

logger = get_logger(__name__)

HealthStatus = Literal["healthy", "warning", "unhealthy"]

_WHITESPACE = re.compile(r"\s+")


# =============================================================================
# Fingerprinting
# =============================================================================


class ChartMetadata(BaseModel):
    """Chart metadata attached to an analysis request."""

    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)

    chart_type: str | None = None
    timeframe: str | None = None
    symbol: str | None = None


class AnalysisRequest(BaseModel):
    """
    A chart analysis request as seen by the cache.

    Accepts snake_case and camelCase keys (``image_base64`` or
    ``imageBase64``). Unknown top-level keys are rejected so a misspelt
    image field can never collapse two charts onto one fingerprint.
    """

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    prompt: str = ""
    image_base64: str = Field(min_length=1)
    metadata: ChartMetadata = Field(default_factory=ChartMetadata)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v: Any) -> Any:
        """Missing metadata is treated as empty."""
        return {} if v is None else v


def normalize_prompt(prompt: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", prompt).strip().lower()


def hash_image(image_base64: str) -> str:
    """Digest of the full image payload."""
    return hashlib.sha256(image_base64.encode("utf-8")).hexdigest()


def compute_fingerprint(request: AnalysisRequest | Mapping[str, Any]) -> str:
    """
    Derive the cache key of an analysis request.

    Two requests with the same normalized prompt, chart type, timeframe and
    image content map to the same key, whatever their whitespace or
    metadata key order.
    """
    if not isinstance(request, AnalysisRequest):
        request = AnalysisRequest.model_validate(dict(request))

    key_data = {
        "prompt": normalize_prompt(request.prompt),
        "chart_type": (request.metadata.chart_type or "unknown").strip().lower(),
        "timeframe": (request.metadata.timeframe or "unknown").strip().lower(),
        "image": hash_image(request.image_base64),
    }
    canonical = json.dumps(key_data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def estimate_size(value: Any) -> int:
    """Approximate size of a cached value in bytes (JSON-encoded length)."""
    try:
        if isinstance(value, BaseModel):
            return len(value.model_dump_json())
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return len(repr(value))


def process_memory_mb() -> float:
    """Resident memory of this process in MB."""
    return round(psutil.Process().memory_info().rss / 1024 / 1024, 1)


# =============================================================================
# Models
# =============================================================================


class CacheConfig(BaseModel):
    """
    Response cache configuration.

    Validated on construction and on update_config.
    """

    enabled: bool = True
    ttl_seconds: float = Field(default=5 * 60, gt=0)
    max_size: int = Field(default=1000, ge=1)
    cleanup_interval_seconds: float = Field(default=60.0, gt=0)
    eviction_fraction: float = Field(default=0.2, gt=0, le=1)


class HealthThresholds(BaseModel):
    """Bands used by ResponseCache.health_check."""

    memory_warning_mb: float = Field(default=500.0, gt=0)
    memory_unhealthy_mb: float = Field(default=1000.0, gt=0)
    error_rate_warning: float = Field(default=0.1, ge=0, le=1)
    error_rate_unhealthy: float = Field(default=0.2, ge=0, le=1)

    @model_validator(mode="after")
    def validate_bands(self) -> "HealthThresholds":
        """Unhealthy thresholds must not sit below warning thresholds."""
        if self.memory_unhealthy_mb < self.memory_warning_mb:
            raise ValueError("memory_unhealthy_mb must be >= memory_warning_mb")
        if self.error_rate_unhealthy < self.error_rate_warning:
            raise ValueError("error_rate_unhealthy must be >= error_rate_warning")
        return self


@dataclass
class CacheEntry:
    """A cached result and its usage bookkeeping."""

    key: str
    value: Any
    created_at: float
    last_accessed_at: float
    access_count: int = 1
    size_bytes: int = 0


@dataclass
class PerformanceMetrics:
    """Rolling request metrics fed by record_metrics."""

    request_count: int = 0
    average_response_time: float = 0.0
    cache_hit_rate: float = 0.0
    error_rate: float = 0.0
    memory_usage: float = 0.0
    last_reset: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_count": self.request_count,
            "average_response_time": round(self.average_response_time, 2),
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "error_rate": round(self.error_rate, 4),
            "memory_usage": self.memory_usage,
            "last_reset": self.last_reset.isoformat(),
        }


# =============================================================================
# Cache
# =============================================================================


class ResponseCache:
    """
    TTL cache of analysis results with usage-based eviction and metrics.

    Request-path operations never raise: a disabled cache or an expired
    entry is a miss, not an error.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        thresholds: HealthThresholds | None = None,
        clock: Callable[[], float] = time.time,
        memory_probe: Callable[[], float] = process_memory_mb,
        event_bus: "LiveEventBus | None" = None,
        name: str = "analysis",
    ):
        """
        Initialize response cache.

        Args:
            config: Cache configuration
            thresholds: Health check bands
            clock: Time source returning epoch seconds
            memory_probe: Returns process memory usage in MB
            event_bus: Optional bus receiving eviction/sweep events
            name: Name for logging purposes
        """
        self._config = config or CacheConfig()
        self._thresholds = thresholds or HealthThresholds()
        self._clock = clock
        self._memory_probe = memory_probe
        self._event_bus = event_bus
        self._name = name

        self._cache: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

        # Cache stats
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        # Request metrics
        self._metrics = PerformanceMetrics()
        self._total_response_time = 0.0
        self._total_errors = 0

        self._sweeper = PeriodicTask(
            f"cache-sweep:{name}",
            self._config.cleanup_interval_seconds,
            self.cleanup_expired,
        )
        self._started = False

    @property
    def config(self) -> CacheConfig:
        return self._config

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    # ------------------------------------------------------------------
    # Key-level operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """
        Get a cached value.

        Returns:
            Value if present and younger than the TTL, None otherwise
        """
        if not self._config.enabled:
            return None

        now = self._clock()
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None

            if now - entry.created_at > self._config.ttl_seconds:
                del self._cache[key]
                self._misses += 1
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            self._hits += 1
            return entry.value

    def put(self, key: str, value: Any) -> None:
        """
        Cache a value, evicting least-used entries first when full.

        None is never stored, since ``get`` uses it to signal a miss.
        """
        if not self._config.enabled:
            return
        if value is None:
            logger.debug("%s cache ignored None value for %s", self._name, key[:12])
            return

        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            last_accessed_at=now,
            size_bytes=estimate_size(value),
        )
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._config.max_size:
                self._evict_least_used()
            self._cache[key] = entry

    def delete(self, key: str) -> bool:
        """
        Delete an entry.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            return self._cache.pop(key, None) is not None

    def _evict_least_used(self) -> int:
        # Caller holds the lock
        ranked = sorted(
            self._cache.values(),
            key=lambda e: (e.access_count, e.last_accessed_at),
        )
        to_remove = max(1, math.ceil(len(ranked) * self._config.eviction_fraction))
        evicted = ranked[:to_remove]
        for entry in evicted:
            del self._cache[entry.key]
        self._evictions += len(evicted)

        logger.debug("%s cache evicted %d entries", self._name, len(evicted))
        self._publish(
            "debug",
            f"Evicted {len(evicted)} cache entries",
            {"cache": self._name, "evicted": len(evicted), "size": len(self._cache)},
        )
        return len(evicted)

    def cleanup_expired(self) -> int:
        """
        Remove every entry older than the TTL.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        ttl = self._config.ttl_seconds
        with self._lock:
            expired = [key for key, entry in self._cache.items() if now - entry.created_at > ttl]
            for key in expired:
                del self._cache[key]

        if expired:
            logger.info("Cleaned up %d expired %s cache entries", len(expired), self._name)
            self._publish(
                "info",
                f"Cleaned up {len(expired)} expired cache entries",
                {"cache": self._name, "expired": len(expired)},
            )
        return len(expired)

    # ------------------------------------------------------------------
    # Request-level operations
    # ------------------------------------------------------------------

    def get_cached_result(self, request: AnalysisRequest | Mapping[str, Any]) -> Any | None:
        """Look up the cached result of an analysis request; an invalid request is a miss."""
        try:
            key = compute_fingerprint(request)
        except ValidationError as e:
            logger.warning("%s cache lookup skipped, invalid request: %d errors", self._name, e.error_count())
            return None
        return self.get(key)

    def cache_result(self, request: AnalysisRequest | Mapping[str, Any], result: Any) -> str | None:
        """
        Cache the result of an analysis request.

        Returns:
            The fingerprint the result is stored under, or None if the
            request is invalid and nothing was stored
        """
        try:
            key = compute_fingerprint(request)
        except ValidationError as e:
            logger.warning("%s cache store skipped, invalid request: %d errors", self._name, e.error_count())
            return None
        self.put(key, result)
        return key

    def clear_cache(self) -> None:
        """Drop every entry and reset hit/miss counters."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._hits = 0
            self._misses = 0
        logger.info("%s cache cleared (%d entries)", self._name, count)
        self._publish("info", "Cache cleared", {"cache": self._name, "removed": count})

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_metrics(self, response_time_ms: float, is_error: bool = False) -> None:
        """
        Record the latency and outcome of one governed request.

        Called by the request pipeline; the cache itself does not know
        request latency.
        """
        with self._lock:
            self._metrics.request_count += 1
            self._total_response_time += response_time_ms
            if is_error:
                self._total_errors += 1

            count = self._metrics.request_count
            self._metrics.average_response_time = self._total_response_time / count
            self._metrics.error_rate = self._total_errors / count
            self._metrics.cache_hit_rate = self._hit_rate()
        self._metrics.memory_usage = self._memory_probe()

    def _hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total > 0 else 0.0

    def get_metrics(self) -> dict[str, Any]:
        """Snapshot of the rolling request metrics."""
        with self._lock:
            metrics = self._metrics.to_dict()
            metrics["memory_usage_estimate"] = sum(e.size_bytes for e in self._cache.values())
        return metrics

    def reset_metrics(self) -> None:
        """Reset request metrics and hit/miss counters."""
        with self._lock:
            self._metrics = PerformanceMetrics()
            self._total_response_time = 0.0
            self._total_errors = 0
            self._hits = 0
            self._misses = 0

    def get_cache_stats(self) -> dict[str, Any]:
        """Live cache occupancy."""
        with self._lock:
            size = len(self._cache)
            hit_rate = self._hit_rate()
            estimated_bytes = sum(e.size_bytes for e in self._cache.values())
            hits, misses, evictions = self._hits, self._misses, self._evictions
        return {
            "size": size,
            "max_size": self._config.max_size,
            "hit_rate": round(hit_rate, 2),
            "memory_usage": self._memory_probe(),
            "enabled": self._config.enabled,
            "estimated_bytes": estimated_bytes,
            "hits": hits,
            "misses": misses,
            "evictions": evictions,
            "ttl_seconds": self._config.ttl_seconds,
        }

    def health_check(self) -> dict[str, Any]:
        """
        Classify cache health from memory usage and error rate.

        Advisory only: a degraded status never blocks traffic.
        """
        memory_usage = self._memory_probe()
        with self._lock:
            error_rate = self._metrics.error_rate
            size = len(self._cache)

        t = self._thresholds
        status: HealthStatus = "healthy"
        if memory_usage > t.memory_warning_mb or error_rate > t.error_rate_warning:
            status = "warning"
        if memory_usage > t.memory_unhealthy_mb or error_rate > t.error_rate_unhealthy:
            status = "unhealthy"

        return {
            "status": status,
            "details": {
                "cache_enabled": self._config.enabled,
                "cache_size": size,
                "memory_usage": memory_usage,
                "error_rate": round(error_rate, 2),
            },
        }

    # ------------------------------------------------------------------
    # Configuration and lifecycle
    # ------------------------------------------------------------------

    def update_config(self, **changes: Any) -> CacheConfig:
        """
        Apply a partial configuration update.

        None values are ignored. Raises pydantic.ValidationError for invalid
        values, leaving the current configuration untouched.
        """
        updates = {k: v for k, v in changes.items() if v is not None}
        new_config = CacheConfig(**{**self._config.model_dump(), **updates})

        old_config = self._config
        with self._lock:
            self._config = new_config
            if new_config.max_size < len(self._cache):
                overflow = len(self._cache) - new_config.max_size
                ranked = sorted(self._cache.values(), key=lambda e: (e.access_count, e.last_accessed_at))
                for entry in ranked[:overflow]:
                    del self._cache[entry.key]
                self._evictions += overflow

        if (
            new_config.cleanup_interval_seconds != old_config.cleanup_interval_seconds
            or new_config.enabled != old_config.enabled
        ):
            self._sweeper.cancel()
            self._sweeper = PeriodicTask(
                f"cache-sweep:{self._name}",
                new_config.cleanup_interval_seconds,
                self.cleanup_expired,
            )
            if self._started and new_config.enabled:
                self._sweeper.start()

        logger.info("%s cache configuration updated: %s", self._name, new_config.model_dump())
        return new_config

    @property
    def sweep_running(self) -> bool:
        return self._sweeper.running

    def start(self) -> None:
        """Start the periodic TTL sweep (requires a running event loop)."""
        self._started = True
        if self._config.enabled:
            self._sweeper.start()

    async def shutdown(self) -> None:
        """Stop the periodic TTL sweep."""
        self._started = False
        await self._sweeper.stop()

    def _publish(self, level: str, message: str, details: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        try:
            self._event_bus.publish(level=level, message=message, source="response-cache", details=details)
        except Exception:
            logger.debug("Failed to publish cache event", exc_info=True)
