"""
Analysis service: the cached, metered path to the analysis provider.

Rate limiting happens in middleware before a request reaches here, so the
order per request is: limiter, cache lookup, provider call.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from techanal_engine.interfaces.analysis_client import AnalysisClient
from techanal_engine.logging import get_logger
from techanal_engine.runtime.live_events import LiveEventBus
from techanal_engine.runtime.response_cache import (
    AnalysisRequest,
    ResponseCache,
    compute_fingerprint,
)

logger = get_logger(__name__)


class AnalysisError(Exception):
    """The analysis provider failed to produce a result."""


@dataclass
class AnalysisOutcome:
    """Result of one analysis request."""

    result: Any
    cached: bool
    fingerprint: str
    duration_ms: float


class AnalysisService:
    """
    Serves analysis results from the cache, falling back to the provider.

    Every request, hit or miss, is recorded in the cache's performance
    metrics; provider failures count as errors.
    """

    def __init__(
        self,
        client: AnalysisClient,
        cache: ResponseCache,
        event_bus: LiveEventBus | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self._client = client
        self._cache = cache
        self._event_bus = event_bus
        self._timer = timer

    async def analyze(self, request: AnalysisRequest) -> AnalysisOutcome:
        """
        Analyze a chart, reusing a cached result for an identical request.

        Raises:
            AnalysisError: If the provider call fails
        """
        fingerprint = compute_fingerprint(request)
        start = self._timer()

        cached = self._cache.get(fingerprint)
        if cached is not None:
            duration_ms = (self._timer() - start) * 1000
            self._cache.record_metrics(duration_ms, is_error=False)
            self._publish(
                "debug",
                "Analysis served from cache",
                {"fingerprint": fingerprint[:12], "durationMs": round(duration_ms, 2)},
            )
            return AnalysisOutcome(result=cached, cached=True, fingerprint=fingerprint, duration_ms=duration_ms)

        try:
            result = await self._client.analyze(request)
        except Exception as e:
            duration_ms = (self._timer() - start) * 1000
            self._cache.record_metrics(duration_ms, is_error=True)
            logger.error("Chart analysis failed after %.0fms: %s", duration_ms, e)
            raise AnalysisError(str(e) or type(e).__name__) from e

        duration_ms = (self._timer() - start) * 1000
        self._cache.put(fingerprint, result)
        self._cache.record_metrics(duration_ms, is_error=False)
        self._publish(
            "info",
            "Chart analysis completed",
            {
                "fingerprint": fingerprint[:12],
                "durationMs": round(duration_ms, 2),
                "chartType": request.metadata.chart_type,
                "timeframe": request.metadata.timeframe,
            },
        )
        return AnalysisOutcome(result=result, cached=False, fingerprint=fingerprint, duration_ms=duration_ms)

    async def provider_healthy(self) -> bool:
        """Provider health; a failing check counts as unhealthy."""
        try:
            return bool(await self._client.health_check())
        except Exception as e:
            logger.warning("Analysis provider health check failed: %s", e)
            return False

    def _publish(self, level: str, message: str, details: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish(level=level, message=message, source="analysis", details=details)
