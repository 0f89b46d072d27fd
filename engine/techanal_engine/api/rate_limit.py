"""
HTTP rate limiting.

Applies every RateLimitPolicy of the application's GovernanceContext whose
prefix matches the request path, broadest first. The first denial ends the
request with a 429; admitted requests carry the X-RateLimit-* headers of
the most specific policy.
"""

import inspect
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from techanal_engine.logging import get_logger
from techanal_engine.runtime.context import GovernanceContext
from techanal_engine.runtime.rate_limiter import RateLimitDecision, RateLimiter

logger = get_logger(__name__)


def default_limit_response(request: Request, decision: RateLimitDecision) -> Response:
    """Standard 429 body and headers for a denied request."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": "Too many requests, please try again later",
            "retryAfter": decision.retry_after_seconds,
        },
        headers=decision.headers(),
    )


async def build_limit_response(limiter: RateLimiter, request: Request, decision: RateLimitDecision) -> Response:
    """
    Build the rejection response, using the limiter's handler if it has one.

    A failing custom handler falls back to the default response.
    """
    handler = limiter.config.handler
    if handler is None:
        return default_limit_response(request, decision)
    try:
        response: Any = handler(request, decision)
        if inspect.isawaitable(response):
            response = await response
    except Exception:
        logger.warning("%s rate limit handler failed, using default response", limiter.name, exc_info=True)
        return default_limit_response(request, decision)
    if not isinstance(response, Response):
        return default_limit_response(request, decision)
    return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Governs requests with the application's rate limit policies."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        governance: GovernanceContext | None = getattr(request.app.state, "governance", None)
        if governance is None or not governance.rate_limit_enabled or request.method == "OPTIONS":
            return await call_next(request)

        policies = governance.policies_for(request.url.path)
        if not policies:
            return await call_next(request)

        admitted: list[tuple[RateLimiter, RateLimitDecision]] = []
        for policy in policies:
            limiter = policy.limiter
            decision = limiter.check(limiter.resolve_key(request))
            if not decision.allowed:
                return await build_limit_response(limiter, request, decision)
            admitted.append((limiter, decision))

        response = await call_next(request)

        success = response.status_code < 400
        for limiter, decision in admitted:
            limiter.record_outcome(decision, success)

        response.headers.update(admitted[-1][1].headers())
        return response
