"""
Request logging onto the live event bus.

Every handled request becomes a ``<METHOD> <path> -> <status>`` live event,
so the live console shows traffic next to server warnings.
"""

import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from techanal_engine.logging import clear_request_id, get_logger, set_request_id
from techanal_engine.runtime.live_events import LiveEventBus

logger = get_logger(__name__)

# Publishing these would feed the console its own traffic
EXCLUDED_PATHS = ("/api/logs/ingest", "/api/system/logs/stream")


def status_level(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code >= 400:
        return "warning"
    return "info"


class RequestEventMiddleware(BaseHTTPMiddleware):
    """Publishes one live event per request and tags logs with a request id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        set_request_id(request_id)
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception as e:
                self._publish(request, 500, start, error=repr(e))
                logger.exception("Unhandled error on %s %s", request.method, request.url.path)
                raise
            response.headers["X-Request-ID"] = request_id
            self._publish(request, response.status_code, start)
            return response
        finally:
            clear_request_id()

    def _publish(self, request: Request, status_code: int, start: float, error: str | None = None) -> None:
        path = request.url.path
        if path in EXCLUDED_PATHS:
            return
        governance = getattr(request.app.state, "governance", None)
        if governance is None:
            return
        bus: LiveEventBus = governance.event_bus
        details: dict[str, object] = {
            "path": path,
            "method": request.method,
            "status": status_code,
            "durationMs": round((time.perf_counter() - start) * 1000, 2),
        }
        if error is not None:
            details["error"] = error
        bus.publish(
            level=status_level(status_code),
            message=f"{request.method} {path} -> {status_code}",
            source="request",
            details=details,
        )
