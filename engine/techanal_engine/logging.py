"""
Structured logging configuration for the TechAnal engine.

Provides consistent logging format across all modules with:
- JSON structured output for production
- Human-readable output for development
- Automatic redaction of sensitive fields
- Request ID tracking for correlating log lines and live events
"""

import logging
import sys
import threading
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from techanal_engine.runtime.live_events import LiveEventBus

# Context variable for tracking request IDs across async operations
current_request_id: ContextVar[str | None] = ContextVar("current_request_id", default=None)

# Fields that should be redacted in logs and live event details
REDACTED_FIELDS = {
    "password",
    "api_key",
    "apikey",
    "secret",
    "token",
    "authorization",
    "auth",
    "credential",
    "private_key",
    "cookie",
}

# Runtime components publish their own live events; their records are not republished
LIVE_BUS_LOGGER = "techanal_engine.runtime"


def redact_sensitive(data: Any, depth: int = 0) -> Any:
    """
    Recursively redact sensitive fields from data structures.

    Args:
        data: Data to redact (dict, list, or scalar)
        depth: Current recursion depth (prevents infinite recursion)

    Returns:
        Data with sensitive fields replaced with "[REDACTED]"
    """
    if depth > 10:
        return data

    if isinstance(data, dict):
        return {
            k: (
                "[REDACTED]"
                if isinstance(k, str) and any(redact in k.lower() for redact in REDACTED_FIELDS)
                else redact_sensitive(v, depth + 1)
            )
            for k, v in data.items()
        }
    elif isinstance(data, list):
        return [redact_sensitive(item, depth + 1) for item in data]
    return data


class TechAnalFormatter(logging.Formatter):
    """
    Custom formatter for engine logs.

    Includes timestamp, level, module, request_id (if set), and message.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.timestamp = datetime.now(UTC).isoformat()

        request_id = current_request_id.get()
        record.request_id = f"[{request_id}] " if request_id else ""

        return super().format(record)


class LiveEventLogHandler(logging.Handler):
    """
    Republishes log records onto the live event bus.

    Lets the live console show server warnings and errors next to request
    events. Records from the runtime components, which publish their own
    events, are skipped. A thread-local guard stops a record emitted while
    publishing from looping back.
    """

    _LEVELS = {
        logging.DEBUG: "debug",
        logging.INFO: "info",
        logging.WARNING: "warning",
        logging.ERROR: "error",
        logging.CRITICAL: "error",
    }

    def __init__(self, bus: "LiveEventBus", level: int = logging.WARNING):
        super().__init__(level=level)
        self._bus = bus
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(LIVE_BUS_LOGGER):
            return
        if getattr(self._local, "active", False):
            return

        self._local.active = True
        try:
            details: dict[str, Any] = {"logger": record.name}
            request_id = current_request_id.get()
            if request_id:
                details["request_id"] = request_id
            if record.exc_info and record.exc_info[1] is not None:
                details["exception"] = repr(record.exc_info[1])
            self._bus.publish(
                level=self._LEVELS.get(record.levelno, "info"),
                message=record.getMessage(),
                source="log",
                details=details,
            )
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """
    Configure logging for the engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON format (for production)

    Returns:
        Configured root logger
    """
    root = logging.getLogger()
    for existing in list(root.handlers):
        if not isinstance(existing, LiveEventLogHandler):
            root.removeHandler(existing)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_output:
        fmt = (
            '{"timestamp": "%(timestamp)s", "level": "%(levelname)s", '
            '"module": "%(name)s", "request_id": "%(request_id)s", "message": "%(message)s"}'
        )
    else:
        fmt = "%(timestamp)s | %(levelname)-8s | %(name)s | %(request_id)s%(message)s"

    handler.setFormatter(TechAnalFormatter(fmt))
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root


def attach_live_event_handler(bus: "LiveEventBus", level: str = "WARNING") -> LiveEventLogHandler:
    """Attach a LiveEventLogHandler for the given bus to the root logger."""
    handler = LiveEventLogHandler(bus, level=getattr(logging, level.upper(), logging.WARNING))
    logging.getLogger().addHandler(handler)
    return handler


def detach_live_event_handler(handler: LiveEventLogHandler) -> None:
    """Remove a previously attached LiveEventLogHandler."""
    logging.getLogger().removeHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_request_id(request_id: str) -> None:
    """Set the current request ID for log correlation."""
    current_request_id.set(request_id)


def clear_request_id() -> None:
    """Clear the current request ID."""
    current_request_id.set(None)
