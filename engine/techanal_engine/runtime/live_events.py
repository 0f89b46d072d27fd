"""
Live event bus for diagnostics streaming.

Keeps the most recent events in a bounded ring buffer and fans every
published event out to the attached subscribers. Backs the live logs
stream used by the debug console.
"""

import itertools
import json
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import uuid4

import psutil

from techanal_engine.logging import get_logger, redact_sensitive
from techanal_engine.runtime.periodic import PeriodicTask

logger = get_logger(__name__)

DEFAULT_MAX_BUFFER = 200


class LiveLogLevel(str, Enum):
    """Severity of a live event."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    DEBUG = "debug"

    @classmethod
    def coerce(cls, value: Any) -> "LiveLogLevel":
        """Map a loose level name onto a level, defaulting to INFO."""
        if isinstance(value, LiveLogLevel):
            return value
        if value is None:
            return cls.INFO
        name = str(value).strip().lower()
        aliases = {
            "warn": cls.WARNING,
            "critical": cls.ERROR,
            "fatal": cls.ERROR,
            "trace": cls.DEBUG,
        }
        if name in aliases:
            return aliases[name]
        try:
            return cls(name)
        except ValueError:
            return cls.INFO


@dataclass(frozen=True)
class LiveEvent:
    """
    A published diagnostic event.

    Immutable once published; ``timestamp`` is an ISO-8601 string.
    """

    id: str
    timestamp: str
    level: LiveLogLevel
    message: str
    source: str = "server"
    details: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
            "source": self.source,
            "details": thaw_details(self.details),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, separators=(",", ":"))


def freeze_details(value: Any) -> Any:
    """
    Read-only copy of event details.

    Mappings become MappingProxyType and sequences become tuples, so one
    subscriber cannot change what the others or a later replay see.
    """
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze_details(v) for k, v in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(freeze_details(v) for v in value)
    return value


def thaw_details(value: Any) -> Any:
    """Plain dict/list copy of frozen details."""
    if isinstance(value, Mapping):
        return {k: thaw_details(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw_details(v) for v in value]
    return value


LiveEventHandler = Callable[[LiveEvent], None]
Unsubscribe = Callable[[], None]


def _new_event_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid4().hex[:8]}"


def normalize_event(event: LiveEvent | Mapping[str, Any] | None = None, **fields: Any) -> LiveEvent:
    """
    Build a LiveEvent, filling in missing id, timestamp, level and source.

    Accepts an existing LiveEvent, a mapping of fields, keyword fields, or
    a mix (keywords win).
    """
    if isinstance(event, LiveEvent):
        raw: dict[str, Any] = event.to_dict()
    elif event is None:
        raw = {}
    else:
        raw = dict(event)
    raw.update(fields)

    timestamp = raw.get("timestamp")
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    elif not timestamp:
        timestamp = datetime.now(UTC).isoformat()

    message = raw.get("message")
    if message is None:
        message = ""
    elif not isinstance(message, str):
        message = json.dumps(message, default=str)

    details = raw.get("details")
    if details is not None:
        details = freeze_details(redact_sensitive(thaw_details(details)))

    return LiveEvent(
        id=str(raw.get("id") or _new_event_id()),
        timestamp=str(timestamp),
        level=LiveLogLevel.coerce(raw.get("level")),
        message=message,
        source=str(raw.get("source") or "server"),
        details=details,
    )


class LiveEventBus:
    """
    Bounded, replayable publish/subscribe bus.

    Guarantees:
    - The buffer never holds more than ``max_buffer`` events; the oldest
      event is dropped first.
    - Every subscriber sees events in publish order, including events
      published from inside another subscriber.
    - A raising subscriber never stops delivery to the others.

    While at least one subscriber is attached and an event loop is running,
    a keep-alive ticker publishes a debug event every ``keepalive_interval_s``
    seconds. The ticker stops when the last subscriber detaches.
    """

    def __init__(
        self,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        keepalive_interval_s: float = 1.0,
    ):
        """
        Initialize the bus.

        Args:
            max_buffer: Ring buffer capacity (must be positive)
            keepalive_interval_s: Ticker interval, 0 disables the ticker
        """
        if max_buffer < 1:
            raise ValueError(f"max_buffer must be positive, got {max_buffer}")
        if keepalive_interval_s < 0:
            raise ValueError(f"keepalive_interval_s must be >= 0, got {keepalive_interval_s}")

        self._max_buffer = max_buffer
        self._buffer: deque[LiveEvent] = deque(maxlen=max_buffer)
        self._subscribers: dict[int, LiveEventHandler] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()

        # Events accepted but not yet fanned out (re-entrant publishes)
        self._pending: deque[LiveEvent] = deque()
        self._dispatching = False

        self._ticker: PeriodicTask | None = None
        if keepalive_interval_s > 0:
            self._ticker = PeriodicTask("live-events-keepalive", keepalive_interval_s, self._tick)

        self._published_total = 0
        self._subscriber_errors = 0

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, event: LiveEvent | Mapping[str, Any] | None = None, **fields: Any) -> LiveEvent:
        """
        Normalize, buffer and fan out an event.

        Returns:
            The normalized event as stored in the buffer
        """
        normalized = normalize_event(event, **fields)

        with self._lock:
            self._buffer.append(normalized)
            self._published_total += 1
            self._pending.append(normalized)
            if self._dispatching:
                # Outer publish on this thread drains the queue in order
                return normalized

            self._dispatching = True
            try:
                while self._pending:
                    current = self._pending.popleft()
                    for handler in list(self._subscribers.values()):
                        self._deliver(handler, current)
            finally:
                self._dispatching = False

        return normalized

    def _deliver(self, handler: LiveEventHandler, event: LiveEvent) -> None:
        try:
            handler(event)
        except Exception:
            self._subscriber_errors += 1
            logger.debug("Live event subscriber %r failed on %s", handler, event.id, exc_info=True)

    def _tick(self) -> None:
        process = psutil.Process()
        self.publish(
            level=LiveLogLevel.DEBUG,
            message="live tick",
            source="system-monitor",
            details={"uptime_s": int(time.time() - process.create_time())},
        )

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    def subscribe(self, handler: LiveEventHandler) -> Unsubscribe:
        """
        Register a handler for every future event.

        Returns:
            Idempotent unsubscribe function
        """
        _, unsubscribe = self._attach(handler, with_backlog=False)
        return unsubscribe

    def subscribe_with_backlog(self, handler: LiveEventHandler) -> tuple[list[LiveEvent], Unsubscribe]:
        """
        Snapshot the buffer and register a handler in one step.

        Every event is either in the returned backlog or delivered to the
        handler, never both and never neither.
        """
        return self._attach(handler, with_backlog=True)

    def _attach(self, handler: LiveEventHandler, with_backlog: bool) -> tuple[list[LiveEvent], Unsubscribe]:
        with self._lock:
            backlog: list[LiveEvent] = []
            if with_backlog:
                backlog = list(self._buffer)
                if self._pending:
                    # Queued events will reach this handler live
                    backlog = backlog[: max(0, len(backlog) - len(self._pending))]
            token = next(self._tokens)
            self._subscribers[token] = handler
            self._start_ticker_if_needed()

        detached = False

        def unsubscribe() -> None:
            nonlocal detached
            with self._lock:
                if detached:
                    return
                detached = True
                self._subscribers.pop(token, None)
                self._stop_ticker_if_idle()

        return backlog, unsubscribe

    def _start_ticker_if_needed(self) -> None:
        if self._ticker is None or self._ticker.running or not self._subscribers:
            return
        self._ticker.start()

    def _stop_ticker_if_idle(self) -> None:
        if self._ticker is not None and not self._subscribers:
            self._ticker.cancel()

    # ------------------------------------------------------------------
    # Inspection and lifecycle
    # ------------------------------------------------------------------

    def get_recent_events(self, limit: int | None = None) -> list[LiveEvent]:
        """
        Get buffered events, oldest first.

        Args:
            limit: Only return the newest ``limit`` events
        """
        with self._lock:
            events = list(self._buffer)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def max_buffer(self) -> int:
        return self._max_buffer

    @property
    def keepalive_running(self) -> bool:
        return self._ticker is not None and self._ticker.running

    def clear(self) -> None:
        """Drop all buffered events (subscribers stay attached)."""
        with self._lock:
            self._buffer.clear()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "buffered": len(self._buffer),
                "max_buffer": self._max_buffer,
                "subscribers": len(self._subscribers),
                "published_total": self._published_total,
                "subscriber_errors": self._subscriber_errors,
                "keepalive_running": self.keepalive_running,
            }

    async def shutdown(self) -> None:
        """Detach every subscriber and stop the keep-alive ticker."""
        with self._lock:
            self._subscribers.clear()
        if self._ticker is not None:
            await self._ticker.stop()
