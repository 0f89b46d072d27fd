"""
Server-sent events stream over the live event bus.

Wire format (text/event-stream):
- comment lines: ``: connected`` and ``: heartbeat <epoch-ms>``
- events: ``data: <json LiveEvent>`` followed by a blank line

A stream moves CONNECTING -> STREAMING -> CLOSED. Entering CLOSED stops
the heartbeat and unsubscribes from the bus exactly once, whether the
trigger is a client disconnect, a failed write or an explicit close.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from techanal_engine.logging import get_logger
from techanal_engine.runtime.live_events import LiveEvent, LiveEventBus, Unsubscribe
from techanal_engine.runtime.periodic import PeriodicTask

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class StreamState(str, Enum):
    """Lifecycle of a live event stream."""

    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


def format_comment(text: str) -> str:
    return f": {text}\n\n"


def format_event(event: LiveEvent) -> str:
    return f"data: {event.to_json()}\n\n"


_HEARTBEAT = object()
_CLOSE = object()


class LiveEventStream:
    """
    One client's view of the live event bus.

    The backlog is replayed before any live event, and live events are
    written in publish order. Pending events are buffered in a bounded
    queue; a client that falls ``max_pending`` events behind is closed.
    """

    def __init__(
        self,
        bus: LiveEventBus,
        heartbeat_interval_s: float = 15.0,
        max_pending: int = 1000,
    ):
        self._bus = bus
        self._heartbeat_interval_s = heartbeat_interval_s
        self._max_pending = max_pending
        self._state = StreamState.CONNECTING
        self._close_reason: str | None = None
        self._queue: asyncio.Queue[Any] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Unsubscribe | None = None
        self._heartbeat: PeriodicTask | None = None
        self._events_sent = 0

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    @property
    def events_sent(self) -> int:
        return self._events_sent

    async def frames(self) -> AsyncIterator[str]:
        """
        Yield the stream's wire frames until it is closed.
        """
        if self._state is not StreamState.CONNECTING:
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()

        try:
            yield format_comment("connected")

            # Backlog snapshot and live subscription are taken atomically
            backlog, self._unsubscribe = self._bus.subscribe_with_backlog(self._on_event)
            self._state = StreamState.STREAMING
            self._heartbeat = PeriodicTask("sse-heartbeat", self._heartbeat_interval_s, self._on_heartbeat)
            self._heartbeat.start()

            for event in backlog:
                if self._state is not StreamState.STREAMING:
                    return
                self._events_sent += 1
                yield format_event(event)

            while self._state is StreamState.STREAMING:
                item = await self._queue.get()
                if item is _CLOSE:
                    break
                if item is _HEARTBEAT:
                    yield format_comment(f"heartbeat {int(time.time() * 1000)}")
                    continue
                self._events_sent += 1
                yield format_event(item)
        except (asyncio.CancelledError, GeneratorExit):
            self.close("disconnected")
            raise
        finally:
            self.close("ended")

    def _on_event(self, event: LiveEvent) -> None:
        # May be called from any thread that publishes
        loop = self._loop
        if loop is None or self._state is StreamState.CLOSED:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._enqueue(event)
        else:
            try:
                loop.call_soon_threadsafe(self._enqueue, event)
            except RuntimeError:
                self.close("loop_closed")

    def _enqueue(self, event: LiveEvent) -> None:
        if self._state is StreamState.CLOSED or self._queue is None:
            return
        if self._queue.qsize() >= self._max_pending:
            logger.warning("Live event stream fell %d events behind, closing", self._max_pending)
            self.close("backpressure")
            return
        self._queue.put_nowait(event)

    def _on_heartbeat(self) -> None:
        if self._queue is not None and self._state is StreamState.STREAMING:
            self._queue.put_nowait(_HEARTBEAT)

    def close(self, reason: str = "cancelled") -> bool:
        """
        Move to CLOSED, stopping the heartbeat and unsubscribing.

        Idempotent: only the first call does any work.

        Returns:
            True if this call performed the cleanup
        """
        if self._state is StreamState.CLOSED:
            return False
        self._state = StreamState.CLOSED
        self._close_reason = reason

        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception:
                logger.warning("Live event stream unsubscribe failed", exc_info=True)
            self._unsubscribe = None

        # Wake a reader blocked on the queue
        if self._queue is not None and self._loop is not None:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is self._loop:
                self._queue.put_nowait(_CLOSE)
            else:
                try:
                    self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSE)
                except RuntimeError:
                    # Loop already closed, nobody is reading
                    pass

        logger.debug("Live event stream closed (%s) after %d events", reason, self._events_sent)
        return True


class LiveEventStreamResponse(StreamingResponse):
    """
    StreamingResponse that always closes its LiveEventStream.

    Covers client disconnects and failed writes as well as normal ends.
    """

    def __init__(self, stream: LiveEventStream, headers: dict[str, str] | None = None):
        self.stream = stream
        super().__init__(
            stream.frames(),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, **(headers or {})},
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except Exception:
            self.stream.close("write_failed")
            raise
        finally:
            self.stream.close("disconnected")
