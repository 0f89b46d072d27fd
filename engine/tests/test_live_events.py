"""
Tests for the live event bus.

Tests:
- Ring buffer bound
- Publish order and backlog replay
- Subscriber isolation
- Keep-alive ticker lifecycle
"""

import asyncio
import logging

import pytest

from techanal_engine.logging import LiveEventLogHandler
from techanal_engine.runtime.live_events import (
    LiveEvent,
    LiveEventBus,
    LiveLogLevel,
    normalize_event,
)


def make_bus(max_buffer: int = 200) -> LiveEventBus:
    return LiveEventBus(max_buffer=max_buffer, keepalive_interval_s=0)


class TestNormalizeEvent:
    """Tests for event normalization."""

    def test_fills_missing_fields(self) -> None:
        event = normalize_event(message="hello")

        assert event.id
        assert "T" in event.timestamp
        assert event.level is LiveLogLevel.INFO
        assert event.source == "server"

    def test_unknown_level_becomes_info(self) -> None:
        assert normalize_event(level="verbose").level is LiveLogLevel.INFO
        assert normalize_event(level="WARN").level is LiveLogLevel.WARNING
        assert normalize_event(level="critical").level is LiveLogLevel.ERROR

    def test_non_string_message_is_json_encoded(self) -> None:
        event = normalize_event(message={"a": 1})
        assert event.message == '{"a": 1}'

    def test_details_are_redacted(self) -> None:
        event = normalize_event(message="login", details={"user": "amy", "password": "hunter2"})
        assert event.details["user"] == "amy"
        assert event.details["password"] != "hunter2"

    def test_keywords_override_mapping(self) -> None:
        event = normalize_event({"message": "a", "level": "info"}, level="error")
        assert event.message == "a"
        assert event.level is LiveLogLevel.ERROR

    def test_to_dict_uses_level_value(self) -> None:
        event = LiveEvent(id="1", timestamp="2026-01-01T00:00:00+00:00", level=LiveLogLevel.DEBUG, message="m")
        assert event.to_dict()["level"] == "debug"


class TestRingBuffer:
    """Tests for the bounded replay buffer."""

    def test_oldest_event_dropped_when_full(self) -> None:
        bus = make_bus(max_buffer=3)
        for i in range(4):
            bus.publish(message=f"e{i}")

        messages = [e.message for e in bus.get_recent_events()]
        assert messages == ["e1", "e2", "e3"]

    def test_limit_returns_newest(self) -> None:
        bus = make_bus()
        for i in range(5):
            bus.publish(message=f"e{i}")

        assert [e.message for e in bus.get_recent_events(2)] == ["e3", "e4"]

    def test_invalid_buffer_size_rejected(self) -> None:
        with pytest.raises(ValueError):
            LiveEventBus(max_buffer=0)

    def test_clear_keeps_subscribers(self) -> None:
        bus = make_bus()
        bus.subscribe(lambda e: None)
        bus.publish(message="x")
        bus.clear()

        assert bus.get_recent_events() == []
        assert bus.subscriber_count == 1


class TestOrdering:
    """Tests for delivery order and backlog replay."""

    def test_subscriber_sees_publish_order(self) -> None:
        bus = make_bus()
        received: list[str] = []
        bus.subscribe(lambda e: received.append(e.message))

        for name in ("e1", "e2", "e3"):
            bus.publish(message=name)

        assert received == ["e1", "e2", "e3"]

    def test_backlog_then_live(self) -> None:
        bus = make_bus()
        bus.publish(message="e1")
        bus.publish(message="e2")

        received: list[str] = []
        backlog, _ = bus.subscribe_with_backlog(lambda e: received.append(e.message))
        bus.publish(message="e3")

        assert [e.message for e in backlog] + received == ["e1", "e2", "e3"]

    def test_reentrant_publish_keeps_order(self) -> None:
        """An event published from a handler reaches everyone after the current one."""
        bus = make_bus()
        first: list[str] = []
        second: list[str] = []

        def echo(event: LiveEvent) -> None:
            first.append(event.message)
            if event.message == "ping":
                bus.publish(message="pong")

        bus.subscribe(echo)
        bus.subscribe(lambda e: second.append(e.message))
        bus.publish(message="ping")

        assert first == ["ping", "pong"]
        assert second == ["ping", "pong"]

    def test_backlog_taken_during_dispatch_excludes_queued(self) -> None:
        bus = make_bus()
        late: list[str] = []
        snapshots: list[list[str]] = []

        def attach_late(event: LiveEvent) -> None:
            if event.message == "trigger":
                bus.publish(message="queued")
                backlog, _ = bus.subscribe_with_backlog(lambda e: late.append(e.message))
                snapshots.append([e.message for e in backlog])

        bus.subscribe(attach_late)
        bus.publish(message="trigger")

        # "queued" is delivered live, so it is not also in the backlog
        assert snapshots == [["trigger"]]
        assert late == ["queued"]


class TestSubscribers:
    """Tests for subscriber isolation and unsubscribe."""

    def test_failing_subscriber_does_not_block_others(self) -> None:
        bus = make_bus()
        received: list[str] = []

        def broken(_event: LiveEvent) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(lambda e: received.append(e.message))
        bus.publish(message="e1")

        assert received == ["e1"]
        assert bus.get_stats()["subscriber_errors"] == 1

    def test_subscriber_cannot_mutate_details(self) -> None:
        bus = make_bus()
        seen: list[dict] = []

        def tamper(event: LiveEvent) -> None:
            event.details.update(hacked=True)

        def tamper_nested(event: LiveEvent) -> None:
            event.details["tags"].append("hacked")

        bus.subscribe(tamper)
        bus.subscribe(tamper_nested)
        bus.subscribe(lambda e: seen.append(e.to_dict()["details"]))
        bus.publish(message="e1", details={"a": 1, "tags": ["x"]})

        assert seen == [{"a": 1, "tags": ["x"]}]
        assert bus.get_recent_events()[0].to_dict()["details"] == {"a": 1, "tags": ["x"]}
        assert bus.get_stats()["subscriber_errors"] == 2

    def test_details_caller_dict_is_copied(self) -> None:
        bus = make_bus()
        details = {"a": 1}
        bus.publish(message="e1", details=details)

        details["a"] = 2
        assert bus.get_recent_events()[0].details["a"] == 1

    def test_unsubscribe_is_idempotent(self) -> None:
        bus = make_bus()
        received: list[str] = []
        unsubscribe = bus.subscribe(lambda e: received.append(e.message))
        other = bus.subscribe(lambda e: None)

        unsubscribe()
        unsubscribe()
        bus.publish(message="after")

        assert received == []
        assert bus.subscriber_count == 1
        other()
        assert bus.subscriber_count == 0

    def test_same_handler_twice_gets_two_deliveries(self) -> None:
        bus = make_bus()
        received: list[str] = []
        handler = received.append

        bus.subscribe(lambda e: handler(e.message))
        bus.subscribe(lambda e: handler(e.message))
        bus.publish(message="x")

        assert received == ["x", "x"]


class TestKeepAlive:
    """Tests for the keep-alive ticker."""

    def test_no_ticker_without_loop(self) -> None:
        bus = LiveEventBus(keepalive_interval_s=0.01)
        unsubscribe = bus.subscribe(lambda e: None)

        assert bus.keepalive_running is False
        unsubscribe()

    @pytest.mark.asyncio
    async def test_ticker_runs_only_while_subscribed(self) -> None:
        bus = LiveEventBus(keepalive_interval_s=0.01)
        received: list[LiveEvent] = []

        unsubscribe = bus.subscribe(received.append)
        assert bus.keepalive_running

        await asyncio.sleep(0.05)
        unsubscribe()
        await asyncio.sleep(0)

        assert not bus.keepalive_running
        ticks = [e for e in received if e.source == "system-monitor"]
        assert ticks
        assert ticks[0].level is LiveLogLevel.DEBUG
        assert "uptime_s" in ticks[0].details

    @pytest.mark.asyncio
    async def test_shutdown_detaches_everything(self) -> None:
        bus = LiveEventBus(keepalive_interval_s=0.01)
        bus.subscribe(lambda e: None)

        await bus.shutdown()

        assert bus.subscriber_count == 0
        assert not bus.keepalive_running


class TestLogBridge:
    """Tests for republishing log records onto the bus."""

    def test_warning_records_are_published(self) -> None:
        bus = make_bus()
        handler = LiveEventLogHandler(bus)
        log = logging.getLogger("techanal_engine.api.test_bridge")
        log.addHandler(handler)
        try:
            log.info("quiet")
            log.warning("disk almost full")
        finally:
            log.removeHandler(handler)

        events = bus.get_recent_events()
        assert [e.message for e in events] == ["disk almost full"]
        assert events[0].source == "log"
        assert events[0].level is LiveLogLevel.WARNING

    def test_runtime_records_are_skipped(self) -> None:
        bus = make_bus()
        handler = LiveEventLogHandler(bus)
        log = logging.getLogger("techanal_engine.runtime.rate_limiter")
        log.addHandler(handler)
        try:
            log.warning("already published by the limiter")
        finally:
            log.removeHandler(handler)

        assert bus.get_recent_events() == []
