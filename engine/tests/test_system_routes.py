"""
Tests for system, log ingestion and diagnostics routes.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from techanal_engine.api.system_routes import stream_logs
from techanal_engine.runtime.context import GovernanceContext
from techanal_engine.runtime.sse import LiveEventStreamResponse
from tests.api_fixtures import make_settings


class TestLogs:
    """Tests for /api/system/logs."""

    def test_request_events_are_buffered(self, api_client: TestClient) -> None:
        api_client.get("/api/health")

        logs = api_client.get("/api/system/logs").json()["logs"]

        request_events = [e for e in logs if e["source"] == "request"]
        assert request_events[0]["message"] == "GET /api/health -> 200"
        assert request_events[0]["level"] == "info"
        details = request_events[0]["details"]
        assert details["status"] == 200
        assert details["method"] == "GET"
        assert details["durationMs"] >= 0

    def test_not_found_is_warning(self, api_client: TestClient) -> None:
        api_client.get("/api/nothing-here")

        logs = api_client.get("/api/system/logs").json()["logs"]
        event = next(e for e in logs if e["message"] == "GET /api/nothing-here -> 404")
        assert event["level"] == "warning"

    def test_limit(self, api_client: TestClient, app: FastAPI) -> None:
        bus = app.state.governance.event_bus
        for i in range(5):
            bus.publish(message=f"event-{i}")

        logs = api_client.get("/api/system/logs", params={"limit": 2}).json()["logs"]

        assert [e["message"] for e in logs] == ["event-3", "event-4"]

    def test_startup_event_published(self, api_client: TestClient) -> None:
        logs = api_client.get("/api/system/logs").json()["logs"]
        assert logs[0]["source"] == "server"
        assert "started" in logs[0]["message"]


class TestIngest:
    """Tests for /api/logs/ingest."""

    def test_ingest_aliases(self, api_client: TestClient, app: FastAPI) -> None:
        response = api_client.post(
            "/api/logs/ingest",
            json={"severity": "WARN", "msg": "disk at 91%", "type": "node-agent"},
        )

        assert response.status_code == 200
        event_id = response.json()["id"]
        event = next(e for e in app.state.governance.event_bus.get_recent_events() if e.id == event_id)
        assert event.level.value == "warning"
        assert event.message == "disk at 91%"
        assert event.source == "node-agent"

    def test_unknown_level_and_default_source(self, api_client: TestClient, app: FastAPI) -> None:
        event_id = api_client.post("/api/logs/ingest", json={"level": "loud", "message": "hi"}).json()["id"]

        event = next(e for e in app.state.governance.event_bus.get_recent_events() if e.id == event_id)
        assert event.level.value == "info"
        assert event.source == "ingest"

    def test_timestamp_preserved_and_secrets_redacted(self, api_client: TestClient, app: FastAPI) -> None:
        event_id = api_client.post(
            "/api/logs/ingest",
            json={"message": "login", "timestamp": "2026-03-01T12:00:00Z", "api_key": "sk-123"},
        ).json()["id"]

        event = next(e for e in app.state.governance.event_bus.get_recent_events() if e.id == event_id)
        assert event.timestamp == "2026-03-01T12:00:00Z"
        assert event.details["api_key"] == "[REDACTED]"

    def test_ingest_not_echoed_as_request_event(self, api_client: TestClient) -> None:
        api_client.post("/api/logs/ingest", json={"message": "hello"})

        logs = api_client.get("/api/system/logs").json()["logs"]
        assert not any(e["message"].startswith("POST /api/logs/ingest") for e in logs)


class TestRateLimitStats:
    """Tests for /api/system/rate-limits."""

    def test_all_limiters_reported(self, api_client: TestClient) -> None:
        data = api_client.get("/api/system/rate-limits").json()

        assert data["enabled"] is True
        assert set(data["limiters"]) == {"global", "ai", "system", "auth", "upload"}
        assert data["limiters"]["ai"]["max_requests"] == 20
        assert data["limiters"]["system"]["total_requests"] >= 1


class TestStream:
    """Tests for /api/system/logs/stream."""

    @pytest.mark.asyncio
    async def test_stream_uses_governance_settings(self) -> None:
        governance = GovernanceContext.from_settings(make_settings(sse_heartbeat_s=5, sse_max_pending=10))

        response = await stream_logs(governance)

        assert isinstance(response, LiveEventStreamResponse)
        assert response.media_type == "text/event-stream"
        assert response.stream._heartbeat_interval_s == 5
        assert response.stream._max_pending == 10
        response.stream.close()


class TestDiagnostics:
    """Tests for /diagnostics/*."""

    def test_all(self, api_client: TestClient) -> None:
        data = api_client.get("/diagnostics/all").json()

        assert data["memory"]["rss_mb"] > 0
        assert "size" in data["memory"]["cache"]
        assert set(data["rate_limiters"]["limiters"]) == {"global", "ai", "system", "auth", "upload"}
        assert data["live_events"]["max_buffer"] == 200
        assert data["live_events"]["buffered_events"] >= 1

    def test_live_events(self, api_client: TestClient) -> None:
        data = api_client.get("/diagnostics/live-events").json()
        assert data["subscribers"] == 0
        assert data["keepalive_running"] is False
