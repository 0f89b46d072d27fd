"""
Tests for HTTP rate limit governance.

Tests:
- 429 body and headers on denial
- Rate limit headers on admitted requests
- Policy prefixes and per-client keys
- Custom handlers and the master switch
"""

from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.testclient import TestClient

from techanal_engine.main import create_app
from techanal_engine.runtime.rate_limiter import RateLimiter
from tests.api_fixtures import StubAnalysisClient, make_settings

ANALYZE_BODY = {
    "prompt": "Identify support and resistance",
    "image_base64": "iVBORw0KGgoAAAANSUhEUgAAAAEAAAAB",
    "metadata": {"chart_type": "candlestick", "timeframe": "1h"},
}


def governed_client(**settings) -> tuple[TestClient, StubAnalysisClient]:
    client = StubAnalysisClient()
    app = create_app(settings=make_settings(**settings), analysis_client=client)
    return TestClient(app), client


class TestRejection:
    """Tests for the 429 response."""

    def test_third_request_rejected(self) -> None:
        """With 2 AI requests per minute the third is refused."""
        client, _ = governed_client(rate_limit_ai_per_minute=2)
        with client:
            assert client.post("/api/ai/analyze", json=ANALYZE_BODY).status_code == 200
            assert client.post("/api/ai/analyze", json=ANALYZE_BODY).status_code == 200
            response = client.post("/api/ai/analyze", json=ANALYZE_BODY)

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "Rate limit exceeded"
        assert body["message"] == "Too many requests, please try again later"
        assert 0 < body["retryAfter"] <= 60
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) == body["retryAfter"]
        assert "X-RateLimit-Reset" in response.headers

    def test_rejection_happens_before_analysis(self) -> None:
        """A refused request never reaches the provider or the cache."""
        client, stub = governed_client(rate_limit_ai_per_minute=1)
        with client:
            client.post("/api/ai/analyze", json=ANALYZE_BODY)
            other = {**ANALYZE_BODY, "prompt": "Different question"}
            assert client.post("/api/ai/analyze", json=other).status_code == 429
            metrics = client.get("/api/performance/metrics").json()

        assert len(stub.calls) == 1
        assert metrics["metrics"]["request_count"] == 1

    def test_global_limit_applies_to_all_api_paths(self) -> None:
        client, _ = governed_client(rate_limit_global_max=2)
        with client:
            client.get("/api/health")
            client.get("/api/performance/cache/stats")
            response = client.get("/api/system/logs")

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "2"

    def test_rejection_is_published(self) -> None:
        client, _ = governed_client(rate_limit_system_per_minute=1, rate_limit_global_max=100)
        app = client.app
        with client:
            client.get("/api/system/rate-limits")
            client.get("/api/system/rate-limits")
            events = [e.to_dict() for e in app.state.governance.event_bus.get_recent_events()]

        sources = [e["source"] for e in events]
        assert "rate-limiter" in sources
        request_events = [e for e in events if e["source"] == "request"]
        assert request_events[-1]["message"] == "GET /api/system/rate-limits -> 429"
        assert request_events[-1]["level"] == "warning"


class TestAdmittedHeaders:
    """Tests for headers on admitted requests."""

    def test_most_specific_policy_headers(self) -> None:
        client, _ = governed_client(rate_limit_ai_per_minute=5)
        with client:
            response = client.post("/api/ai/analyze", json=ANALYZE_BODY)

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert "Retry-After" not in response.headers

    def test_sibling_prefix_not_matched(self) -> None:
        """/api/aix is governed by the global policy only."""
        client, _ = governed_client(rate_limit_ai_per_minute=1)
        with client:
            response = client.get("/api/aix")

        assert response.status_code == 404
        assert response.headers["X-RateLimit-Limit"] == "1000"


class TestKeys:
    """Tests for per-client buckets."""

    def test_forwarded_clients_have_separate_budgets(self) -> None:
        client, _ = governed_client(rate_limit_system_per_minute=1)
        with client:
            first = client.get("/api/system/logs", headers={"X-Forwarded-For": "203.0.113.1"})
            second = client.get("/api/system/logs", headers={"X-Forwarded-For": "203.0.113.2"})
            repeat = client.get("/api/system/logs", headers={"X-Forwarded-For": "203.0.113.1"})

        assert first.status_code == 200
        assert second.status_code == 200
        assert repeat.status_code == 429

    def test_untrusted_forwarding_uses_peer(self) -> None:
        client, _ = governed_client(rate_limit_system_per_minute=1, rate_limit_trust_forwarded=False)
        with client:
            client.get("/api/system/logs", headers={"X-Forwarded-For": "203.0.113.1"})
            response = client.get("/api/system/logs", headers={"X-Forwarded-For": "203.0.113.2"})

        assert response.status_code == 429


class TestConfiguration:
    """Tests for handlers and the master switch."""

    def test_disabled_rate_limiting(self) -> None:
        client, _ = governed_client(rate_limit_enabled=False, rate_limit_system_per_minute=1)
        with client:
            responses = [client.get("/api/system/logs") for _ in range(3)]

        assert all(r.status_code == 200 for r in responses)
        assert "X-RateLimit-Limit" not in responses[0].headers

    def test_custom_handler(self) -> None:
        client, _ = governed_client()
        app = client.app

        def handler(request, decision) -> JSONResponse:
            return JSONResponse({"slow_down": decision.retry_after_seconds}, status_code=503)

        with client:
            policy = next(p for p in app.state.governance.policies if p.prefix == "/api/system")
            policy.limiter = RateLimiter(window_seconds=60, max_requests=1, name="system", handler=handler)
            client.get("/api/system/logs")
            response = client.get("/api/system/logs")

        assert response.status_code == 503
        assert response.json()["slow_down"] == 60

    def test_invalid_handler_result_uses_default(self) -> None:
        client, _ = governed_client()
        app = client.app

        with client:
            policy = next(p for p in app.state.governance.policies if p.prefix == "/api/system")
            policy.limiter = RateLimiter(
                window_seconds=60,
                max_requests=1,
                name="system",
                handler=lambda request, decision: "not a response",
            )
            client.get("/api/system/logs")
            response = client.get("/api/system/logs")

        assert response.status_code == 429
        assert response.json()["error"] == "Rate limit exceeded"

    def test_skip_failed_requests(self) -> None:
        """Failed requests give their reservation back."""
        client, _ = governed_client()
        app = client.app

        with client:
            policy = next(p for p in app.state.governance.policies if p.prefix == "/api/system")
            policy.limiter = RateLimiter(
                window_seconds=60,
                max_requests=1,
                name="system",
                skip_failed_requests=True,
            )
            statuses = [client.get("/api/system/missing").status_code for _ in range(3)]
            ok = client.get("/api/system/logs")
            after = client.get("/api/system/logs")

        assert statuses == [404, 404, 404]
        assert ok.status_code == 200
        assert after.status_code == 429

    def test_plain_text_handler(self) -> None:
        client, _ = governed_client()
        app = client.app

        async def handler(request, decision) -> PlainTextResponse:
            return PlainTextResponse("busy", status_code=429, headers=decision.headers())

        with client:
            policy = next(p for p in app.state.governance.policies if p.prefix == "/api/system")
            policy.limiter = RateLimiter(window_seconds=60, max_requests=1, name="system", handler=handler)
            client.get("/api/system/logs")
            response = client.get("/api/system/logs")

        assert response.text == "busy"
        assert response.headers["Retry-After"] == "60"
