"""
Tests for the governance context.
"""

import logging

import pytest

from techanal_engine.logging import LiveEventLogHandler
from techanal_engine.runtime.context import GovernanceContext
from tests.api_fixtures import make_settings


class TestPolicies:
    """Tests for policy construction and matching."""

    def test_policies_from_settings(self) -> None:
        governance = GovernanceContext.from_settings(
            make_settings(rate_limit_ai_per_minute=7, rate_limit_auth_per_minute=3)
        )

        prefixes = [p.prefix for p in governance.policies]
        assert prefixes == ["/api", "/api/ai", "/api/system", "/api/auth", "/api/upload"]
        assert governance.limiters["ai"].config.max_requests == 7
        assert governance.limiters["ai"].config.window_seconds == 60
        assert governance.limiters["auth"].config.max_requests == 3
        assert governance.limiters["global"].config.window_seconds == 900

    def test_policies_for_path(self) -> None:
        governance = GovernanceContext.from_settings(make_settings())

        assert [p.limiter.name for p in governance.policies_for("/api/ai/analyze")] == ["global", "ai"]
        assert [p.limiter.name for p in governance.policies_for("/api/ai")] == ["global", "ai"]
        assert [p.limiter.name for p in governance.policies_for("/api/aix")] == ["global"]
        assert governance.policies_for("/health") == []

    def test_live_log_level_from_settings(self) -> None:
        governance = GovernanceContext.from_settings(make_settings(live_events_log_level="error"))
        assert governance.live_log_level == "ERROR"

    def test_components_share_one_bus(self) -> None:
        governance = GovernanceContext.from_settings(make_settings(cache_max_size=1))
        governance.cache.put("a", 1)
        governance.cache.put("b", 2)

        assert any(e.source == "response-cache" for e in governance.event_bus.get_recent_events())

    def test_isolated_instances(self) -> None:
        """Two contexts never share state."""
        first = GovernanceContext.from_settings(make_settings())
        second = GovernanceContext.from_settings(make_settings())
        first.limiters["ai"].check("k")
        first.cache.put("a", 1)

        assert second.limiters["ai"].store_size == 0
        assert len(second.cache) == 0


class TestLifecycle:
    """Tests for start and shutdown."""

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self) -> None:
        governance = GovernanceContext.from_settings(make_settings())
        root = logging.getLogger()

        governance.start()
        try:
            assert governance.cache.sweep_running
            assert all(p.limiter._sweeper.running for p in governance.policies)
            assert any(isinstance(h, LiveEventLogHandler) for h in root.handlers)
        finally:
            await governance.shutdown()

        assert not governance.cache.sweep_running
        assert not any(p.limiter._sweeper.running for p in governance.policies)
        assert not any(isinstance(h, LiveEventLogHandler) for h in root.handlers)

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self) -> None:
        governance = GovernanceContext.from_settings(make_settings())
        root = logging.getLogger()

        governance.start()
        governance.start()
        try:
            assert sum(isinstance(h, LiveEventLogHandler) for h in root.handlers) == 1
        finally:
            await governance.shutdown()

    def test_diagnostics(self) -> None:
        diagnostics = GovernanceContext.from_settings(make_settings()).get_diagnostics()

        assert diagnostics["rate_limit_enabled"] is True
        assert set(diagnostics["rate_limiters"]) == {"global", "ai", "system", "auth", "upload"}
        assert diagnostics["cache"]["enabled"] is True
        assert diagnostics["live_events"]["subscribers"] == 0
