"""Tests for the control plane composition and maintenance jobs."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from authguard.models.security_event import SecurityEventType
from authguard.services.cache_store import CacheStore
from authguard.services.control_plane import AuthSecurityControlPlane


class TestWiring:
    def test_services_share_store_and_clock(self, control_plane, store, clock):
        assert control_plane.rate_limiter.store is store
        assert control_plane.lockout.store is store
        assert control_plane.security_logger.store is store
        assert control_plane.login_protection.lockout is control_plane.lockout
        assert control_plane.error_handler.security_logger is control_plane.security_logger
        assert control_plane.error_handler.clock is clock

    def test_lockout_policy_comes_from_settings(self, control_plane, settings):
        protection = control_plane.login_protection
        assert protection.max_failed_attempts == settings.MAX_FAILED_ATTEMPTS
        assert protection.lockout_minutes(settings.MAX_FAILED_ATTEMPTS) == settings.BASE_LOCKOUT_MINUTES

    def test_ttls_and_timeouts_come_from_settings(self, control_plane, settings):
        assert control_plane.rate_limiter.use_script is True
        assert control_plane.lockout.default_lockout_ttl == settings.ACCOUNT_LOCKOUT_TTL
        assert control_plane.tokens.token_ttl == settings.TOKEN_TTL
        assert control_plane.security_logger.db_timeout == settings.DATABASE_TIMEOUT_SECONDS


class TestWarmCache:
    @pytest.mark.asyncio
    async def test_loads_flags_and_pings_store(self, control_plane):
        result = await control_plane.warm_cache()

        assert result == {"flags_loaded": 8, "store_available": True}
        assert "rate-limiting" in control_plane.feature_flags._cache

    @pytest.mark.asyncio
    async def test_reports_unreachable_store(self, settings):
        redis = AsyncMock()
        redis.ping.side_effect = ConnectionError("refused")
        plane = AuthSecurityControlPlane(settings, CacheStore(redis, timeout=0.1))

        result = await plane.warm_cache()

        assert result == {"flags_loaded": 8, "store_available": False}


class TestCleanup:
    @pytest.mark.asyncio
    async def test_removes_stale_lockouts_and_old_events(self, control_plane, clock):
        lockout = control_plane.lockout
        await lockout.set_account_lockout("stale@example.com", lockout.now() + timedelta(minutes=1))
        await lockout.set_account_lockout("live@example.com", lockout.now() + timedelta(days=200))
        await control_plane.security_logger.log_security_event(
            SecurityEventType.LOGIN_ATTEMPT, False, email="old@example.com"
        )
        await control_plane.feature_flags.warm()

        clock.advance(91 * 86400)
        await control_plane.security_logger.log_security_event(
            SecurityEventType.LOGIN_ATTEMPT, False, email="new@example.com"
        )

        result = await control_plane.cleanup(events_older_than_days=90)

        assert result == {"lockout_index_entries_removed": 1, "security_events_removed": 1}
        assert [r.email for r in await lockout.get_active_lockouts()] == ["live@example.com"]
        assert control_plane.feature_flags._cache == {}

    @pytest.mark.asyncio
    async def test_nothing_to_clean(self, control_plane):
        assert await control_plane.cleanup() == {
            "lockout_index_entries_removed": 0,
            "security_events_removed": 0,
        }


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, control_plane):
        health = await control_plane.health_check()

        assert health["status"] == "healthy"
        assert health["store"]["redis"] is True
        assert health["environment"] == "production"

    @pytest.mark.asyncio
    async def test_unhealthy_when_store_down(self, settings):
        redis = AsyncMock()
        redis.ping.side_effect = TimeoutError()
        plane = AuthSecurityControlPlane(settings, CacheStore(redis, timeout=0.1))

        health = await plane.health_check()

        assert health["status"] == "unhealthy"
        assert health["store"]["errors"] == ["Redis ping failed"]
