"""Tests for the login lockout policy."""

from datetime import timedelta

import pytest

from authguard.core.errors import AuthError, AuthErrorType
from authguard.models.security_event import SecurityEventType
from authguard.services.error_handler import AuthErrorHandler, ErrorContext
from authguard.services.lockout import LockoutManager
from authguard.services.login_protection import LoginProtection


@pytest.fixture
def lockout(store, clock):
    return LockoutManager(store, clock=clock)


@pytest.fixture
def protection(lockout, security_logger):
    return LoginProtection(lockout, security_logger)


class TestBackoff:
    @pytest.mark.parametrize(
        ("attempts", "minutes"),
        [(5, 30), (9, 30), (10, 60), (15, 120), (20, 240), (50, 1440)],
    )
    def test_lockout_minutes(self, protection, attempts, minutes):
        assert protection.lockout_minutes(attempts) == minutes


class TestLoginFlow:
    @pytest.mark.asyncio
    async def test_locks_on_fifth_failure(self, protection, lockout):
        results = [await protection.record_failed_login("a@b.com", "1.2.3.4") for _ in range(4)]
        assert results == [None, None, None, None]
        assert await lockout.is_locked("a@b.com") is False

        record = await protection.record_failed_login("a@b.com", "1.2.3.4")

        assert record is not None
        assert record.remaining_seconds(lockout.now()) == 1800
        assert await lockout.is_locked("a@b.com") is True

    @pytest.mark.asyncio
    async def test_locked_account_is_rejected_with_retry_after(self, protection):
        for _ in range(5):
            await protection.record_failed_login("a@b.com")

        with pytest.raises(AuthError) as exc_info:
            await protection.check_login_allowed("a@b.com")

        error = exc_info.value
        assert error.type == AuthErrorType.ACCOUNT_LOCKED
        assert error.status_code == 423
        assert error.retry_after == 1800
        assert error.details == {"lockoutDurationMinutes": 30}

    @pytest.mark.asyncio
    async def test_retry_after_counts_down(self, protection, clock):
        for _ in range(5):
            await protection.record_failed_login("a@b.com")
        clock.advance(600)

        with pytest.raises(AuthError) as exc_info:
            await protection.check_login_allowed("a@b.com")
        assert exc_info.value.retry_after == 1200

    @pytest.mark.asyncio
    async def test_success_resets_attempts(self, protection, lockout):
        for _ in range(3):
            await protection.record_failed_login("a@b.com")

        await protection.record_successful_login("a@b.com", user_id="u")

        assert await lockout.get_login_attempts("a@b.com") == 0
        await protection.check_login_allowed("a@b.com")

    @pytest.mark.asyncio
    async def test_unlock(self, protection, lockout, security_logger):
        for _ in range(5):
            await protection.record_failed_login("a@b.com")

        assert await protection.unlock("a@b.com", admin_id="admin-1") is True
        assert await lockout.is_locked("a@b.com") is False
        assert await protection.unlock("a@b.com") is False

        recent = await security_logger.get_user_security_events(email="a@b.com", limit=3)
        assert recent[0].event_type == SecurityEventType.ACCOUNT_UNLOCK
        assert recent[1].metadata["adminId"] == "admin-1"

    @pytest.mark.asyncio
    async def test_failures_and_lockout_are_logged(self, protection, security_logger):
        for _ in range(5):
            await protection.record_failed_login("a@b.com", "1.2.3.4", "pytest")

        recent = await security_logger.get_user_security_events(email="a@b.com")
        types = [event.event_type for event in recent]

        assert types.count(SecurityEventType.LOGIN_ATTEMPT) == 5
        assert types[0] == SecurityEventType.ACCOUNT_LOCKOUT
        assert recent[0].metadata["duration"] == 1800


@pytest.mark.asyncio
async def test_lockout_scenario_response(lockout, security_logger, clock):
    """Five failures, a 30 minute lock, then a 423 with Retry-After: 1800."""
    counts = [await lockout.increment_login_attempts("a@b.com") for _ in range(5)]
    assert counts == [1, 2, 3, 4, 5]
    await lockout.set_account_lockout("a@b.com", lockout.now() + timedelta(seconds=1800), "too many attempts")

    protection = LoginProtection(lockout, security_logger)
    with pytest.raises(AuthError) as exc_info:
        await protection.check_login_allowed("a@b.com")

    response = await AuthErrorHandler(security_logger, clock=clock).handle_error(
        exc_info.value, ErrorContext(operation="login", email="a@b.com")
    )

    assert response.status_code == 423
    assert response.headers["Retry-After"] == "1800"
