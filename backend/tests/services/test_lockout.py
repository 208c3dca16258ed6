"""Tests for login attempt counting and account lockout."""

from datetime import UTC, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authguard.services.cache_store import CacheStore
from authguard.services.lockout import ACTIVE_LOCKOUTS_KEY, LockoutManager


@pytest.fixture
def lockout(store, clock):
    return LockoutManager(store, login_attempts_ttl=900, clock=clock)


class TestLoginAttempts:
    @pytest.mark.asyncio
    async def test_increment_returns_running_count(self, lockout):
        counts = [await lockout.increment_login_attempts("a@b.com") for _ in range(5)]
        assert counts == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_email_is_normalized(self, lockout):
        await lockout.increment_login_attempts("A@B.com ")
        assert await lockout.get_login_attempts("a@b.com") == 1

    @pytest.mark.asyncio
    async def test_counter_ttl_is_renewed(self, lockout, redis_client):
        await lockout.increment_login_attempts("a@b.com")
        assert 0 < await redis_client.ttl("auth:attempts:a@b.com") <= 900

    @pytest.mark.asyncio
    async def test_reset(self, lockout):
        await lockout.increment_login_attempts("a@b.com")
        await lockout.reset_login_attempts("a@b.com")
        assert await lockout.get_login_attempts("a@b.com") == 0


class TestLockoutLifecycle:
    @pytest.mark.asyncio
    async def test_no_lockout_initially(self, lockout):
        assert await lockout.get_account_lockout("a@b.com") is None

    @pytest.mark.asyncio
    async def test_set_get_clear(self, lockout):
        until = lockout.now() + timedelta(minutes=30)

        await lockout.set_account_lockout("a@b.com", until, "too many attempts")
        record = await lockout.get_account_lockout("a@b.com")

        assert record is not None
        assert record.locked_until == until
        assert record.reason == "too many attempts"
        assert record.locked_at == lockout.now()

        await lockout.clear_account_lockout("a@b.com")
        assert await lockout.get_account_lockout("a@b.com") is None

    @pytest.mark.asyncio
    async def test_record_ttl_matches_lock_time(self, lockout, redis_client):
        await lockout.set_account_lockout("a@b.com", lockout.now() + timedelta(seconds=1800), "x")
        assert 1790 < await redis_client.ttl("auth:lockout:a@b.com") <= 1800

    @pytest.mark.asyncio
    async def test_default_lock_length(self, store, clock):
        lockout = LockoutManager(store, clock=clock, default_lockout_ttl=600)

        record = await lockout.set_account_lockout("a@b.com", reason="manual")

        assert record.locked_until == lockout.now() + timedelta(seconds=600)
        clock.advance(600)
        assert await lockout.is_locked("a@b.com") is False

    @pytest.mark.asyncio
    async def test_lock_expires_without_clear(self, lockout, clock):
        await lockout.set_account_lockout("a@b.com", lockout.now() + timedelta(minutes=30), "x")

        clock.advance(30 * 60)

        assert await lockout.get_account_lockout("a@b.com") is None
        assert await lockout.is_locked("a@b.com") is False

    @pytest.mark.asyncio
    async def test_lock_in_past_is_noop(self, lockout, redis_client):
        result = await lockout.set_account_lockout("a@b.com", lockout.now() - timedelta(seconds=1), "x")

        assert result is None
        assert await redis_client.exists("auth:lockout:a@b.com") == 0

    @pytest.mark.asyncio
    async def test_naive_datetime_treated_as_utc(self, lockout):
        naive = (lockout.now() + timedelta(minutes=5)).replace(tzinfo=None)

        record = await lockout.set_account_lockout("a@b.com", naive, "x")

        assert record.locked_until.tzinfo is UTC

    @pytest.mark.asyncio
    async def test_clear_also_resets_attempts_and_index(self, lockout, redis_client):
        await lockout.increment_login_attempts("a@b.com")
        await lockout.set_account_lockout("a@b.com", lockout.now() + timedelta(minutes=5), "x")

        await lockout.clear_account_lockout("a@b.com")

        assert await lockout.get_login_attempts("a@b.com") == 0
        assert await redis_client.zscore(ACTIVE_LOCKOUTS_KEY, "a@b.com") is None

    @pytest.mark.asyncio
    async def test_malformed_record_is_ignored(self, lockout, redis_client):
        await redis_client.set("auth:lockout:a@b.com", '{"reason": "x"}')
        assert await lockout.get_account_lockout("a@b.com") is None


class TestActiveLockouts:
    @pytest.mark.asyncio
    async def test_stale_index_entries_are_skipped(self, lockout, redis_client, clock):
        await lockout.set_account_lockout("old@b.com", lockout.now() + timedelta(minutes=1), "x")
        clock.advance(30)
        await lockout.set_account_lockout("new@b.com", lockout.now() + timedelta(minutes=30), "x")
        # Simulate the record TTL firing for the first lock
        await redis_client.delete("auth:lockout:old@b.com")

        active = await lockout.get_active_lockouts()

        assert [record.email for record in active] == ["new@b.com"]

    @pytest.mark.asyncio
    async def test_sorted_newest_first(self, lockout, clock):
        await lockout.set_account_lockout("first@b.com", lockout.now() + timedelta(hours=1), "x")
        clock.advance(10)
        await lockout.set_account_lockout("second@b.com", lockout.now() + timedelta(hours=1), "x")

        active = await lockout.get_active_lockouts()

        assert [record.email for record in active] == ["second@b.com", "first@b.com"]

    @pytest.mark.asyncio
    async def test_cleanup_removes_stale_entries(self, lockout, redis_client, clock):
        await lockout.set_account_lockout("a@b.com", lockout.now() + timedelta(minutes=1), "x")
        await lockout.set_account_lockout("c@d.com", lockout.now() + timedelta(hours=1), "x")
        clock.advance(120)

        assert await lockout.cleanup_expired_lockouts() == 1
        assert await redis_client.zrange(ACTIVE_LOCKOUTS_KEY, 0, -1) == ["c@d.com"]


class TestStoreOutage:
    @pytest.fixture
    def broken_lockout(self, clock):
        redis = AsyncMock()
        redis.get = AsyncMock(side_effect=RedisConnectionError())
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError())
        redis.pipeline = MagicMock(return_value=pipe)
        return LockoutManager(CacheStore(redis, timeout=0.05), clock=clock)

    @pytest.mark.asyncio
    async def test_reads_degrade_to_unlocked(self, broken_lockout):
        assert await broken_lockout.get_account_lockout("a@b.com") is None
        assert await broken_lockout.get_login_attempts("a@b.com") == 0

    @pytest.mark.asyncio
    async def test_writes_do_not_raise(self, broken_lockout):
        assert await broken_lockout.increment_login_attempts("a@b.com") == 1
        until = broken_lockout.now() + timedelta(minutes=30)
        assert await broken_lockout.set_account_lockout("a@b.com", until, "x") is None
        await broken_lockout.clear_account_lockout("a@b.com")
