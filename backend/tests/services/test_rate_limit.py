"""Tests for the sliding-window rate limiter."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authguard.core.errors import AuthError, AuthErrorType
from authguard.services.cache_store import CacheStore
from authguard.services.rate_limit import SLIDING_WINDOW_SCRIPT, RateLimiter, RateLimitResult


@pytest.fixture(params=[True, False], ids=["script", "pipeline"])
def limiter(request, store, clock):
    """Both the Lua script and the pipelined sequence, run against the in-memory server."""
    return RateLimiter(store, use_script=request.param, clock=clock)


class TestSlidingWindow:
    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_denies(self, limiter, clock):
        for expected_remaining in (2, 1, 0):
            result = await limiter.check_rate_limit("1.2.3.4", "login", 3, 60)
            assert result.allowed is True
            assert result.remaining == expected_remaining
            clock.advance(1)

        denied = await limiter.check_rate_limit("1.2.3.4", "login", 3, 60)

        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.total_hits == 4
        assert denied.retry_after == 60

    @pytest.mark.asyncio
    async def test_allowed_again_after_window(self, limiter, clock):
        for _ in range(3):
            await limiter.check_rate_limit("1.2.3.4", "login", 3, 60)
        assert (await limiter.check_rate_limit("1.2.3.4", "login", 3, 60)).allowed is False

        clock.advance(60)

        result = await limiter.check_rate_limit("1.2.3.4", "login", 3, 60)
        assert result.allowed is True
        assert result.total_hits == 1

    @pytest.mark.asyncio
    async def test_identifiers_and_actions_are_independent(self, limiter):
        await limiter.check_rate_limit("a", "login", 1, 60)

        assert (await limiter.check_rate_limit("b", "login", 1, 60)).allowed is True
        assert (await limiter.check_rate_limit("a", "register", 1, 60)).allowed is True
        assert (await limiter.check_rate_limit("a", "login", 1, 60)).allowed is False

    @pytest.mark.asyncio
    async def test_same_millisecond_hits_are_counted_separately(self, limiter):
        first = await limiter.check_rate_limit("a", "login", 5, 60)
        second = await limiter.check_rate_limit("a", "login", 5, 60)

        assert first.total_hits == 1
        assert second.total_hits == 2

    @pytest.mark.asyncio
    async def test_window_key_gets_ttl(self, limiter, redis_client):
        await limiter.check_rate_limit("a", "login", 5, 60)
        assert 0 < await redis_client.ttl("rate:login:a") <= 60

    @pytest.mark.asyncio
    async def test_reset_time(self, limiter, clock):
        result = await limiter.check_rate_limit("a", "login", 5, 60)
        assert result.reset_time == int(clock() * 1000) + 60_000


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_store_outage_allows_request(self, clock):
        redis = AsyncMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError())
        redis.pipeline = MagicMock(return_value=pipe)
        limiter = RateLimiter(CacheStore(redis, timeout=0.05), use_script=False, clock=clock)

        result = await limiter.check_rate_limit("a", "login", 5, 60)

        assert result.allowed is True
        assert result.degraded is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_script_outage_allows_request(self, clock):
        redis = AsyncMock()
        redis.eval = AsyncMock(side_effect=RedisConnectionError())
        limiter = RateLimiter(CacheStore(redis, timeout=0.05), use_script=True, clock=clock)

        result = await limiter.check_rate_limit("a", "login", 5, 60)

        assert result.allowed is True
        assert result.degraded is True


class TestScriptMode:
    @pytest.mark.asyncio
    async def test_uses_sliding_window_script(self, clock):
        redis = AsyncMock()
        redis.eval = AsyncMock(return_value=6)
        limiter = RateLimiter(CacheStore(redis), use_script=True, clock=clock)

        result = await limiter.check_rate_limit("a", "login", 5, 60)

        assert result.allowed is False
        assert result.total_hits == 6
        args = redis.eval.call_args[0]
        now_ms = int(clock() * 1000)
        assert args[0] == SLIDING_WINDOW_SCRIPT
        assert args[1:3] == (1, "rate:login:a")
        assert args[3] == now_ms - 60_000
        assert args[4] == now_ms
        assert args[6] == 60


class TestHelpers:
    @pytest.mark.asyncio
    async def test_check_preset(self, limiter):
        result = await limiter.check_preset("a@b.com", "register")

        assert result.limit == 3
        assert result.window_seconds == 3600

    @pytest.mark.asyncio
    async def test_enforce_raises_when_denied(self, limiter):
        await limiter.enforce("a", "password_reset", 1, 3600)

        with pytest.raises(AuthError) as exc_info:
            await limiter.enforce("a", "password_reset", 1, 3600)

        assert exc_info.value.type == AuthErrorType.RATE_LIMIT_EXCEEDED
        assert exc_info.value.retry_after == 3600
        assert "password reset" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_get_remaining_does_not_record(self, limiter):
        await limiter.check_rate_limit("a", "login", 5, 60)

        assert await limiter.get_remaining("a", "login", 5, 60) == 4
        assert await limiter.get_remaining("a", "login", 5, 60) == 4

    @pytest.mark.asyncio
    async def test_reset_clears_window(self, limiter):
        await limiter.check_rate_limit("a", "login", 1, 60)

        assert await limiter.reset("a", "login") is True
        assert (await limiter.check_rate_limit("a", "login", 1, 60)).allowed is True


def test_headers_include_retry_after_only_when_denied():
    allowed = RateLimitResult(allowed=True, remaining=4, reset_time=1_000_500, total_hits=1, limit=5, window_seconds=60)
    denied = RateLimitResult(
        allowed=False, remaining=0, reset_time=1_000_500, total_hits=6, limit=5, window_seconds=60, retry_after=60
    )

    assert allowed.to_headers() == {
        "X-RateLimit-Limit": "5",
        "X-RateLimit-Remaining": "4",
        "X-RateLimit-Reset": "1001",
    }
    assert denied.to_headers()["Retry-After"] == "60"
