"""
Sliding-window rate limiting for authentication actions.

Each (action, identifier) pair owns a sorted set holding one member per hit,
scored by the hit time in milliseconds. A check prunes members that fell
out of the window, records the current hit, counts what is left and
refreshes the key TTL so idle identifiers disappear on their own.

With ``use_script`` the whole sequence runs as one Lua script and is atomic.
Without it the steps are sent as a single MULTI/EXEC pipeline; the result
is still derived from the post-insert cardinality, but concurrent bursts
right at the window edge may over-admit by a few requests.

If the store is unavailable the limiter fails open: the request is
allowed and the condition is logged as a warning.
"""

import logging
import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from authguard.core.config import RATE_LIMIT_PRESETS
from authguard.core.errors import rate_limit_error
from authguard.services.cache_store import CacheStore

logger = logging.getLogger(__name__)

# Key prefix
RATE_LIMIT_KEY_PREFIX = "rate:"

# KEYS[1] = window key
# ARGV[1] = window start (ms, inclusive upper bound of pruned scores)
# ARGV[2] = now (ms), ARGV[3] = unique member, ARGV[4] = TTL seconds
SLIDING_WINDOW_SCRIPT = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[3])
local count = redis.call('ZCARD', KEYS[1])
redis.call('EXPIRE', KEYS[1], ARGV[4])
return count
"""


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one sliding-window check."""

    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds
    total_hits: int
    limit: int
    window_seconds: int
    degraded: bool = False  # True when produced by the fail-open path
    retry_after: int = field(default=0)

    def to_headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_time / 1000)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def rate_limit_key(action: str, identifier: str) -> str:
    return f"{RATE_LIMIT_KEY_PREFIX}{action}:{identifier}"


class RateLimiter:
    """Sliding-window request counter backed by the shared cache store."""

    def __init__(
        self,
        store: CacheStore,
        use_script: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.use_script = use_script
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def check_rate_limit(
        self,
        identifier: str,
        action: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """
        Record a hit and report whether it is within the limit.

        Args:
            identifier: Who is being limited (IP address, e-mail, user id)
            action: What is being limited (login, register, ...)
            limit: Maximum hits allowed inside the window
            window_seconds: Length of the trailing window

        Returns:
            RateLimitResult with allowed/remaining/reset_time/total_hits
        """
        key = rate_limit_key(action, identifier)
        now = self._now_ms()
        window_start = now - window_seconds * 1000
        member = f"{now}-{uuid.uuid4().hex}"

        if self.use_script:
            total_hits = await self.store.eval_script(
                SLIDING_WINDOW_SCRIPT,
                keys=[key],
                args=[window_start, now, member, window_seconds],
            )
        else:
            results = await self.store.pipeline([
                ("zremrangebyscore", key, "-inf", window_start),
                ("zadd", key, {member: now}),
                ("zcard", key),
                ("expire", key, window_seconds),
            ])
            total_hits = results[2] if results is not None else None

        if total_hits is None:
            logger.warning(
                "Rate limit check for %s unavailable, allowing request", action
            )
            return self._fail_open(limit, window_seconds)

        total_hits = int(total_hits)
        allowed = total_hits <= limit
        if not allowed:
            logger.warning(
                "Rate limit exceeded for %s: %d/%d hits in %ds",
                action, total_hits, limit, window_seconds,
            )

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - total_hits),
            reset_time=now + window_seconds * 1000,
            total_hits=total_hits,
            limit=limit,
            window_seconds=window_seconds,
            retry_after=0 if allowed else window_seconds,
        )

    def _fail_open(self, limit: int, window_seconds: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=max(0, limit - 1),
            reset_time=self._now_ms() + window_seconds * 1000,
            total_hits=1,
            limit=limit,
            window_seconds=window_seconds,
            degraded=True,
        )

    async def check_preset(self, identifier: str, preset: str) -> RateLimitResult:
        """Check against one of the named presets in RATE_LIMIT_PRESETS."""
        limit, window_seconds = RATE_LIMIT_PRESETS[preset]
        return await self.check_rate_limit(identifier, preset, limit, window_seconds)

    async def enforce(
        self,
        identifier: str,
        action: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """
        Check the limit and raise RATE_LIMIT_EXCEEDED when it is exceeded.

        Raises:
            AuthError: If the hit is over the limit
        """
        result = await self.check_rate_limit(identifier, action, limit, window_seconds)
        if not result.allowed:
            raise rate_limit_error(result.retry_after, action.replace("_", " "))
        return result

    async def get_remaining(
        self,
        identifier: str,
        action: str,
        limit: int,
        window_seconds: int,
    ) -> int:
        """Hits left in the current window, without recording a new one."""
        key = rate_limit_key(action, identifier)
        window_start = self._now_ms() - window_seconds * 1000
        results = await self.store.pipeline([
            ("zremrangebyscore", key, "-inf", window_start),
            ("zcard", key),
        ])
        if results is None:
            return limit
        return max(0, limit - int(results[1]))

    async def reset(self, identifier: str, action: str) -> bool:
        """Forget every hit recorded for (action, identifier)."""
        return await self.store.delete(rate_limit_key(action, identifier)) > 0
