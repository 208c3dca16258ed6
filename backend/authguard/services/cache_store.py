"""
Shared cache store over Redis.

Thin async wrapper exposing the primitives the security services need:
plain keys with TTL, atomic counters, sorted sets, bounded lists,
pipelined batches and server-side scripts.

Every call is bounded by a timeout and never raises. A failed call is
logged, counted and answered with an "unavailable" value (None, False, 0
or an empty list), so each caller applies its own fail-open or
fail-closed policy.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Sequence
from typing import Any, TypeVar

from redis.asyncio import Redis

from authguard.core.config import Settings
from authguard.core.errors import StoreUnavailableError
from authguard.core.redis import close_redis, create_redis

logger = logging.getLogger(__name__)

T = TypeVar("T")

# One pipelined command: (redis method name, *args)
PipelineOp = tuple[Any, ...]


class CacheStore:
    """Timeout-bounded, non-raising access to the shared key-value store."""

    def __init__(self, redis: Redis, timeout: float = 5.0):
        self.redis = redis
        self.timeout = timeout
        self._hits = 0
        self._misses = 0
        self._errors = 0
        self._total = 0
        self._total_latency_ms = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheStore":
        return cls(create_redis(settings), timeout=settings.REDIS_TIMEOUT_SECONDS)

    async def close(self) -> None:
        await close_redis(self.redis)

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a store call under the timeout, raising StoreUnavailableError on failure."""
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.timeout)
        except Exception as e:
            self._record(start, error=True)
            logger.warning("Cache store %s failed: %s", operation, type(e).__name__)
            raise StoreUnavailableError(operation) from e
        self._record(start, error=False)
        return result

    async def _safe(self, operation: str, awaitable: Awaitable[T], default: T) -> T:
        try:
            return await self._run(operation, awaitable)
        except StoreUnavailableError:
            return default

    def _record(self, start: float, error: bool) -> None:
        self._total += 1
        self._total_latency_ms += (time.perf_counter() - start) * 1000
        if error:
            self._errors += 1

    def _track_lookup(self, value: Any) -> None:
        if value is None:
            self._misses += 1
        else:
            self._hits += 1

    # ------------------------------------------------------------------
    # Plain keys
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        """Get a value. Returns None on miss or when the store is unavailable."""
        value = await self._safe("get", self.redis.get(key), None)
        self._track_lookup(value)
        return value

    async def getdel(self, key: str) -> str | None:
        """Atomically read and delete a value. None on miss or when unavailable."""
        value = await self._safe("getdel", self.redis.getdel(key), None)
        self._track_lookup(value)
        return value

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Set a value, optionally with a TTL in seconds. Returns True on success."""
        result = await self._safe("set", self.redis.set(key, value, ex=ttl), None)
        return bool(result)

    async def set_with_ttl(self, key: str, value: str, ttl: int) -> bool:
        """Set a value that expires after ``ttl`` seconds. Non-positive TTLs are not written."""
        if ttl <= 0:
            return False
        result = await self._safe("setex", self.redis.setex(key, ttl, value), None)
        return bool(result)

    async def get_json(self, key: str) -> Any | None:
        """Get a value and deserialize it as JSON."""
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        payload = json.dumps(value, default=str)
        if ttl is None:
            return await self.set(key, payload)
        return await self.set_with_ttl(key, payload, ttl)

    async def delete(self, *keys: str) -> int:
        """Delete keys. Returns the number removed (0 when unavailable)."""
        if not keys:
            return 0
        return await self._safe("delete", self.redis.delete(*keys), 0)

    async def exists(self, key: str) -> bool:
        return bool(await self._safe("exists", self.redis.exists(key), 0))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._safe("expire", self.redis.expire(key, ttl), False))

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -2 when missing or unavailable, -1 when persistent."""
        return await self._safe("ttl", self.redis.ttl(key), -2)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    async def increment(self, key: str, ttl: int | None = None) -> int | None:
        """
        Atomically increment a counter and (re)set its TTL.

        Returns the new value, or None when the store is unavailable.
        """
        if ttl is None:
            return await self._safe("incr", self.redis.incr(key), None)

        results = await self.pipeline([("incr", key), ("expire", key, ttl)])
        if results is None:
            return None
        return int(results[0])

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        return await self._safe("zadd", self.redis.zadd(key, mapping), 0)

    async def zremrangebyscore(self, key: str, min_score: float | str, max_score: float | str) -> int:
        return await self._safe(
            "zremrangebyscore", self.redis.zremrangebyscore(key, min_score, max_score), 0
        )

    async def zcard(self, key: str) -> int:
        return await self._safe("zcard", self.redis.zcard(key), 0)

    async def zrangebyscore(
        self,
        key: str,
        min_score: float | str,
        max_score: float | str,
        withscores: bool = False,
    ) -> list:
        return await self._safe(
            "zrangebyscore",
            self.redis.zrangebyscore(key, min_score, max_score, withscores=withscores),
            [],
        )

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._safe("zrem", self.redis.zrem(key, *members), 0)

    # ------------------------------------------------------------------
    # Bounded lists
    # ------------------------------------------------------------------

    async def lpush(self, key: str, *values: str) -> int:
        return await self._safe("lpush", self.redis.lpush(key, *values), 0)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        return bool(await self._safe("ltrim", self.redis.ltrim(key, start, end), False))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return await self._safe("lrange", self.redis.lrange(key, start, end), [])

    # ------------------------------------------------------------------
    # Batches and scripts
    # ------------------------------------------------------------------

    async def pipeline(self, ops: Sequence[PipelineOp], transaction: bool = True) -> list | None:
        """
        Execute several commands in one round-trip.

        Each op is ``(method_name, *args)`` using redis-py method names, e.g.
        ``("zadd", key, {member: score})``. Returns the per-command results
        in order, or None when the batch could not be executed.
        """
        if not ops:
            return []

        pipe = self.redis.pipeline(transaction=transaction)
        for name, *args in ops:
            getattr(pipe, name)(*args)

        try:
            results = await self._run("pipeline", pipe.execute())
        except StoreUnavailableError:
            return None

        if results is None or len(results) != len(ops):
            logger.warning("Cache store pipeline returned %s results for %d ops",
                           None if results is None else len(results), len(ops))
            return None
        return list(results)

    async def eval_script(self, script: str, keys: Sequence[str], args: Sequence[Any]) -> Any | None:
        """Run a Lua script atomically on the server. Returns None when unavailable."""
        return await self._safe(
            "eval", self.redis.eval(script, len(keys), *keys, *args), None
        )

    async def ping(self) -> bool:
        return bool(await self._safe("ping", self.redis.ping(), False))

    # ------------------------------------------------------------------
    # Metrics and health
    # ------------------------------------------------------------------

    def get_metrics(self) -> dict[str, float]:
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "total_requests": self._total,
            "average_response_time_ms": round(self._total_latency_ms / self._total, 3) if self._total else 0.0,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "error_rate": self._errors / self._total if self._total else 0.0,
        }

    def reset_metrics(self) -> None:
        self._hits = 0
        self._misses = 0
        self._errors = 0
        self._total = 0
        self._total_latency_ms = 0.0

    async def health_check(self) -> dict[str, Any]:
        """
        Check store connectivity.

        Returns:
            {"status": "healthy|degraded|unhealthy", "redis": bool,
             "response_time_ms": float, "metrics": dict, "errors": list}
        """
        start = time.perf_counter()
        errors: list[str] = []

        redis_healthy = await self.ping()
        if not redis_healthy:
            errors.append("Redis ping failed")

        response_time_ms = round((time.perf_counter() - start) * 1000, 2)
        metrics = self.get_metrics()

        if not redis_healthy:
            status = "unhealthy"
        elif response_time_ms > 1000 or metrics["error_rate"] > 0.1:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "redis": redis_healthy,
            "response_time_ms": response_time_ms,
            "metrics": metrics,
            "errors": errors,
        }
