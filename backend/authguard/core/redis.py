"""Redis client construction for the shared cache store."""

import redis.asyncio as redis

from authguard.core.config import Settings


def create_redis(settings: Settings) -> redis.Redis:
    """
    Create a Redis client for the given settings.

    Socket timeouts bound every round-trip so a stalled server cannot hang
    a request. The caller owns the client and must close it on shutdown.
    """
    return redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_TIMEOUT_SECONDS,
    )


async def close_redis(client: redis.Redis | None) -> None:
    """
    Close a Redis client.

    Should be called during application shutdown.
    """
    if client is not None:
        await client.aclose()
