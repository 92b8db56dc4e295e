"""Redis connection helper."""

from __future__ import annotations

import redis.asyncio as redis


def create_redis(redis_url: str) -> redis.Redis:
    """Create a Redis client that returns decoded strings."""
    return redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
    )


async def close_redis(client: redis.Redis | None) -> None:
    """Close a Redis client created by :func:`create_redis`."""
    if client is not None:
        await client.aclose()
