"""
Redis client initialization and connection management.

Redis holds the ephemeral side of dispatch: matching-round records and
advisory decline sets, all written with a TTL. Nothing in it is needed for
correctness; the request ledger in the database is authoritative.
"""

import redis.asyncio as redis
from dispatch_backend.app.core.config import settings


# Create async Redis client
redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """
    Get Redis client instance.

    This can be used as a FastAPI dependency if needed.
    """
    return redis_client


async def ping_redis(client=None) -> bool:
    """
    Test Redis connection.

    Returns:
        True if connection successful, False otherwise
    """
    client = client or redis_client
    try:
        return bool(await client.ping())
    except (redis.RedisError, OSError):
        return False


async def close_redis() -> None:
    """Close the shared client on application shutdown."""
    await redis_client.aclose()
