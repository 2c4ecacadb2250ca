"""
Redis connection for the settlement lock.

Redis only coordinates concurrent terminators; billing correctness never
depends on it. Every caller must tolerate it being unreachable.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from consultpay.app.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """Current client. Looked up per call so it can be swapped out."""
    return redis_client


async def ping_redis() -> bool:
    """True if the lock store answers."""
    try:
        return bool(await redis_client.ping())
    except (RedisError, OSError) as e:
        logger.warning("Redis ping failed: %s", e)
        return False


async def close_redis() -> None:
    try:
        await redis_client.aclose()
    except (RedisError, OSError) as e:
        logger.warning("Error closing Redis connection: %s", e)
