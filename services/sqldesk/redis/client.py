"""
Redis client management for the SQLDesk core.

Redis backs the read-through cache of the shared template catalog. It is
optional: services accept ``redis=None`` and read straight from the database.
Follows the same lifecycle pattern as db/session.py.
"""

import redis.asyncio as aioredis

from sqldesk.config import settings
from sqldesk.logging_config import get_logger

logger = get_logger(__name__)

# Module-level client reference, initialized at startup
_redis: aioredis.Redis | None = None


async def init_redis(redis_url: str | None = None) -> None:
    """Initialize Redis connection pool."""
    global _redis  # noqa: PLW0603
    logger.info("Initializing Redis connection")
    _redis = aioredis.from_url(
        redis_url or str(settings.redis_url),
        decode_responses=True,
    )
    await _redis.ping()
    logger.info("Redis connection established")


async def close_redis() -> None:
    """Close Redis connection pool."""
    global _redis  # noqa: PLW0603
    if _redis is not None:
        logger.info("Closing Redis connection pool")
        await _redis.aclose()
        _redis = None


def get_redis_client() -> aioredis.Redis:
    """Return the Redis client. Raises if not initialized."""
    if _redis is None:
        raise RuntimeError("Redis client not initialized, call init_redis() first")
    return _redis


async def get_redis_health() -> bool:
    """Check Redis health for readiness probes."""
    try:
        if _redis is None:
            return False
        await _redis.ping()
        return True
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        return False
