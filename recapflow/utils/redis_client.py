"""
Shared Redis connection factory.
Connects lazily on first use; callers receive the factory as a dependency.
"""
import logging

logger = logging.getLogger(__name__)

_redis_client = None


async def get_redis():
    """Get or create the Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from recapflow.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close the shared connection (application shutdown)."""
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.debug("Redis close failed: %s", str(e))
        _redis_client = None


async def write_heartbeat(worker_name: str, ttl_seconds: int) -> None:
    """Store a worker heartbeat timestamp in Redis."""
    from datetime import datetime, timezone
    try:
        redis = await get_redis()
        await redis.set(
            f"recapflow:worker_health:{worker_name}",
            datetime.now(timezone.utc).isoformat(),
            ex=ttl_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))
