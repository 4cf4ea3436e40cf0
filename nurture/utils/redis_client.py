"""
Shared async Redis client (lazily initialized).
Used for worker heartbeats and alert cooldowns - never on the dispatch path.
"""
import logging

logger = logging.getLogger(__name__)

_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from nurture.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client
