"""Redis connection management - no caching to avoid event loop issues."""

import logging
from typing import Optional

from redis.asyncio import Redis

from coach_stream.core.config import settings

logger = logging.getLogger(__name__)


def get_redis_client(url: Optional[str] = None) -> Redis:
    """Get Redis client (creates fresh client to avoid event loop issues)."""
    redis_url = url or settings.redis_url.get_secret_value()
    redis_password = settings.redis_password.get_secret_value() if settings.redis_password else None
    return Redis.from_url(
        url=redis_url,
        password=redis_password,
        decode_responses=False,
    )


async def test_redis_connection(url: Optional[str] = None) -> bool:
    """Test Redis connection health.

    Args:
        url: Optional Redis URL to test. If not provided, uses default from settings.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        client = get_redis_client(url=url)
        await client.ping()
        await client.aclose()
        return True
    except Exception as e:
        logger.error(f"Redis connection test failed: {e}")
        return False
