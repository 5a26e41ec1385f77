"""
Valkey client module.

Holds the lazily-created redis-py asyncio client used for short-lived shared
state: webhook delivery dedupe keys, OAuth state nonces, and the activity
pub/sub channel. Valkey is Redis-compatible.
"""

from typing import Optional

import redis.asyncio as redis

from tasklink.core.config import settings
from tasklink.core.logging import get_logger

logger = get_logger(__name__)

# Global client instance (lazily initialized)
_redis_client: Optional[redis.Redis] = None


def _redis_url(url: str) -> str:
    # redis-py only understands redis:// and rediss://
    return url.replace("valkeys://", "rediss://").replace("valkey://", "redis://")


async def get_valkey_client() -> redis.Redis:
    """Get or create the global async client for Valkey."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            _redis_url(settings.VALKEY_URL), decode_responses=True
        )
        logger.info("Valkey client initialized")
    return _redis_client


async def close_valkey() -> None:
    """Close the global Valkey client connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Valkey client closed.")


async def claim_once(client: redis.Redis, key: str, ttl_seconds: int) -> bool:
    """
    Atomically mark ``key`` as seen.

    Returns True for the first caller within the TTL, False for every later one.
    """
    return bool(await client.set(key, "1", nx=True, ex=max(int(ttl_seconds), 1)))
