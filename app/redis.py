"""
Redis connection for the webhook event dedupe cache.

The cache is a fast path only: the payment rank gate is what makes webhook
handling idempotent, so callers treat a missing or failing Redis as a miss.
"""

from typing import Optional
import logging

from redis import asyncio as aioredis
from redis.asyncio.client import Redis

from app.config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Process-wide lazily created client."""

    _client: Optional[Redis] = None

    @classmethod
    def get_client(cls) -> Optional[Redis]:
        if not settings.redis_url:
            return None
        if cls._client is None:
            cls._client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                # Dedupe lookups sit on the webhook hot path
                socket_timeout=settings.redis_socket_timeout_seconds,
                health_check_interval=30,
            )
            logger.info("Webhook dedupe cache connected")

        return cls._client

    @classmethod
    async def close(cls):
        if cls._client:
            await cls._client.aclose()
            cls._client = None
            logger.info("Webhook dedupe cache closed")


async def get_redis() -> Optional[Redis]:
    """Dependency: the dedupe cache, or None when REDIS_URL is empty."""
    return RedisClient.get_client()
