"""
config/redis_client.py
Async Redis client for the realtime fan-out broker (pub/sub)
and the unauthenticated rate limiter.
"""

import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


@retry(
    retry=retry_if_exception_type((RedisConnectionError, OSError)),
    stop=stop_after_attempt(settings.REDIS_CONNECT_ATTEMPTS),
    wait=wait_exponential(multiplier=0.5, max=8),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _connect() -> aioredis.Redis:
    client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    await client.ping()
    return client


async def init_redis() -> None:
    """Initialize the Redis connection pool, retrying while Redis comes up."""
    global redis_client
    redis_client = await _connect()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


class RateLimiter:
    """Windowed request counter keyed by caller."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def allow(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """Returns True if request is allowed, False if rate limited."""
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        return results[0] <= limit
