"""
config/redis_client.py
Async Redis client for rate limiting and pub/sub fan-out of
request lifecycle and chat events.
"""

from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Only publish the client once it answers
    await client.ping()
    redis_client = client


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()


def get_optional_redis() -> Optional[aioredis.Redis]:
    """Redis client, or None when Redis is not up. For fail-open features."""
    return redis_client


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        return await self.record_hit(key, window_seconds) <= limit

    async def record_hit(self, key: str, window_seconds: int = 60) -> int:
        """Count one hit in the current window. Returns the new count."""
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        results = await pipe.execute()
        return results[0]

    async def hit_count(self, key: str) -> int:
        value = await self.client.get(key)
        return int(value) if value else 0
