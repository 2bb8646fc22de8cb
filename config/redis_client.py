"""
config/redis_client.py
Async Redis client. The API only keeps short-lived keys here: revoked token
ids and per-IP request counters for anonymous traffic.
"""

from typing import Optional

import redis.asyncio as aioredis

from config.settings import settings

REVOKED_PREFIX = "homeserve:jwt_revoked:"
RATE_PREFIX = "homeserve:rate:"

redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
    )
    await redis_client.ping()


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency; the pool is opened in the app lifespan."""
    if redis_client is None:
        raise RuntimeError("Redis is not connected; init_redis() runs at startup")
    return redis_client


class RedisCache:
    """Thin wrapper naming the key patterns this service relies on."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Token deny-list ───────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        await self.client.setex(f"{REVOKED_PREFIX}{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"{REVOKED_PREFIX}{jti}") == 1

    # ── Rate limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """Fixed window counter. True while ``key`` is under ``limit`` hits per window."""
        pipe = self.client.pipeline()
        pipe.incr(f"{RATE_PREFIX}{key}")
        pipe.expire(f"{RATE_PREFIX}{key}", window_seconds, nx=True)
        hits, _ = await pipe.execute()
        return hits <= limit
