import redis.asyncio as aioredis
from rider_gateway.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# Consume-once markers
# ---------------------------------------------------------------------------

async def consume_once(redis: aioredis.Redis, key: str, ttl: int) -> bool:
    """True the first time `key` is seen within `ttl` seconds, False after."""
    acquired = await redis.set(f"consumed:{key}", "1", nx=True, ex=ttl)
    return bool(acquired)


async def release_once(redis: aioredis.Redis, key: str) -> None:
    """Forget `key` so the next consume_once for it succeeds again."""
    await redis.delete(f"consumed:{key}")


# ---------------------------------------------------------------------------
# Plain cache helpers
# ---------------------------------------------------------------------------

async def cache_set(redis: aioredis.Redis, key: str, value: str, ttl: int) -> None:
    await redis.setex(key, ttl, value)


async def cache_get(redis: aioredis.Redis, key: str) -> str | None:
    return await redis.get(key)

