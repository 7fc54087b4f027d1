import json
from typing import Optional

import redis.asyncio as aioredis
from fastapi.responses import JSONResponse


IDEMPOTENCY_TTL = 86400  # 24 hours


def _cache_key(customer_id: str, key: str) -> str:
    return f"idempotency:{customer_id}:{key}"


async def check_idempotency(
    redis: aioredis.Redis,
    customer_id: str,
    key: Optional[str],
) -> Optional[JSONResponse]:
    """
    Returns the stored response if this Idempotency-Key was already used by
    the customer, otherwise None (proceed normally).
    """
    if not key:
        return None

    cached = await redis.get(_cache_key(customer_id, key))
    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(
    redis: aioredis.Redis, customer_id: str, key: Optional[str], status_code: int, body: dict
) -> None:
    """Persist the response for the given idempotency key (24h TTL)."""
    if not key:
        return
    await redis.setex(
        _cache_key(customer_id, key),
        IDEMPOTENCY_TTL,
        json.dumps({"status_code": status_code, "body": body}),
    )
