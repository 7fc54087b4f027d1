"""Request-scoped accessors for the objects built in the app lifespan."""
import redis.asyncio as aioredis
from fastapi import Depends, Request, WebSocket

from rider_gateway.redis_client import get_redis
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.chat import RedisBroker
from rider_gateway.services.payment import PaymentCoordinator
from rider_gateway.services.tracker import PostRideFlow, RedisFlowStore


def get_backend(request: Request) -> BackendClient:
    return request.app.state.backend


def get_coordinator(request: Request) -> PaymentCoordinator:
    return request.app.state.coordinator


def get_ws_backend(websocket: WebSocket) -> BackendClient:
    return websocket.app.state.backend


async def get_post_ride_flow(
    backend: BackendClient = Depends(get_backend),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
    redis: aioredis.Redis = Depends(get_redis),
) -> PostRideFlow:
    return PostRideFlow(backend, coordinator, RedisFlowStore(redis))


async def get_broker(redis: aioredis.Redis = Depends(get_redis)) -> RedisBroker:
    return RedisBroker(redis)
