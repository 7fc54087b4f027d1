"""
Shared test doubles: a ride backend served by httpx.MockTransport and a
dict-backed Redis built on AsyncMock.
"""
import json
from typing import Callable, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from rider_gateway.config import Settings
from rider_gateway.schemas.schemas import Ride
from rider_gateway.services.backend import BackendClient


def ride_payload(ride_id: str = "ride-0001", status: str = "pending", **extra) -> dict:
    payload = {
        "id": ride_id,
        "customer_id": "cust-test-001",
        "pickup": "1 Market St",
        "dropoff": "Ferry Building",
        "status": status,
        "total_fare": "24.50",
        "tip_amount": 0,
    }
    payload.update(extra)
    return payload


def make_ride(status: str = "pending", **extra) -> Ride:
    return Ride.model_validate(ride_payload(status=status, **extra))


DRIVER = {"id": "drv-77123", "name": "Sam", "vehicleType": "Sedan", "rating": 4.8}


class BackendStub:
    """
    Routes requests by (method, path) to canned responses and records every
    request it saw. A route value may be a dict, a Response or a callable
    taking the request.
    """

    def __init__(self, routes: Optional[dict] = None):
        self.routes: dict = dict(routes or {})
        self.calls: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": f"no route {request.url.path}"})
        if callable(route):
            route = route(request)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)

    def client(self) -> BackendClient:
        return BackendClient("http://backend.test", transport=httpx.MockTransport(self.handler))

    def paths(self, method: Optional[str] = None) -> list[str]:
        return [r.url.path for r in self.calls if method is None or r.method == method]

    def body(self, method: str, path: str) -> dict:
        for r in self.calls:
            if r.method == method and r.url.path == path:
                return json.loads(r.content or b"{}")
        raise AssertionError(f"{method} {path} was not called")


def fake_redis() -> AsyncMock:
    store: dict[str, str] = {}
    redis = AsyncMock()
    redis.store = store

    async def _set(key, value, nx=False, ex=None):
        if nx and key in store:
            return None
        store[key] = value
        return True

    async def _setex(key, ttl, value):
        store[key] = value
        return True

    async def _get(key):
        return store.get(key)

    async def _delete(key):
        store.pop(key, None)
        return 1

    redis.set.side_effect = _set
    redis.setex.side_effect = _setex
    redis.get.side_effect = _get
    redis.delete.side_effect = _delete
    return redis


@pytest.fixture
def settings() -> Settings:
    return Settings(
        adyen_merchant_account="YahMerchant",
        stripe_publishable_key="pk_test_123",
        public_base_url="https://app.yah.test",
        payment_confirm_attempts=3,
        payment_confirm_interval_seconds=0,
    )


@pytest.fixture
def redis() -> AsyncMock:
    return fake_redis()


@pytest.fixture
def backend_stub() -> Callable[..., BackendStub]:
    return BackendStub


@pytest.fixture
def ride_factory() -> Callable[..., Ride]:
    return make_ride


@pytest.fixture
def ride_json() -> Callable[..., dict]:
    return ride_payload


@pytest.fixture
def driver_json() -> dict:
    return dict(DRIVER)
