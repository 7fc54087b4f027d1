"""
Payments router: bid selection (payment link or embedded card) and the
processor's return callback.
"""
import logging
from typing import Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import RedirectResponse

from rider_gateway.config import Settings, get_settings
from rider_gateway.dependencies import get_backend, get_coordinator
from rider_gateway.middleware.auth import get_current_customer
from rider_gateway.middleware.idempotency import check_idempotency, store_idempotency_result
from rider_gateway.redis_client import get_redis
from rider_gateway.schemas.schemas import CardPaymentRequest, PaymentOutcome, ReturnParams
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.bids import load_bid
from rider_gateway.services.payment import PaymentCoordinator, strip_return_params

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Payments"])


@router.post("/{ride_id}/bids/{bid_id}/payment-link", response_model=PaymentOutcome)
async def create_bid_payment_link(
    ride_id: str,
    bid_id: str,
    backend: BackendClient = Depends(get_backend),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
    customer_id: str = Depends(get_current_customer),
):
    """Hosted payment page for the selected bid; the UI opens `url`."""
    ride = await backend.get_customer_ride(ride_id, customer_id)
    bid = await load_bid(backend, ride, bid_id)
    return await coordinator.start_bid_link(ride, bid, customer_id)


@router.post("/{ride_id}/bids/{bid_id}/pay", response_model=PaymentOutcome)
async def pay_for_bid(
    ride_id: str,
    bid_id: str,
    payload: CardPaymentRequest,
    backend: BackendClient = Depends(get_backend),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
    redis: aioredis.Redis = Depends(get_redis),
    customer_id: str = Depends(get_current_customer),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    """
    Confirm the card for the selected bid, then wait (bounded) for the
    backend to accept the ride.
    - Idempotent: repeated calls with the same key return the same result.
    - `confirmation_timeout` means the card was charged but acceptance was
      not observed yet; the ride view keeps polling.
    """
    cached = await check_idempotency(redis, customer_id, idempotency_key)
    if cached:
        return cached

    ride = await backend.get_customer_ride(ride_id, customer_id)
    bid = await load_bid(backend, ride, bid_id)
    outcome = await coordinator.pay_bid(ride, bid, payload.payment_method)

    await store_idempotency_result(
        redis, customer_id, idempotency_key, status.HTTP_200_OK, outcome.model_dump(mode="json")
    )
    return outcome


@router.get("/{ride_id}/payment-return")
async def payment_return(
    ride_id: str,
    request: Request,
    payment_success: bool = Query(False),
    tip_payment_success: bool = Query(False),
    psp_reference: Optional[str] = Query(None),
    result_code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
    redis: aioredis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
):
    """
    Landing point for the processor redirect. Each psp_reference is handled
    once, then the browser is sent to the ride page without the callback
    parameters so a reload cannot replay it.
    The redirect carries no bearer token; the signed `state` from the link
    identifies the customer.
    """
    params = ReturnParams(
        payment_success=payment_success,
        tip_payment_success=tip_payment_success,
        psp_reference=psp_reference,
        result_code=result_code,
        state=state,
    )
    outcome = await coordinator.handle_return(ride_id, params, redis)
    if outcome is not None:
        logger.info("Payment return for ride %s -> %s", ride_id, outcome.status.value)

    base = settings.public_base_url.rstrip("/")
    target = strip_return_params(f"{base}/ride/{ride_id}?{request.url.query}")
    return RedirectResponse(target, status_code=status.HTTP_303_SEE_OTHER)
