"""
Rides router: booking, the ride list, ride view, driver bids, cancellation,
the post-ride flow and the live WebSocket under /v1/rides.
"""
import logging
from typing import Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, Query, WebSocket, WebSocketDisconnect, status

from rider_gateway.config import Settings, get_settings
from rider_gateway.dependencies import get_backend, get_post_ride_flow, get_ws_backend
from rider_gateway.errors import GatewayError
from rider_gateway.middleware.auth import get_current_customer, get_websocket_customer
from rider_gateway.middleware.idempotency import check_idempotency, store_idempotency_result
from rider_gateway.redis_client import get_redis
from rider_gateway.schemas.schemas import (
    BidCard, CancelRequest, CancelResult, FinishResult, RatingRequest, RefundQuote, Ride, RideBookingRequest,
    RideListScope, RideView, TipDialog, TipPaymentRequest,
)
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.booking import book_ride, list_customer_rides
from rider_gateway.services.bids import BidFeed
from rider_gateway.services.tracker import (
    CancelDialog, FlowStage, PostRideFlow, RideLifecycleTracker, build_view,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Rides"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=Ride)
async def create_ride(
    payload: RideBookingRequest,
    backend: BackendClient = Depends(get_backend),
    redis: aioredis.Redis = Depends(get_redis),
    customer_id: str = Depends(get_current_customer),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    """
    Book a ride. It starts as `pending` and drivers bid on it.
    - Idempotent: a repeated Idempotency-Key returns the ride booked first.
    """
    cached = await check_idempotency(redis, customer_id, idempotency_key)
    if cached:
        return cached

    ride = await book_ride(backend, customer_id, payload)

    await store_idempotency_result(
        redis, customer_id, idempotency_key, status.HTTP_201_CREATED, ride.model_dump(mode="json")
    )
    return ride


@router.get("", response_model=list[Ride])
async def list_rides(
    scope: RideListScope = Query(RideListScope.all),
    backend: BackendClient = Depends(get_backend),
    customer_id: str = Depends(get_current_customer),
):
    return await list_customer_rides(backend, customer_id, scope)


@router.get("/{ride_id}", response_model=RideView)
async def get_ride(
    ride_id: str,
    backend: BackendClient = Depends(get_backend),
    flow: PostRideFlow = Depends(get_post_ride_flow),
    settings: Settings = Depends(get_settings),
    customer_id: str = Depends(get_current_customer),
):
    ride = await backend.get_customer_ride(ride_id, customer_id)
    stage = await flow.stage(ride_id)
    return build_view(ride, stage.value, settings.display_id_prefix)


@router.get("/{ride_id}/bids", response_model=list[BidCard])
async def list_bids(
    ride_id: str,
    backend: BackendClient = Depends(get_backend),
    settings: Settings = Depends(get_settings),
    customer_id: str = Depends(get_current_customer),
):
    """Bid cards while the ride is still looking for a driver; empty afterwards."""
    ride = await backend.get_customer_ride(ride_id, customer_id)
    feed = BidFeed(backend, ride_id, ride.status, prefix=settings.display_id_prefix)
    return await feed.refresh()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@router.get("/{ride_id}/refund-quote", response_model=RefundQuote)
async def get_refund_quote(
    ride_id: str,
    backend: BackendClient = Depends(get_backend),
    settings: Settings = Depends(get_settings),
    customer_id: str = Depends(get_current_customer),
):
    ride = await backend.get_customer_ride(ride_id, customer_id)
    return await CancelDialog(backend, ride, settings).quote()


@router.post("/{ride_id}/cancel", response_model=CancelResult)
async def cancel(
    ride_id: str,
    payload: CancelRequest,
    backend: BackendClient = Depends(get_backend),
    settings: Settings = Depends(get_settings),
    customer_id: str = Depends(get_current_customer),
):
    ride = await backend.get_customer_ride(ride_id, customer_id)
    return await CancelDialog(backend, ride, settings).confirm(payload.reason)


# ---------------------------------------------------------------------------
# Post-ride flow: finish -> rating -> tip (pay or skip)
# ---------------------------------------------------------------------------

@router.post("/{ride_id}/finish", response_model=FinishResult)
async def begin_finish(
    ride_id: str,
    backend: BackendClient = Depends(get_backend),
    flow: PostRideFlow = Depends(get_post_ride_flow),
    customer_id: str = Depends(get_current_customer),
):
    ride = await backend.get_customer_ride(ride_id, customer_id)
    stage = await flow.begin_finish(ride)
    return FinishResult(stage=stage.value, ride=ride)


@router.post("/{ride_id}/rating", response_model=TipDialog)
async def rate(
    ride_id: str,
    payload: RatingRequest,
    backend: BackendClient = Depends(get_backend),
    flow: PostRideFlow = Depends(get_post_ride_flow),
    customer_id: str = Depends(get_current_customer),
):
    ride = await backend.get_customer_ride(ride_id, customer_id)
    return await flow.submit_rating(ride, payload.rating, payload.emoji)


@router.post("/{ride_id}/tip", response_model=FinishResult)
async def pay_tip(
    ride_id: str,
    payload: TipPaymentRequest,
    backend: BackendClient = Depends(get_backend),
    flow: PostRideFlow = Depends(get_post_ride_flow),
    redis: aioredis.Redis = Depends(get_redis),
    customer_id: str = Depends(get_current_customer),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    cached = await check_idempotency(redis, customer_id, idempotency_key)
    if cached:
        return cached

    ride = await backend.get_customer_ride(ride_id, customer_id)
    outcome, finished = await flow.pay_tip(ride, payload.amount, payload.payment_method)
    result = FinishResult(stage=FlowStage.FINISHED.value, ride=finished, payment=outcome)

    await store_idempotency_result(
        redis, customer_id, idempotency_key, status.HTTP_200_OK, result.model_dump(mode="json")
    )
    return result


@router.post("/{ride_id}/tip/skip", response_model=FinishResult)
async def skip_tip(
    ride_id: str,
    backend: BackendClient = Depends(get_backend),
    flow: PostRideFlow = Depends(get_post_ride_flow),
    customer_id: str = Depends(get_current_customer),
):
    ride = await backend.get_customer_ride(ride_id, customer_id)
    finished = await flow.skip_tip(ride)
    return FinishResult(stage=FlowStage.FINISHED.value, ride=finished)


# ---------------------------------------------------------------------------
# Live updates
# ---------------------------------------------------------------------------

@router.websocket("/{ride_id}/live")
async def ride_live(
    websocket: WebSocket,
    ride_id: str,
    customer_id: str = Depends(get_websocket_customer),
    backend: BackendClient = Depends(get_ws_backend),
):
    """
    Pushes `ride` events on every tracker poll and `bids` events while the
    ride is biddable. Both pollers stop when the client disconnects.
    """
    settings = get_settings()
    await websocket.accept()
    feed: Optional[BidFeed] = None

    async def push_ride(ride: Ride) -> None:
        if feed is not None:
            await feed.observe_status(ride.status)
        view = build_view(ride, prefix=settings.display_id_prefix)
        await websocket.send_json({"type": "ride", "data": view.model_dump(mode="json")})

    async def push_bids(cards: list[BidCard]) -> None:
        await websocket.send_json({"type": "bids", "data": [c.model_dump(mode="json") for c in cards]})

    async def push_error(exc: GatewayError) -> None:
        await websocket.send_json({"type": "error", "data": exc.to_payload()})

    tracker = RideLifecycleTracker(
        backend, ride_id, settings.ride_poll_interval_seconds, on_update=push_ride, on_error=push_error
    )
    try:
        await backend.get_customer_ride(ride_id, customer_id)
        ride = await tracker.refresh()
    except GatewayError as exc:
        await push_error(exc)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    feed = BidFeed(
        backend, ride_id, ride.status,
        interval=settings.bid_poll_interval_seconds,
        prefix=settings.display_id_prefix,
        on_update=push_bids,
    )
    feed.start()
    try:
        async with tracker.running():
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.info("Live view for ride %s closed by customer %s", ride_id, customer_id)
    finally:
        await feed.stop()
