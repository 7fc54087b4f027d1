"""
Ride lifecycle tracking and the post-ride sequence.

The tracker only observes: ride status comes from the backend (polled every
20 seconds) and every action is offered or refused from that status. The
post-ride sequence is strictly rate -> tip (pay or skip) -> finish, and the
finish call happens exactly once.
"""
import json
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel

from rider_gateway.config import Settings
from rider_gateway.errors import GatewayError, ValidationFault
from rider_gateway.redis_client import cache_get, cache_set, consume_once, release_once
from rider_gateway.schemas.schemas import (
    CancelResult, PaymentOutcome, PaymentOutcomeStatus, RatingEnum, RefundQuote, ReportRequest, Ride,
    RideActions, RideView, TipBounds, TipDialog,
)
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.bids import display_driver_id
from rider_gateway.services.payment import PaymentCoordinator
from rider_gateway.services.polling import Poller, maybe_await
from rider_gateway.services.status import (
    can_cancel, can_finish, can_report, is_biddable, is_forward_transition,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

def actions_for(ride: Ride) -> RideActions:
    return RideActions(
        can_cancel=can_cancel(ride.status),
        can_report=can_report(ride.status) and ride.driver is not None,
        can_finish=can_finish(ride.status),
        shows_bids=is_biddable(ride.status),
    )


def build_view(ride: Ride, stage: Optional[str] = None, prefix: str = "Yah") -> RideView:
    driver = ride.driver
    return RideView(
        ride=ride,
        actions=actions_for(ride),
        display_driver_id=display_driver_id(driver.id, driver.name, prefix) if driver else None,
        post_ride_stage=stage,
    )


class RideLifecycleTracker:
    def __init__(
        self,
        backend: BackendClient,
        ride_id: str,
        interval: float = 20.0,
        on_update: Optional[Callable[[Ride], Any]] = None,
        on_error: Optional[Callable[[GatewayError], Any]] = None,
    ):
        self.backend = backend
        self.ride_id = ride_id
        self.ride: Optional[Ride] = None
        self._on_update = on_update
        self._poller: Poller[Ride] = Poller(
            fetch=lambda: self.backend.get_ride(self.ride_id),
            on_result=self._apply,
            interval=interval,
            on_error=on_error,
            name=f"ride:{ride_id}",
        )

    async def _apply(self, ride: Ride) -> None:
        previous = self.ride
        if previous is not None and not is_forward_transition(previous.status, ride.status):
            # polls are last-write-wins; record it and move on
            logger.warning(
                "Ride %s status went %s -> %s", self.ride_id, previous.status.value, ride.status.value
            )
        self.ride = ride
        if self._on_update is not None:
            await maybe_await(self._on_update(ride))

    async def refresh(self) -> Ride:
        ride = await self.backend.get_ride(self.ride_id)
        await self._apply(ride)
        return ride

    def start(self) -> None:
        self._poller.start()

    async def stop(self) -> None:
        await self._poller.stop()

    @property
    def polling(self) -> bool:
        return self._poller.alive

    def view(self, stage: Optional[str] = None, prefix: str = "Yah") -> Optional[RideView]:
        if self.ride is None:
            return None
        return build_view(self.ride, stage, prefix)

    @asynccontextmanager
    async def running(self) -> AsyncIterator["RideLifecycleTracker"]:
        self.start()
        try:
            yield self
        finally:
            await self.stop()


# ---------------------------------------------------------------------------
# Post-ride flow: rate -> tip -> finish
# ---------------------------------------------------------------------------

class FlowStage(str, Enum):
    IDLE = "idle"
    RATING = "rating"
    TIPPING = "tipping"
    FINISHED = "finished"


class FlowState(BaseModel):
    stage: FlowStage = FlowStage.IDLE
    tip_min: Decimal = Decimal("0")
    tip_max: Decimal = Decimal("0")
    # set once the tip charge went through, so a retry only repeats the finish
    tip_paid_minor: Optional[int] = None


class RedisFlowStore:
    """Keeps the per-ride stage between HTTP requests."""

    TTL = 6 * 3600

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    @staticmethod
    def _key(ride_id: str) -> str:
        return f"ride:{ride_id}:post_ride"

    async def load(self, ride_id: str) -> FlowState:
        raw = await cache_get(self.redis, self._key(ride_id))
        if not raw:
            return FlowState()
        return FlowState.model_validate(json.loads(raw))

    async def save(self, ride_id: str, state: FlowState) -> None:
        await cache_set(self.redis, self._key(ride_id), state.model_dump_json(), ttl=self.TTL)

    async def claim_finish(self, ride_id: str) -> bool:
        return await consume_once(self.redis, f"ride-finish:{ride_id}", self.TTL)

    async def release_finish(self, ride_id: str) -> None:
        await release_once(self.redis, f"ride-finish:{ride_id}")


class PostRideFlow:
    def __init__(self, backend: BackendClient, coordinator: PaymentCoordinator, store: RedisFlowStore):
        self.backend = backend
        self.coordinator = coordinator
        self.store = store

    async def stage(self, ride_id: str) -> FlowStage:
        return (await self.store.load(ride_id)).stage

    async def _require(self, ride_id: str, stage: FlowStage, message: str) -> FlowState:
        state = await self.store.load(ride_id)
        if state.stage != stage:
            raise ValidationFault(message, title="Not available yet", status_code=409)
        return state

    async def begin_finish(self, ride: Ride) -> FlowStage:
        """'Finish Ride' tapped: open the rating dialog."""
        if not can_finish(ride.status):
            raise ValidationFault(
                f"A ride that is {ride.status.value} cannot be finished", status_code=409
            )
        state = await self.store.load(ride.id)
        if state.stage == FlowStage.FINISHED:
            raise ValidationFault("This ride has already been finished", status_code=409)
        if state.stage == FlowStage.IDLE:
            state.stage = FlowStage.RATING
            await self.store.save(ride.id, state)
        return state.stage

    async def submit_rating(self, ride: Ride, rating: RatingEnum, emoji: Optional[str] = None) -> TipDialog:
        state = await self._require(ride.id, FlowStage.RATING, "Tap Finish Ride before rating")
        await self.backend.rate_ride(ride.id, int(rating), emoji)
        logger.info("Ride %s rated %s", ride.id, int(rating))

        try:
            bounds = await self.backend.tip_bounds(ride.id)
        except GatewayError as exc:
            # bounds are advisory; the backend validates the tip anyway
            logger.warning("Tip bounds unavailable for ride %s: %s", ride.id, exc.detail)
            bounds = TipBounds()

        state.stage = FlowStage.TIPPING
        state.tip_min, state.tip_max = bounds.min, bounds.max
        await self.store.save(ride.id, state)
        return TipDialog(ride_id=ride.id, bounds=bounds)

    async def pay_tip(
        self, ride: Ride, amount: Decimal, payment_method: Optional[str]
    ) -> tuple[PaymentOutcome, Optional[Ride]]:
        state = await self._require(ride.id, FlowStage.TIPPING, "Rate the ride before tipping")
        if state.tip_paid_minor is not None:
            logger.info("Tip for ride %s already charged; retrying finish only", ride.id)
            outcome = PaymentOutcome(
                status=PaymentOutcomeStatus.CONFIRMED, ride_id=ride.id, amount_minor=state.tip_paid_minor
            )
        else:
            if amount <= 0:
                raise ValidationFault("Tip must be greater than zero")
            if (state.tip_min and amount < state.tip_min) or (state.tip_max and amount > state.tip_max):
                raise ValidationFault(f"Tip must be between {state.tip_min} and {state.tip_max}")
            outcome = await self.coordinator.pay_tip(ride, amount, payment_method)
            state.tip_paid_minor = outcome.amount_minor
            await self.store.save(ride.id, state)

        finished = await self._finish(ride.id, state)
        return outcome, finished

    async def skip_tip(self, ride: Ride) -> Optional[Ride]:
        state = await self._require(ride.id, FlowStage.TIPPING, "Rate the ride before skipping the tip")
        return await self._finish(ride.id, state)

    async def _finish(self, ride_id: str, state: FlowState) -> Optional[Ride]:
        if not await self.store.claim_finish(ride_id):
            raise ValidationFault("This ride has already been finished", status_code=409)
        try:
            ride = await self.backend.finish_ride(ride_id)
        except GatewayError:
            # the ride was not finished; let the customer try again
            await self.store.release_finish(ride_id)
            raise
        state.stage = FlowStage.FINISHED
        await self.store.save(ride_id, state)
        logger.info("Ride %s finished", ride_id)
        return ride


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelDialog:
    def __init__(self, backend: BackendClient, ride: Ride, settings: Settings):
        self.backend = backend
        self.ride = ride
        self.settings = settings

    def _require_cancellable(self) -> None:
        if not can_cancel(self.ride.status):
            raise ValidationFault(
                f"A ride that is {self.ride.status.value} can no longer be cancelled",
                title="Cancellation Failed",
                status_code=409,
            )

    async def quote(self) -> RefundQuote:
        """Non-binding estimate; the backend computes the amount."""
        self._require_cancellable()
        return await self.backend.refund_quote(self.ride.id)

    async def confirm(self, reason: Optional[str]) -> CancelResult:
        self._require_cancellable()
        reason = (reason or "").strip() or None
        data = await self.backend.cancel_ride(self.ride.id, reason)
        logger.info("Ride %s cancelled (reason=%r)", self.ride.id, reason)
        cancelled = data.get("ride")
        return CancelResult(
            ride=Ride.model_validate(cancelled) if cancelled else None,
            refund_amount_cents=data.get("refundAmountCents"),
            redirect_after_seconds=self.settings.cancel_redirect_delay_seconds,
        )


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

async def submit_report(backend: BackendClient, ride: Ride, customer_id: str, report: ReportRequest) -> dict:
    if not can_report(ride.status) or ride.driver is None:
        raise ValidationFault(
            f"A driver cannot be reported while the ride is {ride.status.value}", status_code=409
        )
    custom_reason = (report.custom_reason or "").strip() or None
    if report.violation_type_id is None and custom_reason is None:
        raise ValidationFault(
            "Please select a violation type or provide a custom reason.",
            title="Select Violation Type",
        )

    description = (report.description or "").strip() or None
    body = {
        "driverId": ride.driver.id,
        "rideId": ride.id,
        "customerId": customer_id,
        "reportedBy": "customer",
        "violationTypeId": report.violation_type_id,
        "customReason": custom_reason,
        "description": description,
        "mediaFiles": [m.model_dump() for m in report.media] or None,
        "hasMedia": bool(report.media),
        "status": "pending",
    }
    result = await backend.create_report(body)
    logger.info("Report filed for ride=%s driver=%s", ride.id, ride.driver.id)
    return result
