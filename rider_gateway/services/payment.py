"""
Payment coordinator.

Two strategies reach the same end state (backend-confirmed ride):

  * link flow:     backend creates a hosted payment link, the UI opens it,
                   the processor redirects back with query parameters that
                   resume coordination here;
  * embedded flow: backend creates a payment intent, the card is confirmed
                   directly with Stripe, then ride status is polled for a
                   bounded number of attempts.

Amounts are Decimal major units everywhere and converted to minor units in
one place. Nothing is retried automatically.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import redis.asyncio as aioredis
from jose import JWTError, jwt

from rider_gateway.config import Settings
from rider_gateway.errors import BackendError, CardError, PaymentConfigurationError, ValidationFault
from rider_gateway.redis_client import consume_once, release_once
from rider_gateway.schemas.schemas import (
    DriverBid, PaymentOutcome, PaymentOutcomeStatus, PaymentPurposeEnum, ReturnParams, Ride, RideStatusEnum,
)
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.bids import display_driver_id, quoted_fare
from rider_gateway.services.polling import poll_until
from rider_gateway.services.status import ACCEPTED_FAMILY

logger = logging.getLogger(__name__)

RETURN_PARAMS = ("payment_success", "tip_payment_success", "psp_reference", "result_code", "state")
SUCCESS_RESULT_CODES = frozenset({"Authorised", "Received"})
# the payment-success callback may jump straight to completed
CONFIRMED_STATUSES = ACCEPTED_FAMILY | {RideStatusEnum.completed}


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

def to_minor_units(amount: Decimal) -> int:
    """Major units (12.34) to minor units (1234), half-up."""
    if amount < 0:
        raise ValidationFault("Amount must not be negative")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Return URL callback
# ---------------------------------------------------------------------------

def _truthy(value: Optional[str]) -> bool:
    return (value or "").lower() in ("1", "true", "yes")


def parse_return_params(url: str) -> ReturnParams:
    query = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
    return ReturnParams(
        payment_success=_truthy(query.get("payment_success")),
        tip_payment_success=_truthy(query.get("tip_payment_success")),
        psp_reference=query.get("psp_reference") or None,
        result_code=query.get("result_code") or None,
        state=query.get("state") or None,
    )


def strip_return_params(url: str) -> str:
    """The same URL without the payment callback parameters."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in RETURN_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


def sign_return_state(settings: Settings, ride_id: str, customer_id: str) -> str:
    """
    Token carried through the hosted payment page. The processor redirect
    has no bearer token, so this is what ties the callback to the customer
    who opened the link.
    """
    expires = datetime.now(timezone.utc) + timedelta(seconds=settings.return_marker_ttl_seconds)
    claims = {"sub": customer_id, "ride": ride_id, "scope": "payment-return", "exp": expires}
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def verify_return_state(settings: Settings, token: Optional[str], ride_id: str) -> str:
    """The customer id in a valid state token for `ride_id`."""
    claims: dict = {}
    if token:
        try:
            claims = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        except JWTError as exc:
            logger.warning("Rejected payment callback state for ride %s: %s", ride_id, exc)
    if claims.get("scope") != "payment-return" or claims.get("ride") != ride_id or not claims.get("sub"):
        raise ValidationFault("Payment callback could not be verified", title="Payment failed", status_code=403)
    return claims["sub"]


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PaymentRequest:
    ride_id: str
    amount: Decimal
    purpose: PaymentPurposeEnum
    request_id: Optional[str] = None
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    customer_id: Optional[str] = None

    @property
    def amount_minor(self) -> int:
        return to_minor_units(self.amount)

    @classmethod
    def for_bid(cls, ride_id: str, bid: DriverBid, customer_id: Optional[str] = None) -> "PaymentRequest":
        driver = bid.driver
        return cls(
            ride_id=ride_id,
            amount=quoted_fare(bid),
            purpose=PaymentPurposeEnum.bid_selection,
            request_id=bid.id,
            driver_id=driver.id if driver else None,
            driver_name=driver.name if driver else None,
            customer_id=customer_id,
        )


# ---------------------------------------------------------------------------
# Card processor
# ---------------------------------------------------------------------------

class StripeCardProcessor:
    """Confirms a PaymentIntent with the publishable key, as Stripe.js does."""

    OK_STATUSES = frozenset({"succeeded", "processing", "requires_capture"})

    def __init__(
        self,
        api_base: str,
        publishable_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.publishable_key = publishable_key
        self.timeout = timeout
        self._transport = transport

    async def confirm_card(self, client_secret: Optional[str], payment_method: Optional[str]) -> str:
        if not self.publishable_key:
            raise PaymentConfigurationError("Card payments are not configured")
        if not client_secret or "_secret_" not in client_secret:
            raise PaymentConfigurationError("Payment could not be initialised: missing client secret")
        if not payment_method:
            raise PaymentConfigurationError("Card details were not provided")

        intent_id = client_secret.split("_secret_", 1)[0]
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.api_base}/payment_intents/{intent_id}/confirm",
                    auth=(self.publishable_key, ""),
                    data={"client_secret": client_secret, "payment_method": payment_method},
                )
        except httpx.HTTPError as exc:
            logger.error("Stripe confirm failed for %s: %s", intent_id, exc)
            raise BackendError(f"Network error: {exc}") from exc

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            error = body.get("error") or {}
            message = error.get("message") or f"Payment processor error {resp.status_code}"
            if error.get("type") == "card_error" or resp.status_code == 402:
                raise CardError(message)
            raise PaymentConfigurationError(message)

        status = body.get("status")
        if status not in self.OK_STATUSES:
            raise CardError(f"Payment was not completed (status: {status})")
        logger.info("Stripe intent %s confirmed with status %s", intent_id, status)
        return intent_id


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class PaymentLinkStrategy:
    def __init__(self, backend: BackendClient, settings: Settings):
        self.backend = backend
        self.settings = settings

    def return_url(self, request: PaymentRequest) -> str:
        base = self.settings.public_base_url.rstrip("/")
        state = sign_return_state(self.settings, request.ride_id, request.customer_id)
        # the SPA and the gateway share an origin; {pspReference} and
        # {resultCode} are filled in by the processor
        return (
            f"{base}/v1/rides/{request.ride_id}/payment-return?payment_success=true&state={state}"
            "&psp_reference={pspReference}&result_code={resultCode}"
        )

    @staticmethod
    def reference(request: PaymentRequest) -> str:
        # processor references are capped at 80 chars
        tail = (request.request_id or request.purpose.value)[:8]
        return f"R{request.ride_id[:8]}B{tail}"

    async def start(self, request: PaymentRequest) -> PaymentOutcome:
        if request.purpose != PaymentPurposeEnum.bid_selection:
            raise ValidationFault("Tips are paid by card after rating the ride")
        if not request.customer_id:
            raise ValidationFault("A payment link needs the paying customer")
        if not self.settings.adyen_merchant_account:
            raise PaymentConfigurationError("Payment links are not configured")
        amount_minor = request.amount_minor
        if amount_minor <= 0:
            raise ValidationFault("Payment amount must be greater than zero")

        driver_label = display_driver_id(request.driver_id, request.driver_name, self.settings.display_id_prefix)
        body = {
            "merchantAccount": self.settings.adyen_merchant_account,
            "amount": {"currency": self.settings.currency, "value": amount_minor},
            "reference": self.reference(request),
            "description": f"Payment for ride with {driver_label}",
            "shopperLocale": "en_US",
            "returnUrl": self.return_url(request),
            "metadata": {
                "rideId": request.ride_id,
                "bidId": request.request_id,
                "driverId": request.driver_id,
                "yahDriverId": driver_label,
                "paymentType": request.purpose.value,
            },
        }
        url = await self.backend.create_payment_link(body)
        logger.info("Payment link created for ride=%s amount=%s", request.ride_id, amount_minor)
        return PaymentOutcome(
            status=PaymentOutcomeStatus.LINK_CREATED,
            ride_id=request.ride_id,
            amount_minor=amount_minor,
            url=url,
        )


class EmbeddedPaymentStrategy:
    def __init__(self, backend: BackendClient, processor: StripeCardProcessor, settings: Settings):
        self.backend = backend
        self.processor = processor
        self.settings = settings

    async def _client_secret(self, request: PaymentRequest) -> Optional[str]:
        if request.purpose == PaymentPurposeEnum.tip:
            if not request.driver_id:
                raise ValidationFault("A tip needs an assigned driver")
            return await self.backend.create_tip_payment_intent(request.ride_id, request.driver_id, request.amount)
        return await self.backend.create_payment_intent(
            request.amount_minor,
            self.settings.currency,
            {
                "rideId": request.ride_id,
                "requestId": request.request_id,
                "driverId": request.driver_id,
                "paymentType": "ride",
            },
        )

    async def pay(self, request: PaymentRequest, payment_method: Optional[str]) -> PaymentOutcome:
        amount_minor = request.amount_minor
        if amount_minor <= 0:
            raise ValidationFault("Payment amount must be greater than zero")

        client_secret = await self._client_secret(request)
        await self.processor.confirm_card(client_secret, payment_method)

        if request.purpose == PaymentPurposeEnum.tip:
            return PaymentOutcome(
                status=PaymentOutcomeStatus.CONFIRMED,
                ride_id=request.ride_id,
                amount_minor=amount_minor,
            )
        return await wait_for_acceptance(self.backend, request.ride_id, amount_minor, self.settings)


async def wait_for_acceptance(
    backend: BackendClient, ride_id: str, amount_minor: int, settings: Settings
) -> PaymentOutcome:
    """Best-effort wait for the webhook to move the ride into an accepted state."""
    matched, ride = await poll_until(
        lambda: backend.get_ride(ride_id),
        lambda r: r.status in CONFIRMED_STATUSES,
        attempts=settings.payment_confirm_attempts,
        interval=settings.payment_confirm_interval_seconds,
    )
    if not matched:
        logger.warning(
            "Ride %s not confirmed after %s attempts; payment went through, status pending",
            ride_id, settings.payment_confirm_attempts,
        )
    return PaymentOutcome(
        status=PaymentOutcomeStatus.CONFIRMED if matched else PaymentOutcomeStatus.CONFIRMATION_TIMEOUT,
        ride_id=ride_id,
        amount_minor=amount_minor,
        ride_status=ride.status if ride else None,
    )


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class PaymentCoordinator:
    def __init__(
        self,
        backend: BackendClient,
        settings: Settings,
        processor: Optional[StripeCardProcessor] = None,
    ):
        self.backend = backend
        self.settings = settings
        self.processor = processor or StripeCardProcessor(
            settings.stripe_api_base, settings.stripe_publishable_key, settings.psp_timeout_seconds
        )
        self.link = PaymentLinkStrategy(backend, settings)
        self.embedded = EmbeddedPaymentStrategy(backend, self.processor, settings)

    async def start_bid_link(self, ride: Ride, bid: DriverBid, customer_id: str) -> PaymentOutcome:
        return await self.link.start(PaymentRequest.for_bid(ride.id, bid, customer_id))

    async def pay_bid(self, ride: Ride, bid: DriverBid, payment_method: Optional[str]) -> PaymentOutcome:
        return await self.embedded.pay(PaymentRequest.for_bid(ride.id, bid), payment_method)

    async def pay_tip(self, ride: Ride, amount: Decimal, payment_method: Optional[str]) -> PaymentOutcome:
        driver_id = ride.driver.id if ride.driver else ride.driver_id
        request = PaymentRequest(
            ride_id=ride.id,
            amount=amount,
            purpose=PaymentPurposeEnum.tip,
            driver_id=driver_id,
            driver_name=ride.driver.name if ride.driver else None,
        )
        return await self.embedded.pay(request, payment_method)

    async def handle_return(
        self, ride_id: str, params: ReturnParams, redis: aioredis.Redis
    ) -> Optional[PaymentOutcome]:
        """
        Resume a link payment from the processor redirect. Each psp_reference
        is consumed once; reloading the same URL returns None. A callback the
        backend failed to record can be replayed.
        """
        if not params.present:
            return None
        if not params.payment_success:
            # tips are charged by card inside the post-ride flow, which owns the finish call
            logger.warning("Ignoring tip payment callback for ride %s", ride_id)
            return None
        if not params.psp_reference or not params.result_code:
            raise ValidationFault("Payment callback is missing psp_reference or result_code")
        customer_id = verify_return_state(self.settings, params.state, ride_id)

        marker = f"payment-return:{ride_id}:{params.psp_reference}"
        if not await consume_once(redis, marker, self.settings.return_marker_ttl_seconds):
            logger.info("Ignoring repeated payment callback %s for ride %s", params.psp_reference, ride_id)
            return None

        if params.result_code not in SUCCESS_RESULT_CODES:
            raise CardError(f"Payment was not successful ({params.result_code})")

        try:
            await self.backend.payment_success(ride_id, params.psp_reference, params.result_code)
        except BackendError:
            await release_once(redis, marker)
            raise
        logger.info("Payment %s recorded for ride %s by customer %s", params.psp_reference, ride_id, customer_id)
        return await wait_for_acceptance(self.backend, ride_id, 0, self.settings)
