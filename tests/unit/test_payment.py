"""
Unit tests for the payment coordinator: link flow, embedded card flow and
the processor return callback.
"""
import httpx
import pytest
from decimal import Decimal

from rider_gateway.errors import BackendError, CardError, PaymentConfigurationError, ValidationFault
from rider_gateway.schemas.schemas import (
    DriverBid, PaymentOutcomeStatus, PaymentPurposeEnum, ReturnParams, RideStatusEnum,
)
from rider_gateway.services.payment import (
    PaymentCoordinator, PaymentRequest, StripeCardProcessor, parse_return_params, sign_return_state,
    verify_return_state,
)

RIDE_ID = "9f1c2d3e-aaaa-bbbb-cccc-000000000001"
BID_ID = "7b7b7b7b-1111-2222-3333-444444444444"


def stripe_processor(status_code=200, body=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=body if body is not None else {"status": "succeeded"})
    return StripeCardProcessor("https://stripe.test/v1", "pk_test_123", transport=httpx.MockTransport(handler))


def bid(driver_json):
    return DriverBid.model_validate({
        "id": BID_ID,
        "estimated_fare_min": "18.00",
        "estimated_fare_max": "22.50",
        "drivers": driver_json,
    })


def ride_sequence(ride_json, *statuses):
    """GET /api/rides/:id answers with each status in turn, then repeats the last."""
    remaining = list(statuses)

    def route(_request):
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(200, json={"ride": ride_json(ride_id=RIDE_ID, status=status)})
    return route


@pytest.mark.asyncio
class TestPaymentLink:
    async def test_link_request_body(self, backend_stub, settings, ride_factory, driver_json):
        stub = backend_stub({("POST", "/api/payments/link"): {"success": True, "url": "https://pay.test/abc"}})
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())

        outcome = await coordinator.start_bid_link(ride_factory(id=RIDE_ID), bid(driver_json), "cust-1")

        assert outcome.status == PaymentOutcomeStatus.LINK_CREATED
        assert outcome.url == "https://pay.test/abc"
        assert outcome.amount_minor == 2250
        body = stub.body("POST", "/api/payments/link")
        assert body["merchantAccount"] == "YahMerchant"
        assert body["amount"] == {"currency": "USD", "value": 2250}
        assert body["reference"] == "R9f1c2d3eB7b7b7b7b"
        assert "Yah-7123 Sam" in body["description"]
        assert body["returnUrl"].startswith(
            f"https://app.yah.test/v1/rides/{RIDE_ID}/payment-return?payment_success=true"
        )
        assert "psp_reference={pspReference}" in body["returnUrl"]
        state = parse_return_params(body["returnUrl"]).state
        assert verify_return_state(settings, state, RIDE_ID) == "cust-1"

    async def test_backend_refusal(self, backend_stub, settings, ride_factory, driver_json):
        stub = backend_stub({("POST", "/api/payments/link"): {"success": False, "error": "Merchant disabled"}})
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        with pytest.raises(BackendError) as exc:
            await coordinator.start_bid_link(ride_factory(id=RIDE_ID), bid(driver_json), "cust-1")
        assert exc.value.detail == "Merchant disabled"

    async def test_unconfigured_merchant(self, backend_stub, settings, ride_factory, driver_json):
        settings.adyen_merchant_account = ""
        coordinator = PaymentCoordinator(backend_stub().client(), settings, processor=stripe_processor())
        with pytest.raises(PaymentConfigurationError):
            await coordinator.start_bid_link(ride_factory(id=RIDE_ID), bid(driver_json), "cust-1")

    async def test_tips_never_go_through_a_link(self, backend_stub, settings):
        stub = backend_stub()
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        request = PaymentRequest(
            ride_id=RIDE_ID, amount=Decimal("5"), purpose=PaymentPurposeEnum.tip, customer_id="cust-1"
        )
        with pytest.raises(ValidationFault):
            await coordinator.link.start(request)
        assert stub.calls == []


@pytest.mark.asyncio
class TestEmbeddedPayment:
    async def test_bid_confirmed_once_ride_accepted(self, backend_stub, settings, ride_factory, ride_json, driver_json):
        seen = []
        stub = backend_stub({
            ("POST", "/api/stripe/create-payment-intent"): {"clientSecret": "pi_42_secret_xyz"},
            ("GET", f"/api/rides/{RIDE_ID}"): ride_sequence(ride_json, "searching_driver", "accepted"),
        })
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor(seen=seen))

        outcome = await coordinator.pay_bid(ride_factory(id=RIDE_ID), bid(driver_json), "pm_card_visa")

        assert outcome.status == PaymentOutcomeStatus.CONFIRMED
        assert outcome.ride_status == RideStatusEnum.accepted
        assert stub.body("POST", "/api/stripe/create-payment-intent")["amount"] == 2250
        assert seen[0].url.path == "/v1/payment_intents/pi_42/confirm"

    async def test_confirmation_timeout_is_not_an_error(self, backend_stub, settings, ride_factory, ride_json, driver_json):
        stub = backend_stub({
            ("POST", "/api/stripe/create-payment-intent"): {"clientSecret": "pi_42_secret_xyz"},
            ("GET", f"/api/rides/{RIDE_ID}"): ride_sequence(ride_json, "searching_driver"),
        })
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())

        outcome = await coordinator.pay_bid(ride_factory(id=RIDE_ID), bid(driver_json), "pm_card_visa")

        assert outcome.status == PaymentOutcomeStatus.CONFIRMATION_TIMEOUT
        assert stub.paths("GET").count(f"/api/rides/{RIDE_ID}") == settings.payment_confirm_attempts

    async def test_missing_client_secret(self, backend_stub, settings, ride_factory, driver_json):
        stub = backend_stub({("POST", "/api/stripe/create-payment-intent"): {}})
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        with pytest.raises(PaymentConfigurationError):
            await coordinator.pay_bid(ride_factory(id=RIDE_ID), bid(driver_json), "pm_card_visa")

    async def test_card_declined_message_verbatim(self, backend_stub, settings, ride_factory, driver_json):
        stub = backend_stub({("POST", "/api/stripe/create-payment-intent"): {"clientSecret": "pi_42_secret_xyz"}})
        declined = stripe_processor(402, {"error": {"type": "card_error", "message": "Your card was declined."}})
        coordinator = PaymentCoordinator(stub.client(), settings, processor=declined)
        with pytest.raises(CardError) as exc:
            await coordinator.pay_bid(ride_factory(id=RIDE_ID), bid(driver_json), "pm_card_visa")
        assert exc.value.detail == "Your card was declined."

    async def test_tip_uses_tip_intent_in_major_units(self, backend_stub, settings, ride_factory, driver_json):
        stub = backend_stub({
            ("POST", f"/api/rides/{RIDE_ID}/tips/payment-intent"): {"clientSecret": "pi_7_secret_t"},
        })
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        ride = ride_factory(id=RIDE_ID, status="in_progress", driver=driver_json)

        outcome = await coordinator.pay_tip(ride, Decimal("5.00"), "pm_card_visa")

        assert outcome.status == PaymentOutcomeStatus.CONFIRMED
        assert outcome.amount_minor == 500
        body = stub.body("POST", f"/api/rides/{RIDE_ID}/tips/payment-intent")
        assert body == {"driver_id": "drv-77123", "tip_amount": 5.0}

    async def test_tip_without_driver(self, backend_stub, settings, ride_factory):
        coordinator = PaymentCoordinator(backend_stub().client(), settings, processor=stripe_processor())
        with pytest.raises(ValidationFault):
            await coordinator.pay_tip(ride_factory(id=RIDE_ID), Decimal("5"), "pm_card_visa")


@pytest.mark.asyncio
class TestPaymentReturn:
    def success(self, settings, psp="PSP1", result_code="Authorised", customer="cust-1"):
        return ReturnParams(
            payment_success=True,
            psp_reference=psp,
            result_code=result_code,
            state=sign_return_state(settings, RIDE_ID, customer),
        )

    async def test_no_params_is_noop(self, backend_stub, settings, redis):
        stub = backend_stub()
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        assert await coordinator.handle_return(RIDE_ID, ReturnParams(), redis) is None
        assert stub.calls == []

    async def test_success_consumed_once(self, backend_stub, settings, redis, ride_json):
        stub = backend_stub({
            ("POST", f"/api/rides/{RIDE_ID}/payment-success"): {"success": True},
            ("GET", f"/api/rides/{RIDE_ID}"): ride_sequence(ride_json, "completed"),
        })
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        params = self.success(settings)

        first = await coordinator.handle_return(RIDE_ID, params, redis)
        second = await coordinator.handle_return(RIDE_ID, params, redis)

        assert first.status == PaymentOutcomeStatus.CONFIRMED
        assert second is None
        assert stub.paths("POST").count(f"/api/rides/{RIDE_ID}/payment-success") == 1
        assert stub.body("POST", f"/api/rides/{RIDE_ID}/payment-success") == {
            "pspReference": "PSP1", "resultCode": "Authorised", "rideId": RIDE_ID,
        }

    async def test_backend_failure_leaves_callback_replayable(self, backend_stub, settings, redis, ride_json):
        replies = [httpx.Response(503, json={"message": "busy"}), httpx.Response(200, json={"success": True})]
        stub = backend_stub({
            ("POST", f"/api/rides/{RIDE_ID}/payment-success"): lambda _r: replies.pop(0),
            ("GET", f"/api/rides/{RIDE_ID}"): ride_sequence(ride_json, "accepted"),
        })
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        params = self.success(settings, psp="PSP9")

        with pytest.raises(BackendError):
            await coordinator.handle_return(RIDE_ID, params, redis)
        outcome = await coordinator.handle_return(RIDE_ID, params, redis)

        assert outcome.status == PaymentOutcomeStatus.CONFIRMED
        assert stub.paths("POST").count(f"/api/rides/{RIDE_ID}/payment-success") == 2
        assert await coordinator.handle_return(RIDE_ID, params, redis) is None

    async def test_tip_callback_never_finishes_ride(self, backend_stub, settings, redis):
        stub = backend_stub({("POST", f"/api/rides/{RIDE_ID}/finish"): {}})
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        params = ReturnParams(tip_payment_success=True, psp_reference="PSP2", result_code="Received")

        assert await coordinator.handle_return(RIDE_ID, params, redis) is None
        assert stub.calls == []

    async def test_unsigned_callback_rejected(self, backend_stub, settings, redis):
        stub = backend_stub()
        coordinator = PaymentCoordinator(stub.client(), settings, processor=stripe_processor())
        params = ReturnParams(payment_success=True, psp_reference="PSP4", result_code="Authorised")

        with pytest.raises(ValidationFault) as exc:
            await coordinator.handle_return(RIDE_ID, params, redis)
        assert exc.value.status_code == 403
        assert stub.calls == []

    async def test_state_for_another_ride_rejected(self, backend_stub, settings, redis):
        coordinator = PaymentCoordinator(backend_stub().client(), settings, processor=stripe_processor())
        params = self.success(settings, psp="PSP5")
        with pytest.raises(ValidationFault):
            await coordinator.handle_return("some-other-ride", params, redis)

    async def test_state_signed_with_another_key_rejected(self, backend_stub, settings, redis):
        params = self.success(settings, psp="PSP6")
        settings.secret_key = "rotated-secret"
        coordinator = PaymentCoordinator(backend_stub().client(), settings, processor=stripe_processor())
        with pytest.raises(ValidationFault):
            await coordinator.handle_return(RIDE_ID, params, redis)

    async def test_refused_result_code(self, backend_stub, settings, redis):
        coordinator = PaymentCoordinator(backend_stub().client(), settings, processor=stripe_processor())
        with pytest.raises(CardError):
            await coordinator.handle_return(RIDE_ID, self.success(settings, psp="PSP3", result_code="Refused"), redis)

    async def test_missing_reference(self, backend_stub, settings, redis):
        coordinator = PaymentCoordinator(backend_stub().client(), settings, processor=stripe_processor())
        with pytest.raises(ValidationFault):
            await coordinator.handle_return(RIDE_ID, ReturnParams(payment_success=True), redis)
