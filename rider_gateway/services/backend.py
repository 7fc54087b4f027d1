"""
Ride backend REST client.

One instance per process, constructed in the app lifespan and injected into
routers and services. Every non-2xx response or transport failure surfaces
as a BackendError carrying the backend's own message when it sends one.
"""
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from rider_gateway.config import Settings
from rider_gateway.errors import BackendError
from rider_gateway.schemas.schemas import (
    DriverBid, LocationSuggestion, RefundQuote, Ride, RideType, TipBounds, ViolationType,
)

logger = logging.getLogger(__name__)


class BackendClient:
    def __init__(self, base_url: str, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackendClient":
        return cls(settings.backend_base_url, timeout=settings.backend_timeout_seconds)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Backend %s %s failed: %s", method, path, exc)
            raise BackendError(f"Network error: {exc}") from exc

        if resp.status_code >= 400:
            detail = _error_message(resp) or f"Backend error {resp.status_code}"
            logger.warning("Backend %s %s -> %s: %s", method, path, resp.status_code, detail)
            raise BackendError(detail, status_code=502 if resp.status_code >= 500 else resp.status_code)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError(f"Malformed response from {path}") from exc

    # ------------------------------------------------------------------
    # Search / catalogue
    # ------------------------------------------------------------------

    async def search_locations(self, query: str) -> list[LocationSuggestion]:
        data = await self._request("GET", "/api/locations/search", params={"query": query})
        return [LocationSuggestion.model_validate(s) for s in data.get("suggestions") or []]

    async def ride_types_by_category(self, trip_area: str, category_id: Optional[str] = None) -> list[RideType]:
        params = {"tripArea": trip_area}
        if category_id:
            params["categoryId"] = category_id
        data = await self._request("GET", "/api/ride-types/by-category", params=params)
        return [RideType.model_validate(rt) for rt in data.get("rideTypes") or []]

    # ------------------------------------------------------------------
    # Rides
    # ------------------------------------------------------------------

    async def get_ride(self, ride_id: str) -> Ride:
        data = await self._request("GET", f"/api/rides/{ride_id}")
        ride = data.get("ride")
        if not ride:
            raise BackendError("Ride not found", status_code=404)
        return Ride.model_validate(ride)

    async def get_customer_ride(self, ride_id: str, customer_id: str) -> Ride:
        """get_ride, refused as not found unless the ride was booked by `customer_id`."""
        ride = await self.get_ride(ride_id)
        if ride.customer_id != customer_id:
            logger.warning("Customer %s asked for ride %s owned by %s", customer_id, ride_id, ride.customer_id)
            raise BackendError("Ride not found", status_code=404)
        return ride

    async def create_ride(self, body: dict) -> Ride:
        data = await self._request("POST", "/api/rides", json=body)
        if not data.get("ride"):
            raise BackendError("Ride was not created")
        return Ride.model_validate(data["ride"])

    async def list_rides(self, customer_id: str) -> list[Ride]:
        data = await self._request("GET", "/api/rides", params={"customerId": customer_id})
        return [Ride.model_validate(r) for r in data.get("rides") or []]

    async def list_bids(self, ride_id: str) -> list[DriverBid]:
        data = await self._request("GET", f"/api/rides/{ride_id}/requests")
        return [DriverBid.model_validate(b) for b in data.get("requests") or []]

    async def cancel_ride(self, ride_id: str, reason: Optional[str]) -> dict:
        return await self._request("POST", f"/api/rides/{ride_id}/cancel", json={"reason": reason or ""})

    async def rate_ride(self, ride_id: str, rating: int, emoji: Optional[str] = None) -> dict:
        body: dict[str, Any] = {"rating": rating}
        if emoji:
            body["emoji"] = emoji
        return await self._request("POST", f"/api/rides/{ride_id}/rate", json=body)

    async def finish_ride(self, ride_id: str) -> Optional[Ride]:
        data = await self._request("POST", f"/api/rides/{ride_id}/finish")
        return Ride.model_validate(data["ride"]) if data.get("ride") else None

    async def refund_quote(self, ride_id: str) -> RefundQuote:
        data = await self._request("GET", f"/api/rides/{ride_id}/refund-quote")
        return RefundQuote.model_validate(data)

    async def tip_bounds(self, ride_id: str) -> TipBounds:
        data = await self._request("GET", f"/api/rides/{ride_id}/tip-bounds")
        return TipBounds.model_validate(data)

    async def payment_success(self, ride_id: str, psp_reference: str, result_code: str) -> dict:
        return await self._request(
            "POST",
            f"/api/rides/{ride_id}/payment-success",
            json={"pspReference": psp_reference, "resultCode": result_code, "rideId": ride_id},
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def create_payment_link(self, body: dict) -> str:
        data = await self._request("POST", "/api/payments/link", json=body)
        if not data.get("success"):
            raise BackendError(data.get("error") or "Failed to create payment link")
        if not data.get("url"):
            raise BackendError("No payment URL received")
        return data["url"]

    async def create_payment_intent(self, amount_minor: int, currency: str, metadata: dict) -> Optional[str]:
        data = await self._request(
            "POST",
            "/api/stripe/create-payment-intent",
            json={"amount": amount_minor, "currency": currency.lower(), "metadata": metadata},
        )
        return data.get("clientSecret")

    async def create_tip_payment_intent(self, ride_id: str, driver_id: str, tip_amount: Decimal) -> Optional[str]:
        # tip_amount travels in major units; the backend converts to cents
        data = await self._request(
            "POST",
            f"/api/rides/{ride_id}/tips/payment-intent",
            json={"driver_id": driver_id, "tip_amount": float(tip_amount)},
        )
        return data.get("clientSecret")

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def violation_types(self) -> list[ViolationType]:
        data = await self._request("GET", "/api/violation-types")
        return [ViolationType.model_validate(v) for v in data.get("violationTypes") or []]

    async def create_report(self, body: dict) -> dict:
        return await self._request("POST", "/api/reports", json=body)


def _error_message(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or None
    if isinstance(body, dict):
        return body.get("message") or body.get("error")
    return None
