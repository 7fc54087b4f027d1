"""
Ride booking and the customer's ride list.

A new ride always starts as `pending`; drivers bid on it from there. The
customer id comes from the token, never from the request body.
"""
import logging

from rider_gateway.errors import ValidationFault
from rider_gateway.schemas.schemas import Ride, RideBookingRequest, RideListScope, TripAreaEnum
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.status import is_terminal

logger = logging.getLogger(__name__)

# ride_scope labels as stored by the backend
RIDE_SCOPES = {
    TripAreaEnum.in_city: "In-City",
    TripAreaEnum.out_of_city: "Out-of-City / Out-of-State / Travel",
}


def booking_body(customer_id: str, request: RideBookingRequest) -> dict:
    pickup, dropoff = request.pickup.strip(), request.dropoff.strip()
    if not pickup or not dropoff:
        raise ValidationFault("Set both pickup and drop-off locations", title="Booking Failed")
    body = {
        "customer_id": customer_id,
        "pickup": pickup,
        "dropoff": dropoff,
        "pickup_lat": request.pickup_lat,
        "pickup_lng": request.pickup_lng,
        "dropoff_lat": request.dropoff_lat,
        "dropoff_lng": request.dropoff_lng,
        "ride_type": request.ride_type,
        "ride_type_id": request.ride_type_id or None,
        "ride_scope": RIDE_SCOPES[request.trip_area],
        "status": "pending",
        "distance_miles": request.distance_miles,
        "duration_minutes": request.duration_minutes,
        "rider_count": request.rider_count,
        "pet_count": request.pet_count,
        "open_door_requested": request.open_door_requested,
        "total_fare": float(request.total_fare),
    }
    if request.person_preference_id is not None:
        body["person_preference_id"] = request.person_preference_id
    return body


async def book_ride(backend: BackendClient, customer_id: str, request: RideBookingRequest) -> Ride:
    ride = await backend.create_ride(booking_body(customer_id, request))
    logger.info("Ride %s booked by customer %s (%s)", ride.id, customer_id, request.ride_type)
    return ride


async def list_customer_rides(
    backend: BackendClient, customer_id: str, scope: RideListScope = RideListScope.all
) -> list[Ride]:
    """`active` is every ride still in motion; `history` is completed and cancelled."""
    rides = await backend.list_rides(customer_id)
    # the backend filters by the query param; drop anything that slipped through
    rides = [r for r in rides if r.customer_id == customer_id]
    if scope == RideListScope.active:
        return [r for r in rides if not is_terminal(r.status)]
    if scope == RideListScope.history:
        return [r for r in rides if is_terminal(r.status)]
    return rides
