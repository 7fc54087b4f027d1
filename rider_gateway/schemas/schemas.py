from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RideStatusEnum(str, Enum):
    pending = "pending"
    searching_driver = "searching_driver"
    driver_assigned = "driver_assigned"
    driver_arriving = "driver_arriving"
    driver_arrived = "driver_arrived"
    accepted = "accepted"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class TripAreaEnum(str, Enum):
    in_city = "in-city"
    out_of_city = "out-of-city"


class PaymentPurposeEnum(str, Enum):
    bid_selection = "bid_selection"
    tip = "tip"


class PaymentOutcomeStatus(str, Enum):
    LINK_CREATED = "link_created"
    CONFIRMED = "confirmed"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"


class SenderRoleEnum(str, Enum):
    customer = "customer"
    driver = "driver"


class RatingEnum(int, Enum):
    negative = 1
    positive = 2


# Backend payloads are loose: ignore fields we do not consume.
class BackendModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


# ---------------------------------------------------------------------------
# Ride schemas
# ---------------------------------------------------------------------------

class Driver(BackendModel):
    id: str
    name: Optional[str] = None
    vehicle_type: Optional[str] = Field(default=None, alias="vehicleType")
    rating: Optional[Union[str, float]] = None


class Ride(BackendModel):
    id: str
    pickup: str = ""
    dropoff: str = ""
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    status: RideStatusEnum
    ride_type: Optional[str] = None
    ride_type_id: Optional[str] = None
    total_fare: Optional[Decimal] = None
    tip_amount: Decimal = Decimal("0")
    rider_count: int = 1
    pet_count: int = 0
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    customer_id: Optional[str] = None
    driver_id: Optional[str] = None
    driver: Optional[Driver] = None
    customer_rating: Optional[RatingEnum] = None
    customer_rating_emoji: Optional[str] = None
    cancellation_reason: Optional[str] = None


class DriverBid(BackendModel):
    id: str
    ride_id: Optional[str] = None
    estimated_fare_min: Optional[Decimal] = None
    estimated_fare_max: Optional[Decimal] = None
    estimated_duration: Optional[int] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    driver: Optional[Driver] = Field(default=None, alias="drivers")


class BidCard(BaseModel):
    bid_id: str
    driver_id: Optional[str] = None
    display_driver_id: str
    rating: str
    vehicle_type: Optional[str] = None
    quoted_fare: Decimal
    estimated_duration: Optional[int] = None
    notes: Optional[str] = None


class RideActions(BaseModel):
    can_cancel: bool
    can_report: bool
    can_finish: bool
    shows_bids: bool


class RideView(BaseModel):
    ride: Ride
    actions: RideActions
    display_driver_id: Optional[str] = None
    post_ride_stage: Optional[str] = None


class RideListScope(str, Enum):
    all = "all"
    active = "active"
    history = "history"


class RideBookingRequest(BaseModel):
    pickup: str = Field(..., min_length=1)
    dropoff: str = Field(..., min_length=1)
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    trip_area: TripAreaEnum = TripAreaEnum.in_city
    ride_type: str = Field(..., min_length=1)
    ride_type_id: Optional[str] = None
    distance_miles: float = Field(default=0, ge=0)
    duration_minutes: float = Field(default=0, ge=0)
    rider_count: int = Field(default=1, ge=1, le=20)
    pet_count: int = Field(default=0, ge=0, le=10)
    open_door_requested: bool = False
    person_preference_id: Optional[int] = None
    total_fare: Decimal = Field(default=Decimal("0"), ge=0)


# ---------------------------------------------------------------------------
# Location / ride type schemas
# ---------------------------------------------------------------------------

class LocationSuggestion(BackendModel):
    id: str
    display_name: str = Field(alias="displayName")
    formatted_address: str = Field(alias="formattedAddress")
    lat: float
    lng: float
    type: Optional[str] = None


class LocationSearchResponse(BaseModel):
    state: str
    suggestions: list[LocationSuggestion] = []


class RideType(BackendModel):
    id: str
    title: str
    description: Optional[str] = None
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    max_passengers: Optional[int] = Field(default=None, alias="maxPassengers")


class RideCategoryGroup(BaseModel):
    id: str
    name: str
    expanded: bool
    ride_types: list[RideType]


class RideTypeSelectorResponse(BaseModel):
    state: str
    trip_area: TripAreaEnum
    categories: list[RideCategoryGroup] = []
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------

class TipBounds(BackendModel):
    min: Decimal = Decimal("0")
    max: Decimal = Decimal("0")


class RefundQuote(BackendModel):
    amount_cents: int = Field(alias="amountCents")
    total_fare: Optional[Decimal] = Field(default=None, alias="totalFare")
    stripe_fee_cents: int = Field(default=0, alias="stripeFeeCents")


class PaymentOutcome(BaseModel):
    status: PaymentOutcomeStatus
    ride_id: str
    amount_minor: int
    url: Optional[str] = None
    ride_status: Optional[RideStatusEnum] = None


class ReturnParams(BaseModel):
    payment_success: bool = False
    tip_payment_success: bool = False
    psp_reference: Optional[str] = None
    result_code: Optional[str] = None
    # signed token naming the customer who opened the payment link
    state: Optional[str] = None

    @property
    def present(self) -> bool:
        return self.payment_success or self.tip_payment_success


class CardPaymentRequest(BaseModel):
    payment_method: str = Field(..., min_length=1)


class TipPaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Lifecycle schemas
# ---------------------------------------------------------------------------

class RatingRequest(BaseModel):
    rating: RatingEnum
    emoji: Optional[str] = None


class TipDialog(BaseModel):
    ride_id: str
    bounds: TipBounds


class FinishResult(BaseModel):
    stage: str
    ride: Optional[Ride] = None
    payment: Optional[PaymentOutcome] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class CancelResult(BaseModel):
    ride: Optional[Ride] = None
    refund_amount_cents: Optional[int] = None
    redirect_to: str = "/rides"
    redirect_after_seconds: float


class ViolationType(BackendModel):
    id: int
    code: Optional[str] = None
    name: str
    description: Optional[str] = None
    severity: Optional[str] = None


class MediaAttachment(BaseModel):
    name: str
    type: str
    size: int = Field(..., ge=0)
    url: Optional[str] = None


class ReportRequest(BaseModel):
    violation_type_id: Optional[int] = None
    custom_reason: Optional[str] = None
    description: Optional[str] = None
    media: list[MediaAttachment] = []


# ---------------------------------------------------------------------------
# Chat schemas
# ---------------------------------------------------------------------------

class ChatMessageOut(BaseModel):
    id: str
    ride_id: str
    chat_session_id: Optional[str] = None
    sender_by: str
    sender_role: SenderRoleEnum
    message: str
    is_read: bool = False
    is_deleted: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}


class ChatMessageIn(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
