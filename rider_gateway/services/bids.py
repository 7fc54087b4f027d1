"""
Driver bid feed.

Bids are only relevant while the ride is still looking for a driver. Once the
backend reports any other status the feed renders nothing and stops polling.
Selecting a bid never changes ride status here; that happens when the backend
confirms the payment.
"""
import logging
import re
import zlib
from decimal import Decimal
from typing import Any, Callable, Optional

from rider_gateway.errors import ValidationFault
from rider_gateway.schemas.schemas import BidCard, DriverBid, Ride, RideStatusEnum
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.polling import Poller, maybe_await
from rider_gateway.services.status import is_biddable

logger = logging.getLogger(__name__)

RATING_PLACEHOLDER = "New"


def display_driver_id(driver_id: Optional[str], name: Optional[str] = None, prefix: str = "Yah") -> str:
    """Presentation id such as 'Yah-4821 Sam'. Stable for a given driver id."""
    if not driver_id:
        return f"{prefix}-0000 Driver"
    digits = re.sub(r"\D", "", driver_id)[-4:]
    if not digits:
        digits = f"{zlib.crc32(driver_id.encode()) % 10000:04d}"
    suffix = f" {name}" if name else " Driver"
    return f"{prefix}-{digits}{suffix}"


def quoted_fare(bid: DriverBid) -> Decimal:
    """Upper bound of the driver's estimated range."""
    if bid.estimated_fare_max is not None:
        return bid.estimated_fare_max
    if bid.estimated_fare_min is not None:
        return bid.estimated_fare_min
    return Decimal("0")


def to_card(bid: DriverBid, prefix: str = "Yah") -> BidCard:
    driver = bid.driver
    rating = driver.rating if driver and driver.rating not in (None, "") else RATING_PLACEHOLDER
    return BidCard(
        bid_id=bid.id,
        driver_id=driver.id if driver else None,
        display_driver_id=display_driver_id(driver.id if driver else None, driver.name if driver else None, prefix),
        rating=str(rating),
        vehicle_type=driver.vehicle_type if driver else None,
        quoted_fare=quoted_fare(bid),
        estimated_duration=bid.estimated_duration,
        notes=bid.notes,
    )


class BidFeed:
    def __init__(
        self,
        backend: BackendClient,
        ride_id: str,
        status: RideStatusEnum,
        interval: float = 5.0,
        prefix: str = "Yah",
        on_update: Optional[Callable[[list[BidCard]], Any]] = None,
    ):
        self.backend = backend
        self.ride_id = ride_id
        self.status = status
        self.prefix = prefix
        self.bids: list[DriverBid] = []
        self.loaded = False
        self._on_update = on_update
        self._poller: Poller[list[DriverBid]] = Poller(
            fetch=lambda: self.backend.list_bids(self.ride_id),
            on_result=self._apply,
            interval=interval,
            keep_going=lambda _bids: is_biddable(self.status),
            name=f"bids:{ride_id}",
        )

    @property
    def polling(self) -> bool:
        return self._poller.alive

    async def _apply(self, bids: list[DriverBid]) -> None:
        self.bids = bids
        self.loaded = True
        if self._on_update is not None and is_biddable(self.status):
            await maybe_await(self._on_update(self.cards()))

    def start(self) -> None:
        if is_biddable(self.status):
            self._poller.start()

    async def stop(self) -> None:
        await self._poller.stop()

    async def refresh(self) -> list[BidCard]:
        if is_biddable(self.status):
            await self._apply(await self.backend.list_bids(self.ride_id))
        return self.cards()

    async def observe_status(self, status: RideStatusEnum) -> None:
        """Feed the latest ride status from the tracker."""
        self.status = status
        if not is_biddable(status):
            await self.stop()

    def cards(self) -> list[BidCard]:
        if not is_biddable(self.status):
            return []
        return [to_card(b, self.prefix) for b in self.bids]

    def find(self, bid_id: str) -> DriverBid:
        for bid in self.bids:
            if bid.id == bid_id:
                return bid
        raise ValidationFault("That driver bid is no longer available", title="Bid not found", status_code=404)


async def load_bid(backend: BackendClient, ride: Ride, bid_id: str) -> DriverBid:
    """Fetch one bid for selection; refuses once bidding has closed."""
    if not is_biddable(ride.status):
        raise ValidationFault(
            f"Driver selection is closed for a ride that is {ride.status.value}",
            title="Bidding closed",
            status_code=409,
        )
    feed = BidFeed(backend, ride.id, ride.status)
    await feed.refresh()
    return feed.find(bid_id)
