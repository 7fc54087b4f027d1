"""
Debounced location autocomplete.

Each field owns its own dropdown. Pickup and dropoff are independent: both may
be open at once, and a pointer-down outside one field's region closes only
that field's dropdown.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from rider_gateway.errors import GatewayError
from rider_gateway.schemas.schemas import LocationSuggestion

logger = logging.getLogger(__name__)

SearchFn = Callable[[str], Awaitable[list[LocationSuggestion]]]
CommitFn = Callable[[str, Optional[float], Optional[float]], None]


class DropdownState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    EMPTY = "empty"
    ERROR = "error"


@dataclass(frozen=True)
class BoundingBox:
    left: float
    top: float
    right: float
    bottom: float

    def contains(self, x: float, y: float) -> bool:
        return self.left <= x <= self.right and self.top <= y <= self.bottom


class LocationAutocomplete:
    def __init__(
        self,
        search: SearchFn,
        on_commit: CommitFn,
        debounce: float = 0.5,
        min_length: int = 2,
        region: Optional[BoundingBox] = None,
    ):
        self._search = search
        self._on_commit = on_commit
        self.debounce = debounce
        self.min_length = min_length
        self.region = region

        self.text = ""
        self.suggestions: list[LocationSuggestion] = []
        self.is_open = False
        self.state = DropdownState.IDLE
        self._timer: Optional[asyncio.Task] = None
        self._closed = False

    def on_input(self, text: str) -> None:
        """Record the typed text and (re)start the debounce timer."""
        self.text = text
        self._on_commit(text, None, None)
        self._cancel_timer()
        self._timer = asyncio.create_task(self._debounced(text))

    async def settle(self) -> None:
        """Wait for the pending debounce/search, if any, to finish."""
        if self._timer is not None:
            try:
                await self._timer
            except asyncio.CancelledError:
                pass

    async def _debounced(self, query: str) -> None:
        await asyncio.sleep(self.debounce)
        await self.run_search(query)

    async def run_search(self, query: str) -> None:
        if len(query) < self.min_length:
            self.suggestions = []
            self.is_open = False
            self.state = DropdownState.IDLE
            return

        self.state = DropdownState.LOADING
        try:
            results = await self._search(query)
        except GatewayError as exc:
            if self._closed:
                return
            logger.warning("Location search failed for %r: %s", query, exc.detail)
            # keep the dropdown up so the user sees "search failed", not "no results"
            self.suggestions = []
            self.is_open = True
            self.state = DropdownState.ERROR
            return

        if self._closed:
            return
        self.suggestions = results
        self.is_open = True
        self.state = DropdownState.READY if results else DropdownState.EMPTY

    def select(self, suggestion: LocationSuggestion) -> None:
        self._cancel_timer()
        self.text = suggestion.formatted_address
        self._on_commit(suggestion.formatted_address, suggestion.lat, suggestion.lng)
        self.suggestions = []
        self.is_open = False
        self.state = DropdownState.IDLE

    def on_pointer_down(self, x: float, y: float) -> None:
        if not self.is_open or self.region is None:
            return
        if not self.region.contains(x, y):
            self.is_open = False

    def close(self) -> None:
        self._closed = True
        self._cancel_timer()
        self.is_open = False

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None


@dataclass
class PlaceValue:
    address: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None


class LocationForm:
    """Pickup and dropoff fields of the booking form."""

    def __init__(
        self,
        search: SearchFn,
        debounce: float = 0.5,
        min_length: int = 2,
        pickup_region: Optional[BoundingBox] = None,
        dropoff_region: Optional[BoundingBox] = None,
    ):
        self.pickup_value = PlaceValue()
        self.dropoff_value = PlaceValue()
        self.pickup = LocationAutocomplete(
            search, self._commit(self.pickup_value), debounce, min_length, pickup_region
        )
        self.dropoff = LocationAutocomplete(
            search, self._commit(self.dropoff_value), debounce, min_length, dropoff_region
        )

    @staticmethod
    def _commit(target: PlaceValue) -> CommitFn:
        def commit(address: str, lat: Optional[float], lng: Optional[float]) -> None:
            target.address = address
            target.lat = lat
            target.lng = lng
        return commit

    def on_pointer_down(self, x: float, y: float) -> None:
        self.pickup.on_pointer_down(x, y)
        self.dropoff.on_pointer_down(x, y)

    def close(self) -> None:
        self.pickup.close()
        self.dropoff.close()
