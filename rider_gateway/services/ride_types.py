"""
Ride-type selector.

Offerings are grouped by their stored category id; titles are never read.
Rows without a usable category id land in an "Other Rides" section.
"""
import logging
from enum import Enum
from typing import Callable, Iterable, Optional

from rider_gateway.errors import GatewayError
from rider_gateway.schemas.schemas import RideCategoryGroup, RideType, TripAreaEnum
from rider_gateway.services.backend import BackendClient

logger = logging.getLogger(__name__)

IN_CITY_CATEGORIES: list[tuple[str, str]] = [
    ("regular", "Regular Rides"),
    ("individual", "Individual Rides"),
    ("relationship", "Relationship Rides"),
    ("event", "Event Rides"),
    ("protected", "Protected Rides"),
    ("luxury", "Luxury Rides"),
    ("service", "Service Rides"),
]

OUT_OF_CITY_CATEGORIES: list[tuple[str, str]] = [
    ("travel-basic", "Travel – Basic"),
    ("travel-individual", "Travel – Individual"),
    ("travel-group", "Travel – Group"),
    ("travel-purpose", "Travel – Purpose"),
    ("travel-relationship", "Travel – Relationship"),
    ("travel-protected", "Travel – Protected"),
    ("travel-luxury", "Travel – Luxury"),
    ("travel-quiet", "Travel – Quiet"),
]

UNCATEGORIZED = "uncategorized"


def categories_for(trip_area: TripAreaEnum) -> list[tuple[str, str]]:
    return IN_CITY_CATEGORIES if trip_area == TripAreaEnum.in_city else OUT_OF_CITY_CATEGORIES


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------

class SelectorState(str, Enum):
    LOADING = "loading"
    ERROR = "error"
    EMPTY = "empty"
    READY = "ready"


def group_by_category(ride_types: Iterable[RideType], trip_area: TripAreaEnum) -> dict[str, list[RideType]]:
    known = {cid for cid, _ in categories_for(trip_area)}
    groups: dict[str, list[RideType]] = {}
    for rt in ride_types:
        key = rt.category_id if rt.category_id in known else UNCATEGORIZED
        if key == UNCATEGORIZED:
            logger.warning("Ride type %s (%s) has no usable category id", rt.id, rt.title)
        groups.setdefault(key, []).append(rt)
    return groups


class RideTypeSelector:
    def __init__(
        self,
        backend: BackendClient,
        trip_area: TripAreaEnum,
        on_select: Optional[Callable[[str, str], None]] = None,
        selected_category: Optional[str] = None,
    ):
        self.backend = backend
        self.trip_area = trip_area
        self.on_select = on_select
        self.selected_category = selected_category
        self.state = SelectorState.LOADING
        self.error: Optional[str] = None
        self.groups: dict[str, list[RideType]] = {}
        self.expanded: Optional[str] = selected_category or categories_for(trip_area)[0][0]

    async def load(self) -> SelectorState:
        self.state = SelectorState.LOADING
        try:
            ride_types = await self.backend.ride_types_by_category(self.trip_area.value, self.selected_category)
        except GatewayError as exc:
            self.state = SelectorState.ERROR
            self.error = exc.detail
            self.groups = {}
            return self.state

        self.groups = group_by_category(ride_types, self.trip_area)
        self.state = SelectorState.READY if ride_types else SelectorState.EMPTY
        return self.state

    def expand(self, category_id: str) -> None:
        """Exactly one section open; expanding the open one collapses it."""
        self.expanded = None if self.expanded == category_id else category_id

    def select(self, ride_type: RideType) -> None:
        if self.on_select is not None:
            self.on_select(ride_type.title, ride_type.id)

    def visible_categories(self) -> list[RideCategoryGroup]:
        listed = categories_for(self.trip_area)
        if self.selected_category:
            listed = [(cid, name) for cid, name in listed if cid == self.selected_category]
        sections = [
            RideCategoryGroup(
                id=cid,
                name=name,
                expanded=self.expanded == cid,
                ride_types=self.groups.get(cid, []),
            )
            for cid, name in listed
            if self.groups.get(cid)
        ]
        if self.groups.get(UNCATEGORIZED) and not self.selected_category:
            sections.append(RideCategoryGroup(
                id=UNCATEGORIZED,
                name="Other Rides",
                expanded=self.expanded == UNCATEGORIZED,
                ride_types=self.groups[UNCATEGORIZED],
            ))
        return sections
