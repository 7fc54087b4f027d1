"""
Locations router: GET /v1/locations/search, GET /v1/ride-types
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from rider_gateway.config import Settings, get_settings
from rider_gateway.dependencies import get_backend
from rider_gateway.schemas.schemas import LocationSearchResponse, RideTypeSelectorResponse, TripAreaEnum
from rider_gateway.services.autocomplete import LocationAutocomplete
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.ride_types import RideTypeSelector

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1", tags=["Locations"])


@router.get("/locations/search", response_model=LocationSearchResponse)
async def search_locations(
    query: str = Query("", max_length=200),
    backend: BackendClient = Depends(get_backend),
    settings: Settings = Depends(get_settings),
):
    """
    One search as the dropdown would run it after the debounce. Short queries
    return `idle` without a backend call; a failed search returns `error`
    (the dropdown stays open) instead of an empty list.
    """
    autocomplete = LocationAutocomplete(
        backend.search_locations,
        on_commit=lambda *_: None,
        debounce=0,
        min_length=settings.search_min_length,
    )
    await autocomplete.run_search(query.strip())
    return LocationSearchResponse(state=autocomplete.state.value, suggestions=autocomplete.suggestions)


@router.get("/ride-types", response_model=RideTypeSelectorResponse)
async def ride_types(
    trip_area: TripAreaEnum = Query(TripAreaEnum.in_city),
    category_id: Optional[str] = Query(None),
    backend: BackendClient = Depends(get_backend),
):
    selector = RideTypeSelector(backend, trip_area, selected_category=category_id)
    state = await selector.load()
    return RideTypeSelectorResponse(
        state=state.value,
        trip_area=trip_area,
        categories=selector.visible_categories(),
        error=selector.error,
    )
