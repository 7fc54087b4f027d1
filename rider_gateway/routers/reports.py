"""
Reports router: GET /v1/violation-types, POST /v1/rides/{id}/reports
"""
import logging

from fastapi import APIRouter, Depends, status

from rider_gateway.dependencies import get_backend
from rider_gateway.middleware.auth import get_current_customer
from rider_gateway.schemas.schemas import ReportRequest, ViolationType
from rider_gateway.services.backend import BackendClient
from rider_gateway.services.tracker import submit_report

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1", tags=["Reports"])


@router.get("/violation-types", response_model=list[ViolationType])
async def violation_types(
    backend: BackendClient = Depends(get_backend),
    customer_id: str = Depends(get_current_customer),
):
    return await backend.violation_types()


@router.post("/rides/{ride_id}/reports", status_code=status.HTTP_201_CREATED)
async def report_driver(
    ride_id: str,
    payload: ReportRequest,
    backend: BackendClient = Depends(get_backend),
    customer_id: str = Depends(get_current_customer),
):
    """File a report against the ride's driver; stored as `pending` for review."""
    ride = await backend.get_customer_ride(ride_id, customer_id)
    return await submit_report(backend, ride, customer_id, payload)
