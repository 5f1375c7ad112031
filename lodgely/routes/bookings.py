# Booking request endpoints: create, accept/reject, reconcile, and listings for both parties.
# Core errors (validation, conflict, state, partial failure) are mapped to responses in main.py.
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from .. import schemas
from ..availability import DateRange
from ..identity import Viewer
from ..rate_limit import rate_limit
from ..services import Services
from .auth import get_services, get_viewer

router = APIRouter()


@router.post(
    "/booking-requests",
    response_model=schemas.BookingRequestRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
async def create_booking_request(
    payload: schemas.BookingRequestCreate,
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> schemas.BookingRequestRead:
    # DateRange rejects start_date > end_date with a ValidationError (400)
    date_range = DateRange(payload.start_date, payload.end_date)
    return await services.bookings.create(
        payload.property_id,
        viewer.id,
        None,
        date_range,
        message=payload.message,
    )


@router.get("/booking-requests/owner", response_model=List[schemas.BookingRequestView])
async def list_owner_requests(
    status_filter: Optional[schemas.BookingStatus] = Query(None, alias="status"),
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> List[schemas.BookingRequestView]:
    """Requests addressed to the viewer's properties, newest first."""
    return await services.bookings.list_for_owner(viewer.id, status=status_filter)


@router.get("/booking-requests/me", response_model=List[schemas.BookingRequestView])
async def list_my_requests(
    status_filter: Optional[schemas.BookingStatus] = Query(None, alias="status"),
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> List[schemas.BookingRequestView]:
    return await services.bookings.list_for_requester(viewer.id, status=status_filter)


@router.get("/booking-requests/{request_id}", response_model=schemas.BookingRequestRead)
async def get_booking_request(
    request_id: int,
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> schemas.BookingRequestRead:
    return await services.bookings.get(request_id, viewer.id)


@router.post(
    "/booking-requests/{request_id}/accept",
    response_model=schemas.BookingRequestRead,
    dependencies=[Depends(rate_limit("write"))],
)
async def accept_booking_request(
    request_id: int,
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> schemas.BookingRequestRead:
    """
    Owner accepts a pending request.

    Responds 202 {"error": "partial_failure", ...} when the request is accepted but
    the calendar was not updated; POST .../reconcile retries the calendar step.
    """
    return await services.bookings.accept(request_id, viewer.id)


@router.post(
    "/booking-requests/{request_id}/reject",
    response_model=schemas.BookingRequestRead,
    dependencies=[Depends(rate_limit("write"))],
)
async def reject_booking_request(
    request_id: int,
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> schemas.BookingRequestRead:
    return await services.bookings.reject(request_id, viewer.id)


@router.post("/booking-requests/{request_id}/reconcile", response_model=schemas.BookingRequestRead)
async def reconcile_booking_request(
    request_id: int,
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> schemas.BookingRequestRead:
    return await services.bookings.reconcile_availability(request_id, viewer.id)
