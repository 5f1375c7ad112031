# Property endpoints: create, read, and owner edits of the availability calendar.
from __future__ import annotations

from fastapi import APIRouter, Depends, status

from .. import schemas
from ..availability import DateRange
from ..identity import Viewer
from ..rate_limit import rate_limit
from ..services import Services
from .auth import get_services, get_viewer, require_owner

router = APIRouter()


@router.post(
    "/properties",
    response_model=schemas.PropertyRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("write"))],
)
async def create_property(
    payload: schemas.PropertyCreate,
    services: Services = Depends(get_services),
    owner: Viewer = Depends(require_owner),
) -> schemas.PropertyRead:
    return await services.properties.create(owner.id, payload.name, price_cents=payload.price_cents)


@router.get("/properties/{property_id}", response_model=schemas.PropertyRead)
async def get_property(
    property_id: int,
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> schemas.PropertyRead:
    return await services.properties.get(property_id)


@router.put(
    "/properties/{property_id}/availability",
    response_model=schemas.PropertyRead,
    dependencies=[Depends(rate_limit("write"))],
)
async def set_availability_window(
    property_id: int,
    payload: schemas.AvailabilityWindow,
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> schemas.PropertyRead:
    """Publish or move the bookable window. Dates already booked stay booked."""
    await services.properties.set_window(property_id, viewer.id, DateRange(payload.start_date, payload.end_date))
    return await services.properties.get(property_id)


@router.delete(
    "/properties/{property_id}/availability",
    response_model=schemas.PropertyRead,
    dependencies=[Depends(rate_limit("write"))],
)
async def clear_availability(
    property_id: int,
    services: Services = Depends(get_services),
    viewer: Viewer = Depends(get_viewer),
) -> schemas.PropertyRead:
    await services.properties.clear_availability(property_id, viewer.id)
    return await services.properties.get(property_id)
