# Property records and their availability calendar.
# The calendar column is only written here, always as a version-checked compare-and-swap.
from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple

from . import models, schemas
from .availability import AvailabilityCalendar, DateRange
from .errors import AuthorizationError, NotFoundError, StateError
from .store import RemoteStore

logger = logging.getLogger("lodgely.properties")

CalendarTransform = Callable[[AvailabilityCalendar], AvailabilityCalendar]


class PropertyCatalog:
    def __init__(self, store: RemoteStore, max_attempts: int = 5) -> None:
        self._store = store
        self._max_attempts = max_attempts

    async def create(
        self,
        owner_id: int,
        name: str,
        price_cents: int = 0,
        window: Optional[DateRange] = None,
    ) -> schemas.PropertyRead:
        calendar = AvailabilityCalendar(window=window)
        row = await self._store.insert(
            models.Property(
                owner_id=owner_id,
                name=name,
                price_cents=price_cents,
                availability=calendar.to_json(),
                version=1,
            )
        )
        logger.info("property.created", extra={"property_id": row.id, "owner_id": owner_id})
        return schemas.PropertyRead.model_validate(row)

    async def get(self, property_id: int) -> schemas.PropertyRead:
        row = await self._store.get(models.Property, property_id)
        if row is None:
            raise NotFoundError("Property not found")
        return schemas.PropertyRead.model_validate(row)

    async def calendar(self, property_id: int) -> Tuple[AvailabilityCalendar, int]:
        prop = await self.get(property_id)
        return AvailabilityCalendar.from_json(prop.availability), prop.version

    async def update_calendar(self, property_id: int, transform: CalendarTransform) -> AvailabilityCalendar:
        """
        Read the calendar, apply `transform`, and write it back only if nobody else
        wrote in between (version check). Retries on a lost race; errors raised by
        `transform` propagate unchanged.
        """
        for attempt in range(1, self._max_attempts + 1):
            current, version = await self.calendar(property_id)
            updated = transform(current)
            rows = await self._store.update_where(
                models.Property,
                [models.Property.id == property_id, models.Property.version == version],
                {"availability": updated.to_json(), "version": version + 1},
            )
            if rows:
                return updated
            logger.info("calendar.cas.retry", extra={"property_id": property_id, "attempt": attempt})
        raise StateError("Calendar changed concurrently; giving up after retries")

    async def _require_owner(self, property_id: int, actor_id: int) -> schemas.PropertyRead:
        prop = await self.get(property_id)
        if prop.owner_id != actor_id:
            raise AuthorizationError("Not owner of property")
        return prop

    async def set_window(self, property_id: int, actor_id: int, date_range: DateRange) -> AvailabilityCalendar:
        """Owner publishes (or moves) the bookable window; booked overrides are kept."""
        await self._require_owner(property_id, actor_id)
        calendar = await self.update_calendar(property_id, lambda cal: cal.with_window(date_range))
        logger.info(
            "calendar.window.set",
            extra={"property_id": property_id, "start_date": str(date_range.start), "end_date": str(date_range.end)},
        )
        return calendar

    async def clear_availability(self, property_id: int, actor_id: int) -> AvailabilityCalendar:
        """Owner revokes availability entirely."""
        await self._require_owner(property_id, actor_id)
        calendar = await self.update_calendar(property_id, lambda cal: cal.clear())
        logger.info("calendar.cleared", extra={"property_id": property_id})
        return calendar
