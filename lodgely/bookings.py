# Booking request lifecycle: create, accept/reject, list, and calendar reconciliation.
# Transitions are compare-and-swap updates on status == 'pending'; acceptance then books the
# dates on the property calendar and reports PartialFailure if that second step fails.
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from . import models, schemas
from .availability import DateRange
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PartialFailure,
    StateError,
    ValidationError,
)
from .feed import ChangeEvent, Subscription
from .locks import PropertyLocks
from .lookups import ProfileDirectory, PropertyDirectory, best_effort
from .notifier import LoggingNotifier, Notifier, notify_safely
from .properties import PropertyCatalog
from .store import RemoteStore

logger = logging.getLogger("lodgely.bookings")

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"


def _range_of(request: schemas.BookingRequestRead) -> DateRange:
    return DateRange(request.start_date, request.end_date)


class BookingRequestStore:
    def __init__(
        self,
        store: RemoteStore,
        properties: PropertyCatalog,
        profiles: ProfileDirectory,
        property_directory: PropertyDirectory,
        notifier: Optional[Notifier] = None,
        locks: Optional[PropertyLocks] = None,
    ) -> None:
        self._store = store
        self._properties = properties
        self._profiles = profiles
        self._property_directory = property_directory
        self._notifier = notifier or LoggingNotifier()
        self._locks = locks or PropertyLocks()

    async def _load(self, request_id: int) -> schemas.BookingRequestRead:
        row = await self._store.get(models.BookingRequest, request_id)
        if row is None:
            raise NotFoundError("Booking request not found")
        return schemas.BookingRequestRead.model_validate(row)

    async def get(self, request_id: int, viewer_id: int) -> schemas.BookingRequestRead:
        request = await self._load(request_id)
        if viewer_id not in (request.requester_id, request.owner_id):
            raise AuthorizationError("Not a party to this booking request")
        return request

    # ----------------
    # Create
    # ----------------
    async def create(
        self,
        property_id: int,
        requester_id: int,
        owner_id: Optional[int],
        date_range: DateRange,
        message: Optional[str] = None,
    ) -> schemas.BookingRequestRead:
        """
        Create a pending request for `date_range` on the property.

        owner_id may be None, in which case the property's owner is used; a value
        that disagrees with the property's owner is rejected.
        """
        prop = await self._properties.get(property_id)
        if owner_id is not None and owner_id != prop.owner_id:
            raise ValidationError("owner_id does not match the property owner")
        if requester_id == prop.owner_id:
            raise ValidationError("Owners cannot request their own property")

        calendar, _ = await self._properties.calendar(property_id)
        if not calendar.is_range_available(date_range):
            raise ConflictError("These dates are not available")

        text = message.strip() if message else None
        row = await self._store.insert(
            models.BookingRequest(
                property_id=property_id,
                requester_id=requester_id,
                owner_id=prop.owner_id,
                start_date=date_range.start,
                end_date=date_range.end,
                status=PENDING,
                message=text or None,
            )
        )
        request = schemas.BookingRequestRead.model_validate(row)
        logger.info(
            "booking.created",
            extra={"request_id": request.id, "property_id": property_id, "requester_id": requester_id},
        )
        notify_safely(
            self._notifier,
            request.owner_id,
            "booking.requested",
            request_id=request.id,
            property_id=property_id,
            start_date=str(date_range.start),
            end_date=str(date_range.end),
        )
        return request

    # ----------------
    # Transitions
    # ----------------
    async def _check_transition(self, request_id: int, actor_id: int) -> schemas.BookingRequestRead:
        request = await self._load(request_id)
        if actor_id != request.owner_id:
            raise AuthorizationError("Only the property owner can answer this request")
        if request.status != PENDING:
            raise StateError(f"Request already {request.status}")
        return request

    async def _swap_status(self, request_id: int, target: str) -> schemas.BookingRequestRead:
        # Conditioned on the row still being pending at write time; losers see an empty result
        rows = await self._store.update_where(
            models.BookingRequest,
            [models.BookingRequest.id == request_id, models.BookingRequest.status == PENDING],
            {"status": target},
        )
        if not rows:
            current = await self._load(request_id)
            raise StateError(f"Request already {current.status}")
        return schemas.BookingRequestRead.model_validate(rows[0])

    async def accept(self, request_id: int, actor_id: int) -> schemas.BookingRequestRead:
        """
        pending -> accepted, then book the dates on the property calendar.

        Raises:
        - AuthorizationError: actor is not the owner
        - StateError: request no longer pending (including a lost race)
        - ConflictError: the dates were booked since the request was made; the request stays pending
        - PartialFailure: status is accepted but the calendar write failed; call reconcile_availability()
        """
        request = await self._check_transition(request_id, actor_id)
        date_range = _range_of(request)

        async with self._locks.hold(request.property_id):
            # A concurrent accept may have finished while we waited for the lock
            await self._check_transition(request_id, actor_id)

            # Re-check: another request may have booked these dates after this one was created
            calendar, _ = await self._properties.calendar(request.property_id)
            if not calendar.is_range_available(date_range):
                raise ConflictError("These dates have been booked since the request was made")

            accepted = await self._swap_status(request_id, ACCEPTED)
            logger.info("booking.accepted", extra={"request_id": request_id, "property_id": request.property_id})

            try:
                await self._mark_calendar(accepted)
            except Exception as exc:
                logger.error(
                    "booking.calendar.failed",
                    extra={"request_id": request_id, "property_id": request.property_id, "error": repr(exc)},
                )
                notify_safely(self._notifier, accepted.owner_id, "booking.calendar_pending", request_id=request_id)
                raise PartialFailure(
                    "Request accepted but the calendar was not updated; reconcile to retry",
                    request=accepted,
                    cause=exc,
                ) from exc

        notify_safely(
            self._notifier,
            accepted.requester_id,
            "booking.accepted",
            request_id=request_id,
            property_id=accepted.property_id,
        )
        return accepted

    async def reject(self, request_id: int, actor_id: int) -> schemas.BookingRequestRead:
        await self._check_transition(request_id, actor_id)
        rejected = await self._swap_status(request_id, REJECTED)
        logger.info("booking.rejected", extra={"request_id": request_id, "property_id": rejected.property_id})
        notify_safely(
            self._notifier,
            rejected.requester_id,
            "booking.rejected",
            request_id=request_id,
            property_id=rejected.property_id,
        )
        return rejected

    async def _mark_calendar(self, request: schemas.BookingRequestRead) -> None:
        date_range = _range_of(request)
        await self._properties.update_calendar(request.property_id, lambda cal: cal.mark_booked(date_range))

    async def reconcile_availability(self, request_id: int, actor_id: Optional[int] = None) -> schemas.BookingRequestRead:
        """
        Re-apply the calendar side effect of an accepted request.

        Idempotent: booking already-booked dates is a no-op. Raises PartialFailure
        again if the calendar write still fails.
        """
        request = await self._load(request_id)
        if actor_id is not None and actor_id != request.owner_id:
            raise AuthorizationError("Only the owner can reconcile this request")
        if request.status != ACCEPTED:
            raise StateError(f"Only accepted requests can be reconciled (status={request.status})")

        async with self._locks.hold(request.property_id):
            try:
                await self._mark_calendar(request)
            except Exception as exc:
                logger.error("booking.reconcile.failed", extra={"request_id": request_id, "error": repr(exc)})
                raise PartialFailure("Calendar update failed again", request=request, cause=exc) from exc

        logger.info("booking.reconciled", extra={"request_id": request_id, "property_id": request.property_id})
        return request

    # ----------------
    # Listings
    # ----------------
    async def list_for_owner(self, owner_id: int, status: Optional[str] = None) -> List[schemas.BookingRequestView]:
        return await self._list(models.BookingRequest.owner_id == owner_id, status, counterpart_of=owner_id)

    async def list_for_requester(self, requester_id: int, status: Optional[str] = None) -> List[schemas.BookingRequestView]:
        return await self._list(models.BookingRequest.requester_id == requester_id, status, counterpart_of=requester_id)

    async def _list(self, criterion: Any, status: Optional[str], counterpart_of: int) -> List[schemas.BookingRequestView]:
        criteria = [criterion]
        if status is not None:
            if status not in (PENDING, ACCEPTED, REJECTED):
                raise ValidationError(f"Unknown status {status!r}")
            criteria.append(models.BookingRequest.status == status)

        rows = await self._store.select(
            models.BookingRequest,
            *criteria,
            order_by=(models.BookingRequest.created_at.desc(), models.BookingRequest.id.desc()),
        )
        requests = [schemas.BookingRequestRead.model_validate(r) for r in rows]

        def _counterpart(r: schemas.BookingRequestRead) -> int:
            return r.requester_id if r.owner_id == counterpart_of else r.owner_id

        # Enrichment failures degrade to absent fields; the request records are always returned
        properties = await best_effort(self._property_directory, (r.property_id for r in requests), "booking.properties")
        profiles = await best_effort(self._profiles, (_counterpart(r) for r in requests), "booking.profiles")

        views: List[schemas.BookingRequestView] = []
        for r in requests:
            prop = properties.get(r.property_id)
            nights = (r.end_date - r.start_date).days
            views.append(
                schemas.BookingRequestView(
                    **r.model_dump(),
                    property=prop,
                    counterpart=profiles.get(_counterpart(r)),
                    nights=nights,
                    total_cents=(nights * prop.price_cents) if prop is not None else None,
                )
            )
        return views

    # ----------------
    # Change feed
    # ----------------
    def subscribe(self, viewer_id: int, handler: Callable[[ChangeEvent], Any]) -> Subscription:
        """Booking request changes where the viewer is requester or owner."""

        def _is_party(row: Dict[str, Any]) -> bool:
            return viewer_id in (row.get("requester_id"), row.get("owner_id"))

        return self._store.subscribe("booking_requests", _is_party, handler, name=f"bookings:{viewer_id}")
