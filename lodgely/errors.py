# Error taxonomy shared by the booking and messaging core.
# The core raises these; the HTTP layer maps them to status codes in main.py.
from __future__ import annotations

from typing import Any, Optional


class LodgelyError(Exception):
    """Base class for failures reported to the immediate caller."""

    code = "error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(LodgelyError):
    """Malformed input: empty message content, inverted date range, bad calendar payload."""

    code = "validation"


class NotFoundError(LodgelyError):
    code = "not_found"


class ConflictError(LodgelyError):
    """Requested date range is not available on the property calendar."""

    code = "conflict"


class AuthorizationError(LodgelyError):
    """Actor is not allowed to perform the transition."""

    code = "forbidden"


class StateError(LodgelyError):
    """Transition from a non-pending state, or a lost compare-and-swap race.

    Callers should refresh and re-render rather than retry the same transition.
    """

    code = "state"


class BusyError(LodgelyError):
    """Another process holds the per-property lock; retry shortly."""

    code = "busy"

    def __init__(self, detail: str = "", retry_after: int = 1) -> None:
        super().__init__(detail)
        self.retry_after = retry_after


class PartialFailure(LodgelyError):
    """The request was accepted but the calendar side effect did not land.

    `request` reflects the successful half (status=accepted). Recover with
    BookingRequestStore.reconcile_availability(request.id, owner_id).
    """

    code = "partial_failure"

    def __init__(self, detail: str, request: Any, cause: Optional[BaseException] = None) -> None:
        super().__init__(detail)
        self.request = request
        self.cause = cause


class TransientFetchError(LodgelyError):
    """Enrichment lookup failed; swallowed at the component boundary."""

    code = "transient_fetch"
