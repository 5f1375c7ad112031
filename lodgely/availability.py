# Property availability calendar: a published bookable window plus per-date overrides.
# Pure data and merge logic; persistence lives in properties.py.
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterator, Mapping, Optional

from .errors import ValidationError

AVAILABLE = "available"
BOOKED = "booked"
_STATUSES = (AVAILABLE, BOOKED)


def _parse_date(value: Any, name: str) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            # Accept full ISO timestamps ("2024-07-01T00:00:00Z") by keeping the date part
            return date.fromisoformat(value[:10])
        except ValueError as exc:
            raise ValidationError(f"{name} is not an ISO date: {value!r}") from exc
    raise ValidationError(f"{name} must be a date, got {type(value).__name__}")


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar date range; start must not be after end."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValidationError("start_date must not be after end_date")

    @classmethod
    def parse(cls, start: Any, end: Any) -> "DateRange":
        return cls(_parse_date(start, "start_date"), _parse_date(end, "end_date"))

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    @property
    def nights(self) -> int:
        return (self.end - self.start).days

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def overlaps(self, other: "DateRange") -> bool:
        return not (other.end < self.start or other.start > self.end)


@dataclass(frozen=True)
class AvailabilityCalendar:
    """
    Which dates a property may be booked for.

    Representation:
    - window: the contiguous bookable range the owner published (optional)
    - dates: per-date overrides, date -> "available" | "booked"

    A date is bookable when it has an "available" override, or has no override
    and lies inside the window. "booked" dates are never bookable. Every method
    returns a new calendar; instances are never mutated.
    """

    window: Optional[DateRange] = None
    dates: Mapping[date, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.window is None and not self.dates

    def status_of(self, day: date) -> Optional[str]:
        if day in self.dates:
            return self.dates[day]
        if self.window is not None and self.window.contains(day):
            return AVAILABLE
        return None

    def is_bookable(self, day: date) -> bool:
        return self.status_of(day) == AVAILABLE

    def is_range_available(self, date_range: DateRange) -> bool:
        if self.is_empty:
            return False
        return all(self.is_bookable(day) for day in date_range.days())

    def booked_dates(self) -> list[date]:
        return sorted(day for day, status in self.dates.items() if status == BOOKED)

    def mark_booked(self, date_range: DateRange) -> "AvailabilityCalendar":
        """
        Return a calendar with every date in the inclusive range set to booked.

        Entries outside the range are carried over unchanged. Dates already booked
        stay booked, so applying the same range twice equals applying it once.
        Raises ValidationError if a date in the range was never bookable.
        """
        merged: Dict[date, str] = dict(self.dates)
        for day in date_range.days():
            if self.status_of(day) is None:
                raise ValidationError(f"{day.isoformat()} is outside the published availability")
            merged[day] = BOOKED
        return AvailabilityCalendar(window=self.window, dates=merged)

    def with_window(self, date_range: Optional[DateRange]) -> "AvailabilityCalendar":
        # Booked overrides survive a window change; they are independent of it
        return AvailabilityCalendar(window=date_range, dates=dict(self.dates))

    def clear(self) -> "AvailabilityCalendar":
        return AvailabilityCalendar()

    # ----------------
    # Serialization
    # ----------------
    def to_json(self) -> Optional[dict]:
        if self.is_empty:
            return None
        out: Dict[str, Any] = {}
        if self.window is not None:
            out["start_date"] = self.window.start.isoformat()
            out["end_date"] = self.window.end.isoformat()
        if self.dates:
            out["dates"] = {day.isoformat(): {"status": status} for day, status in sorted(self.dates.items())}
        return out

    @classmethod
    def from_json(cls, data: Optional[Mapping[str, Any]]) -> "AvailabilityCalendar":
        """
        Parse the stored JSON shape.

        Accepts the current shape ({start_date, end_date, dates}), the window-only
        legacy shape ({start_date, end_date}) and the camelCase shape
        ({startDate, endDate}). None or {} yields an empty calendar.
        """
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise ValidationError("availability must be a JSON object")

        start = data.get("start_date", data.get("startDate"))
        end = data.get("end_date", data.get("endDate"))
        window = DateRange.parse(start, end) if start and end else None

        dates: Dict[date, str] = {}
        for key, entry in (data.get("dates") or {}).items():
            status = entry.get("status") if isinstance(entry, Mapping) else entry
            if status not in _STATUSES:
                raise ValidationError(f"unknown availability status {status!r} for {key}")
            dates[_parse_date(key, "dates key")] = status
        return cls(window=window, dates=dates)
