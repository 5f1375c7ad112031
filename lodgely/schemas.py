# Pydantic models (request/response DTOs and the read views the core hands back).
# Keep models minimal and serializable; business logic lives in the component modules.
from datetime import date, datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

BookingStatus = Literal["pending", "accepted", "rejected"]
MessageStatus = Literal["sent", "delivered", "seen"]
Role = Literal["owner", "client"]


def as_utc(value: datetime) -> datetime:
    # Some backends (e.g., SQLite) return naive datetimes; treat stored values as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Timestamped(BaseModel):
    @field_validator("created_at", "updated_at", "last_message_at", mode="after", check_fields=False)
    @classmethod
    def normalize_tz(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else v


# Enrichment summaries (read-only joins)
class ProfileSummary(BaseModel):
    id: int
    first_name: str = ""
    last_name: str = ""

    model_config = ConfigDict(from_attributes=True)

    @computed_field  # type: ignore[misc]
    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or "Unknown"


class PropertySummary(BaseModel):
    id: int
    owner_id: int
    name: str
    price_cents: int = 0

    model_config = ConfigDict(from_attributes=True)


# Properties
class PropertyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    price_cents: int = Field(0, ge=0)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v: str) -> str:
        # Trim surrounding whitespace before validation
        if isinstance(v, str):
            v = v.strip()
        return v


class AvailabilityWindow(BaseModel):
    start_date: date
    end_date: date


class PropertyRead(_Timestamped):
    id: int
    owner_id: int
    name: str
    price_cents: int
    availability: Optional[dict] = None
    version: int = 1
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Booking requests
class BookingRequestCreate(BaseModel):
    property_id: int = Field(..., ge=1)
    start_date: date
    end_date: date
    message: Optional[str] = Field(None, max_length=2000)


class BookingRequestRead(_Timestamped):
    id: int
    property_id: int
    requester_id: int
    owner_id: int
    start_date: date
    end_date: date
    status: BookingStatus
    message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingRequestView(BookingRequestRead):
    """Booking request with best-effort enrichment; absent fields mean the lookup failed."""
    property: Optional[PropertySummary] = None
    counterpart: Optional[ProfileSummary] = None
    nights: int = 0
    total_cents: Optional[int] = None


# Messages
class MessageCreate(BaseModel):
    content: str
    client_ref: Optional[str] = Field(None, max_length=64)


class MessageRead(_Timestamped):
    """A message as rendered in a stream.

    Provisional (optimistic) entries have id=None, pending=True and a client_ref.
    """
    id: Optional[int] = None
    conversation_id: int
    sender_id: int
    content: str
    status: MessageStatus = "sent"
    client_ref: Optional[str] = None
    created_at: datetime
    sender_name: Optional[str] = None
    pending: bool = False

    model_config = ConfigDict(from_attributes=True)


# Conversations
class ConversationStart(BaseModel):
    owner_id: int = Field(..., ge=1)
    property_id: Optional[int] = Field(None, ge=1)
    message: Optional[str] = None


class ConversationRead(_Timestamped):
    id: int
    client_id: int
    owner_id: int
    property_id: Optional[int] = None
    created_at: datetime
    last_message_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversationView(ConversationRead):
    """Conversation as seen by one viewer; derived fields are recomputed, never stored."""
    other_user_id: int
    other_user: Optional[ProfileSummary] = None
    property: Optional[PropertySummary] = None
    last_message: Optional[MessageRead] = None
    unread_count: int = 0


class UnreadRead(BaseModel):
    count: int
    badge: str


class ConversationStarted(BaseModel):
    conversation: ConversationRead
    message: Optional[MessageRead] = None


class SeenResult(BaseModel):
    conversation_id: int
    updated: int
