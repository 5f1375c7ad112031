# SQLAlchemy ORM models for the marketplace core (profiles, properties, booking requests, conversations, messages).
# Keep business logic out of models; rules live in the component modules (bookings.py, messages.py, ...).
from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import declarative_mixin

from .db import Base


@declarative_mixin
class TimestampMixin:
    """Common UTC-aware timestamps automatically managed by the database.

    - created_at: set on insert
    - updated_at: set on insert and updated on each modification
    """
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Profile(Base, TimestampMixin):
    """Public profile of an account.

    Roles:
    - owner: publishes properties and answers booking requests
    - client: requests bookings and messages owners
    """
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    role = Column(String(20), nullable=False, index=True, default="client")


class Property(Base, TimestampMixin):
    """Guesthouse listing. `availability` holds the serialized AvailabilityCalendar.

    'version' is bumped on every calendar write so concurrent writers can compare-and-swap.
    """
    __tablename__ = "properties"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    availability = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)


class BookingRequest(Base, TimestampMixin):
    """Request from a client to stay at a property.

    Status transitions:
    pending -> accepted | rejected (both terminal)

    Transitions are conditional updates on status == 'pending'.
    """
    __tablename__ = "booking_requests"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    requester_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_booking_requests_owner_created", "owner_id", "created_at"),
        Index("ix_booking_requests_requester_created", "requester_id", "created_at"),
        Index("ix_booking_requests_status", "status"),
    )


class Conversation(Base, TimestampMixin):
    """Two-party thread between a client and an owner, optionally about a property.

    At most one row per (client_id, owner_id, property_id). A partial unique index
    covers rows without a property; inserts that hit either index are resolved by
    re-fetching the existing row.
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    client_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    property_id = Column(Integer, ForeignKey("properties.id"), nullable=True, index=True)
    last_message_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("client_id", "owner_id", "property_id", name="uq_conversations_triple"),
        # NULL property ids never collide under the triple constraint
        Index(
            "uq_conversations_pair_no_property",
            "client_id",
            "owner_id",
            unique=True,
            sqlite_where=text("property_id IS NULL"),
            postgresql_where=text("property_id IS NULL"),
        ),
        Index("ix_conversations_last_message_at", "last_message_at"),
    )


class Message(Base):
    """Chat message. Never edited; only the recipient side moves status forward (sent -> delivered -> seen)."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    content = Column(String(1000), nullable=False)
    status = Column(String(20), nullable=False, default="sent")
    # Client-generated correlation id used to replace the optimistic local entry
    client_ref = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Composite index to page messages per conversation in chronological order
    __table_args__ = (
        Index("ix_messages_conversation_created_at", "conversation_id", "created_at"),
    )
