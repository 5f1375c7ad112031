"""Initial schema: profiles, properties, booking requests, conversations, messages

Revision ID: 20260301_120000
Revises:
Create Date: 2026-03-01 12:00:00

Notes:
- properties.availability holds the serialized calendar; properties.version guards calendar writes.
- uq_conversations_triple makes conversation get-or-create idempotent. uq_conversations_pair_no_property
  covers threads without a property, where NULLs would otherwise never collide.
- messages are indexed on (conversation_id, created_at) for timeline reads.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260301_120000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="client"),
        *_timestamps(),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"], unique=True)
    op.create_index("ix_profiles_role", "profiles", ["role"])

    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("availability", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index("ix_properties_owner_id", "properties", ["owner_id"])

    op.create_table(
        "booking_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False),
        sa.Column("requester_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("message", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_booking_requests_property_id", "booking_requests", ["property_id"])
    op.create_index("ix_booking_requests_requester_id", "booking_requests", ["requester_id"])
    op.create_index("ix_booking_requests_owner_id", "booking_requests", ["owner_id"])
    op.create_index("ix_booking_requests_owner_created", "booking_requests", ["owner_id", "created_at"])
    op.create_index("ix_booking_requests_requester_created", "booking_requests", ["requester_id", "created_at"])
    op.create_index("ix_booking_requests_status", "booking_requests", ["status"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("client_id", "owner_id", "property_id", name="uq_conversations_triple"),
    )
    op.create_index("ix_conversations_client_id", "conversations", ["client_id"])
    op.create_index("ix_conversations_owner_id", "conversations", ["owner_id"])
    op.create_index("ix_conversations_property_id", "conversations", ["property_id"])
    op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"])
    op.create_index(
        "uq_conversations_pair_no_property",
        "conversations",
        ["client_id", "owner_id"],
        unique=True,
        sqlite_where=sa.text("property_id IS NULL"),
        postgresql_where=sa.text("property_id IS NULL"),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("conversation_id", sa.Integer(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("content", sa.String(length=1000), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="sent"),
        sa.Column("client_ref", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])
    op.create_index("ix_messages_sender_id", "messages", ["sender_id"])
    op.create_index("ix_messages_client_ref", "messages", ["client_ref"])
    op.create_index("ix_messages_conversation_created_at", "messages", ["conversation_id", "created_at"])


def downgrade() -> None:
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("booking_requests")
    op.drop_table("properties")
    op.drop_table("profiles")
