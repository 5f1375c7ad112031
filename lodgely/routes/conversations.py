# Conversation and message endpoints: listing with unread counts, start/find thread,
# message history, send, and mark-as-seen.
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from .. import schemas
from ..conversations import UnreadAggregator, format_badge
from ..identity import SessionIdentity, require_viewer
from ..rate_limit import rate_limit
from ..services import Services
from .auth import get_identity, get_services

router = APIRouter()


def _viewer_id(identity: SessionIdentity) -> int:
    return require_viewer(identity, None)


@router.get("/conversations", response_model=List[schemas.ConversationView])
async def list_conversations(
    services: Services = Depends(get_services),
    identity: SessionIdentity = Depends(get_identity),
) -> List[schemas.ConversationView]:
    """Viewer's conversations, newest activity first, each with counterpart, last message and unread count."""
    index = services.conversation_index(identity)
    try:
        return await index.refresh()
    finally:
        index.close()


@router.post(
    "/conversations",
    response_model=schemas.ConversationStarted,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("message"))],
)
async def start_conversation(
    payload: schemas.ConversationStart,
    services: Services = Depends(get_services),
    identity: SessionIdentity = Depends(get_identity),
) -> schemas.ConversationStarted:
    # Returns the existing thread when (client, owner, property) already has one
    index = services.conversation_index(identity)
    try:
        conversation, message = await index.start_conversation(
            _viewer_id(identity),
            payload.owner_id,
            property_id=payload.property_id,
            initial_message=payload.message,
        )
    finally:
        index.close()
    return schemas.ConversationStarted(conversation=conversation, message=message)


@router.get("/conversations/unread", response_model=schemas.UnreadRead)
async def unread_count(
    services: Services = Depends(get_services),
    identity: SessionIdentity = Depends(get_identity),
) -> schemas.UnreadRead:
    index = services.conversation_index(identity)
    try:
        count = await UnreadAggregator(index).count()
    finally:
        index.close()
    return schemas.UnreadRead(count=count, badge=format_badge(count))


@router.get("/conversations/{conversation_id}/messages", response_model=List[schemas.MessageRead])
async def list_messages(
    conversation_id: int,
    services: Services = Depends(get_services),
    identity: SessionIdentity = Depends(get_identity),
) -> List[schemas.MessageRead]:
    """Full history ascending by (created_at, id), with sender display names."""
    stream = services.message_stream(conversation_id, identity)
    return await stream.load()


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=schemas.MessageRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("message"))],
)
async def send_message(
    conversation_id: int,
    payload: schemas.MessageCreate,
    services: Services = Depends(get_services),
    identity: SessionIdentity = Depends(get_identity),
) -> schemas.MessageRead:
    # client_ref lets the sender match the realtime echo to its optimistic entry
    stream = services.message_stream(conversation_id, identity)
    return await stream.append(conversation_id, _viewer_id(identity), payload.content, client_ref=payload.client_ref)


@router.post("/conversations/{conversation_id}/seen", response_model=schemas.SeenResult)
async def mark_seen(
    conversation_id: int,
    services: Services = Depends(get_services),
    identity: SessionIdentity = Depends(get_identity),
) -> schemas.SeenResult:
    stream = services.message_stream(conversation_id, identity)
    updated = await stream.mark_seen(conversation_id)
    return schemas.SeenResult(conversation_id=conversation_id, updated=updated)
