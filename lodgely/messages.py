# Per-conversation message log: load, optimistic append, realtime ingestion, delivered/seen transitions.
from __future__ import annotations

import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Set, TypeVar
from uuid import uuid4

from . import models, schemas
from .errors import AuthorizationError, NotFoundError, ValidationError
from .feed import DELETE, ChangeEvent, Subscription
from .identity import IdentityProvider, require_viewer
from .lookups import ProfileDirectory, best_effort
from .store import RemoteStore

logger = logging.getLogger("lodgely.messages")

MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "1000"))

SENT = "sent"
DELIVERED = "delivered"
SEEN = "seen"
STATUS_RANK = {SENT: 0, DELIVERED: 1, SEEN: 2}

T = TypeVar("T")


def normalize_content(content: Any) -> str:
    if not isinstance(content, str):
        raise ValidationError("Message content must be text")
    text = content.strip()
    if not text:
        raise ValidationError("Message content is empty")
    if len(text) > MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message content must be at most {MESSAGE_MAX_LENGTH} characters")
    return text


def render_order(message: schemas.MessageRead) -> tuple:
    # created_at first; ties by id; provisional entries (no id yet) after confirmed ones
    return (message.created_at, message.id if message.id is not None else sys.maxsize)


def forward_status(current: str, incoming: str) -> str:
    """Statuses only move forward: sent -> delivered -> seen."""
    return incoming if STATUS_RANK[incoming] > STATUS_RANK[current] else current


async def load_conversation(store: RemoteStore, conversation_id: int, viewer_id: Optional[int] = None) -> models.Conversation:
    conv = await store.get(models.Conversation, conversation_id)
    if conv is None:
        raise NotFoundError("Conversation not found")
    if viewer_id is not None and viewer_id not in (conv.client_id, conv.owner_id):
        raise AuthorizationError("Not a participant of this conversation")
    return conv


async def persist_message(
    store: RemoteStore,
    conversation_id: int,
    sender_id: int,
    content: str,
    client_ref: Optional[str] = None,
) -> models.Message:
    """Insert a sent message and bump the conversation's last_message_at."""
    await load_conversation(store, conversation_id, sender_id)
    row = await store.insert(
        models.Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            status=SENT,
            client_ref=client_ref,
        )
    )
    await store.update_where(
        models.Conversation,
        [models.Conversation.id == conversation_id],
        {"last_message_at": row.created_at},
    )
    logger.info(
        "chat.message",
        extra={"conversation_id": conversation_id, "sender_id": sender_id, "message_id": row.id},
    )
    return row


class MessageStream:
    """
    Ordered message log for one conversation.

    Use as an async context manager to hold the realtime subscription for the
    lifetime of the view:

        async with MessageStream(store, conversation_id, profiles, identity) as stream:
            await stream.send("hello")
            ...

    Rendering order is (created_at, id) regardless of when realtime events arrive.
    Optimistic entries are tagged pending=True with a client_ref and are replaced,
    never duplicated, when the confirmed row or its realtime echo shows up.
    """

    def __init__(
        self,
        store: RemoteStore,
        conversation_id: int,
        profiles: ProfileDirectory,
        identity: Optional[IdentityProvider] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self._store = store
        self._profiles = profiles
        self._identity = identity
        self._entries: List[schemas.MessageRead] = []
        self._names: Dict[int, str] = {}
        self._subscription: Optional[Subscription] = None
        self._inflight: Set[asyncio.Future] = set()
        self._closed = False

    @property
    def messages(self) -> List[schemas.MessageRead]:
        return list(self._entries)

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_conversation(self, conversation_id: Optional[int]) -> int:
        if conversation_id is not None and conversation_id != self.conversation_id:
            raise ValidationError(f"This stream belongs to conversation {self.conversation_id}")
        return self.conversation_id

    async def _track(self, awaitable: Awaitable[T]) -> T:
        # Registered so close() can cancel it
        task = asyncio.ensure_future(awaitable)
        self._inflight.add(task)
        try:
            return await task
        finally:
            self._inflight.discard(task)

    # ----------------
    # Reads
    # ----------------
    async def load(self, conversation_id: Optional[int] = None, viewer_id: Optional[int] = None) -> List[schemas.MessageRead]:
        """Fetch the full log ascending by (created_at, id), each entry with its sender's display name."""
        cid = self._check_conversation(conversation_id)
        viewer = viewer_id
        if viewer is None and self._identity is not None and self._identity.current_user() is not None:
            viewer = self._identity.current_user().id  # type: ignore[union-attr]

        conv, rows = await self._track(self._fetch(cid, viewer))
        if self._closed:
            return []

        names = await best_effort(self._profiles, (conv.client_id, conv.owner_id), "chat.senders")
        self._names.update({pid: p.display_name for pid, p in names.items()})

        fetched = [self._to_read(row) for row in rows]
        confirmed_refs = {m.client_ref for m in fetched if m.client_ref}
        known_ids = {m.id for m in fetched}
        # Keep optimistic entries that the fetch has not confirmed yet, and realtime rows newer than the fetch
        carried = [
            m for m in self._entries
            if (m.pending and m.client_ref not in confirmed_refs) or (m.id is not None and m.id not in known_ids and not m.pending)
        ]
        self._entries = sorted(fetched + carried, key=render_order)
        logger.info("chat.history", extra={"conversation_id": cid, "count": len(fetched)})
        return self.messages

    async def _fetch(self, conversation_id: int, viewer_id: Optional[int]):
        conv = await load_conversation(self._store, conversation_id, viewer_id)
        rows = await self._store.select(
            models.Message,
            models.Message.conversation_id == conversation_id,
            order_by=(models.Message.created_at.asc(), models.Message.id.asc()),
        )
        return conv, rows

    def _to_read(self, row: Any) -> schemas.MessageRead:
        msg = row if isinstance(row, schemas.MessageRead) else schemas.MessageRead.model_validate(row)
        if msg.sender_name is None and msg.sender_id in self._names:
            msg = msg.model_copy(update={"sender_name": self._names[msg.sender_id]})
        return msg

    # ----------------
    # Writes
    # ----------------
    def append_local(self, sender_id: int, content: str, client_ref: Optional[str] = None) -> schemas.MessageRead:
        """Render a provisional entry immediately; the confirmed row replaces it later."""
        provisional = schemas.MessageRead(
            id=None,
            conversation_id=self.conversation_id,
            sender_id=sender_id,
            content=normalize_content(content),
            status=SENT,
            client_ref=client_ref or uuid4().hex,
            created_at=datetime.now(timezone.utc),
            sender_name=self._names.get(sender_id),
            pending=True,
        )
        self._merge(provisional)
        return provisional

    async def append(
        self,
        conversation_id: Optional[int],
        sender_id: int,
        content: str,
        client_ref: Optional[str] = None,
    ) -> schemas.MessageRead:
        """Persist a message with status=sent. Raises ValidationError when content trims to empty."""
        cid = self._check_conversation(conversation_id)
        text = normalize_content(content)
        row = await self._track(persist_message(self._store, cid, sender_id, text, client_ref=client_ref))
        confirmed = self._to_read(row)
        if not self._closed:
            self._merge(confirmed)
        return confirmed

    async def send(self, content: str, sender_id: Optional[int] = None) -> schemas.MessageRead:
        """Optimistic two-phase write: local provisional entry first, then the remote insert."""
        sender = require_viewer(self._identity, sender_id)
        provisional = self.append_local(sender, content)
        try:
            return await self.append(self.conversation_id, sender, content, client_ref=provisional.client_ref)
        except BaseException:
            self._entries = [m for m in self._entries if m.client_ref != provisional.client_ref or not m.pending]
            raise

    async def _advance(self, viewer_id: Optional[int], target: str, conversation_id: Optional[int]) -> int:
        cid = self._check_conversation(conversation_id)
        viewer = require_viewer(self._identity, viewer_id)
        await load_conversation(self._store, cid, viewer)
        lower = [s for s, rank in STATUS_RANK.items() if rank < STATUS_RANK[target]]
        rows = await self._track(
            self._store.update_where(
                models.Message,
                [
                    models.Message.conversation_id == cid,
                    models.Message.sender_id != viewer,
                    models.Message.status.in_(lower),
                ],
                {"status": target},
            )
        )
        if not self._closed:
            for row in rows:
                self._merge(self._to_read(row))
        return len(rows)

    async def mark_seen(self, conversation_id: Optional[int] = None, viewer_id: Optional[int] = None) -> int:
        """
        Bulk-move every message not authored by the viewer and not yet seen to seen.

        Returns the number of messages changed; a second call changes nothing.
        """
        changed = await self._advance(viewer_id, SEEN, conversation_id)
        if changed:
            logger.info("chat.seen", extra={"conversation_id": self.conversation_id, "count": changed})
        return changed

    async def mark_delivered(self, conversation_id: Optional[int] = None, viewer_id: Optional[int] = None) -> int:
        """Recipient-side sent -> delivered for messages not authored by the viewer."""
        return await self._advance(viewer_id, DELIVERED, conversation_id)

    # ----------------
    # Realtime
    # ----------------
    def apply_change_event(self, event: ChangeEvent) -> None:
        if self._closed or event.table != "messages":
            return
        row = event.row
        if row.get("conversation_id") != self.conversation_id:
            return
        if event.type == DELETE:
            self._entries = [m for m in self._entries if m.id != row.get("id")]
            return
        self._merge(self._to_read(schemas.MessageRead.model_validate(row)))

    def _merge(self, incoming: schemas.MessageRead) -> None:
        index = None
        for i, existing in enumerate(self._entries):
            if incoming.id is not None and existing.id == incoming.id:
                index = i
                break
            if existing.pending and incoming.client_ref and existing.client_ref == incoming.client_ref:
                index = i
                break

        if index is None:
            self._entries.append(incoming)
        else:
            existing = self._entries[index]
            if incoming.pending and not existing.pending:
                # Never downgrade a confirmed row back to provisional
                return
            self._entries[index] = incoming.model_copy(
                update={
                    "status": forward_status(existing.status, incoming.status),
                    "sender_name": incoming.sender_name or existing.sender_name,
                }
            )
        self._entries.sort(key=render_order)

    # ----------------
    # Lifecycle
    # ----------------
    async def open(self, viewer_id: Optional[int] = None) -> "MessageStream":
        if self._subscription is None:
            self._subscription = self._store.subscribe(
                "messages",
                lambda row: row.get("conversation_id") == self.conversation_id,
                self.apply_change_event,
                name=f"messages:{self.conversation_id}",
            )
        await self.load(viewer_id=viewer_id)
        return self

    def close(self) -> None:
        """Release the subscription and cancel in-flight work; late results are discarded."""
        self._closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        for task in list(self._inflight):
            task.cancel()

    async def drain(self) -> None:
        if self._subscription is not None:
            await self._subscription.drain()

    async def __aenter__(self) -> "MessageStream":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()
