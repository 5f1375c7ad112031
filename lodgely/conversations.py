# Conversation list per viewer (counterpart, last message, unread count) kept live from the change feed,
# plus the unread badge derived from it.
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from . import models, schemas
from .errors import NotFoundError, ValidationError
from .feed import ChangeEvent, SubscriptionGroup
from .identity import IdentityProvider, Viewer, require_viewer
from .locks import KeyedLocks
from .lookups import ProfileDirectory, PropertyDirectory, best_effort
from .messages import SEEN, normalize_content, persist_message
from .store import RemoteStore

logger = logging.getLogger("lodgely.conversations")

IndexListener = Callable[[int], Any]


def count_unread(messages: Iterable[Any], viewer_id: int) -> int:
    """Messages the viewer did not author and has not seen."""
    return sum(1 for m in messages if m.sender_id != viewer_id and m.status != SEEN)


def format_badge(count: int) -> str:
    if count <= 0:
        return ""
    return "99+" if count > 99 else str(count)


def _listing_order(view: schemas.ConversationView) -> Tuple:
    return (view.last_message_at, view.id)


class ConversationIndex:
    """
    Live list of the conversations a viewer participates in.

    Derived fields (other_user, last_message, unread_count) are always recomputed
    from the authoritative message rows; nothing is decremented incrementally.
    Each fetch takes a sequence number when it starts and its result only replaces
    a cached entry that came from an older fetch, so a slow full refresh can never
    overwrite a newer per-conversation result with a lower unread count.
    """

    def __init__(
        self,
        store: RemoteStore,
        profiles: ProfileDirectory,
        property_directory: PropertyDirectory,
        identity: Optional[IdentityProvider] = None,
        create_locks: Optional[KeyedLocks[Tuple[int, int, Optional[int]]]] = None,
    ) -> None:
        self._store = store
        self._profiles = profiles
        self._property_directory = property_directory
        self._identity = identity
        self._views: Dict[int, Dict[int, schemas.ConversationView]] = {}
        self._stamps: Dict[Tuple[int, int], int] = {}
        self._seq = itertools.count(1)
        self._subscriptions: Dict[int, SubscriptionGroup] = {}
        self._listeners: List[IndexListener] = []
        self._inflight: set = set()
        self._create_locks = create_locks if create_locks is not None else KeyedLocks()
        self._closed = False
        self._auth_viewer: Optional[int] = None
        self._remove_auth_listener: Optional[Callable[[], None]] = None
        if identity is not None:
            current = identity.current_user()
            self._auth_viewer = current.id if current is not None else None
            self._remove_auth_listener = identity.on_auth_change(self._on_auth_change)

    def _viewer(self, viewer_id: Optional[int]) -> int:
        return require_viewer(self._identity, viewer_id)

    async def _track(self, coro: Any) -> Any:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        try:
            return await task
        finally:
            self._inflight.discard(task)

    # ----------------
    # Fetch + derive
    # ----------------
    async def _messages_for(self, conversation_ids: List[int]) -> Dict[int, List[models.Message]]:
        grouped: Dict[int, List[models.Message]] = {cid: [] for cid in conversation_ids}
        if not conversation_ids:
            return grouped
        rows = await self._store.select(
            models.Message,
            models.Message.conversation_id.in_(conversation_ids),
            order_by=(models.Message.created_at.asc(), models.Message.id.asc()),
        )
        for row in rows:
            grouped[row.conversation_id].append(row)
        return grouped

    async def _build_views(self, viewer_id: int, conversations: List[models.Conversation]) -> List[schemas.ConversationView]:
        grouped = await self._messages_for([c.id for c in conversations])

        def _other(c: models.Conversation) -> int:
            return c.owner_id if c.client_id == viewer_id else c.client_id

        others = {_other(c) for c in conversations}
        senders = {m.sender_id for rows in grouped.values() for m in rows[-1:]}
        profiles = await best_effort(self._profiles, others | senders, "conversations.profiles")
        properties = await best_effort(
            self._property_directory, (c.property_id for c in conversations), "conversations.properties"
        )

        views = []
        for c in conversations:
            rows = grouped.get(c.id, [])
            last = None
            if rows:
                last = schemas.MessageRead.model_validate(rows[-1])
                sender = profiles.get(last.sender_id)
                if sender is not None:
                    last = last.model_copy(update={"sender_name": sender.display_name})
            other_id = _other(c)
            views.append(
                schemas.ConversationView(
                    **schemas.ConversationRead.model_validate(c).model_dump(),
                    other_user_id=other_id,
                    other_user=profiles.get(other_id),
                    property=properties.get(c.property_id) if c.property_id is not None else None,
                    last_message=last,
                    unread_count=count_unread(rows, viewer_id),
                )
            )
        return views

    def _apply(self, viewer_id: int, seq: int, view: schemas.ConversationView) -> bool:
        key = (viewer_id, view.id)
        if self._stamps.get(key, 0) > seq:
            return False
        self._stamps[key] = seq
        self._views.setdefault(viewer_id, {})[view.id] = view
        return True

    def _drop(self, viewer_id: int, seq: int, conversation_id: int) -> bool:
        key = (viewer_id, conversation_id)
        if self._stamps.get(key, 0) > seq:
            return False
        self._stamps[key] = seq
        return self._views.get(viewer_id, {}).pop(conversation_id, None) is not None

    # ----------------
    # Reads
    # ----------------
    async def refresh(self, viewer_id: Optional[int] = None) -> List[schemas.ConversationView]:
        """Fetch every conversation of the viewer with its messages and recompute derived fields."""
        viewer = self._viewer(viewer_id)
        seq = next(self._seq)

        async def _fetch() -> List[schemas.ConversationView]:
            rows = await self._store.select(
                models.Conversation,
                or_(models.Conversation.client_id == viewer, models.Conversation.owner_id == viewer),
                order_by=(models.Conversation.last_message_at.desc(), models.Conversation.id.desc()),
            )
            return await self._build_views(viewer, rows)

        views = await self._track(_fetch())
        if self._closed:
            return []

        fetched = {v.id for v in views}
        for v in views:
            self._apply(viewer, seq, v)
        for cid in list(self._views.get(viewer, {})):
            if cid not in fetched:
                self._drop(viewer, seq, cid)
        self._views.setdefault(viewer, {})
        logger.debug("conversations.refreshed", extra={"viewer_id": viewer, "count": len(views)})
        self._notify(viewer)
        return self.conversations(viewer)

    async def refresh_conversation(self, conversation_id: int, viewer_id: Optional[int] = None) -> Optional[schemas.ConversationView]:
        """Re-derive a single conversation for the viewer; None if it is gone or not theirs."""
        viewer = self._viewer(viewer_id)
        seq = next(self._seq)

        async def _fetch() -> Optional[schemas.ConversationView]:
            conv = await self._store.get(models.Conversation, conversation_id)
            if conv is None or viewer not in (conv.client_id, conv.owner_id):
                return None
            views = await self._build_views(viewer, [conv])
            return views[0]

        view = await self._track(_fetch())
        if self._closed:
            return None
        changed = self._drop(viewer, seq, conversation_id) if view is None else self._apply(viewer, seq, view)
        if changed:
            self._notify(viewer)
        return view

    def conversations(self, viewer_id: Optional[int] = None) -> List[schemas.ConversationView]:
        """Cached listing, newest activity first."""
        viewer = self._viewer(viewer_id)
        return sorted(self._views.get(viewer, {}).values(), key=_listing_order, reverse=True)

    async def total_unread(self, viewer_id: Optional[int] = None) -> int:
        """Unread total recomputed from the message rows, never from the cached listing."""
        views = await self.refresh(viewer_id)
        return sum(v.unread_count for v in views)

    # ----------------
    # Writes
    # ----------------
    async def find_or_create(
        self,
        client_id: int,
        owner_id: int,
        property_id: Optional[int] = None,
    ) -> schemas.ConversationRead:
        """
        Idempotent get-or-create on (client_id, owner_id, property_id).

        A unique-constraint violation on insert means a concurrent caller won; the
        existing row is re-fetched and returned.
        """
        if client_id == owner_id:
            raise ValidationError("Cannot start a conversation with yourself")

        criteria = [
            models.Conversation.client_id == client_id,
            models.Conversation.owner_id == owner_id,
            models.Conversation.property_id.is_(None)
            if property_id is None
            else models.Conversation.property_id == property_id,
        ]
        async with self._create_locks.hold((client_id, owner_id, property_id)):
            existing = await self._store.first(models.Conversation, *criteria, order_by=(models.Conversation.id.asc(),))
            if existing is not None:
                return schemas.ConversationRead.model_validate(existing)
            try:
                row = await self._store.insert(
                    models.Conversation(client_id=client_id, owner_id=owner_id, property_id=property_id)
                )
                logger.info(
                    "conversation.created",
                    extra={"conversation_id": row.id, "client_id": client_id, "owner_id": owner_id},
                )
            except IntegrityError:
                logger.info("conversation.create.raced", extra={"client_id": client_id, "owner_id": owner_id})
                row = await self._store.first(models.Conversation, *criteria, order_by=(models.Conversation.id.asc(),))
                if row is None:
                    raise
        return schemas.ConversationRead.model_validate(row)

    async def start_conversation(
        self,
        client_id: int,
        owner_id: int,
        property_id: Optional[int] = None,
        initial_message: Optional[str] = None,
    ) -> Tuple[schemas.ConversationRead, Optional[schemas.MessageRead]]:
        """Find-or-create the thread and post the first message in one call."""
        text = normalize_content(initial_message) if initial_message is not None else None
        if property_id is not None:
            prop = await self._store.get(models.Property, property_id)
            if prop is None:
                raise NotFoundError("Property not found")
            if prop.owner_id != owner_id:
                raise ValidationError("owner_id does not match the property owner")

        conv = await self.find_or_create(client_id, owner_id, property_id)
        message = None
        if text is not None:
            row = await persist_message(self._store, conv.id, client_id, text)
            message = schemas.MessageRead.model_validate(row)
        return conv, message

    # ----------------
    # Realtime
    # ----------------
    async def apply_change_event(self, event: ChangeEvent, viewer_id: Optional[int] = None) -> None:
        """Re-derive the conversation an insert/update/delete touched."""
        if self._closed:
            return
        viewer = self._viewer(viewer_id)
        row = event.row
        if event.table == "conversations":
            conversation_id = row.get("id")
            if viewer not in (row.get("client_id"), row.get("owner_id")):
                return
        elif event.table == "messages":
            conversation_id = row.get("conversation_id")
        else:
            return
        if conversation_id is None:
            return
        await self.refresh_conversation(conversation_id, viewer)

    def subscribe(self, viewer_id: Optional[int] = None, on_update: Optional[IndexListener] = None) -> SubscriptionGroup:
        """
        Keep the viewer's listing live. Returns the group of feed subscriptions;
        release it with unsubscribe() or `async with`.

        Message events are matched against conversations already in the listing;
        a brand-new conversation arrives through its own row (insert, then the
        last_message_at bump that follows every message).
        """
        viewer = self._viewer(viewer_id)
        if on_update is not None:
            self.add_listener(on_update)
        existing = self._subscriptions.get(viewer)
        if existing is not None and existing.active:
            return existing

        async def _handle(event: ChangeEvent) -> None:
            await self.apply_change_event(event, viewer)

        def _is_participant(row: Dict[str, Any]) -> bool:
            return viewer in (row.get("client_id"), row.get("owner_id"))

        def _is_listed(row: Dict[str, Any]) -> bool:
            return row.get("conversation_id") in self._views.get(viewer, {})

        group = SubscriptionGroup()
        group.add(self._store.subscribe("conversations", _is_participant, _handle, name=f"conversations:{viewer}"))
        group.add(self._store.subscribe("messages", _is_listed, _handle, name=f"conversation-messages:{viewer}"))
        self._subscriptions[viewer] = group
        return group

    def add_listener(self, callback: IndexListener) -> Callable[[], None]:
        """callback(viewer_id) runs whenever that viewer's listing changes."""
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self, viewer_id: int) -> None:
        for callback in list(self._listeners):
            try:
                callback(viewer_id)
            except Exception as exc:
                logger.warning("conversations.listener.failed", extra={"viewer_id": viewer_id, "error": repr(exc)})

    # ----------------
    # Lifecycle
    # ----------------
    def release(self, viewer_id: int) -> None:
        """Drop the viewer's subscriptions and cached listing."""
        group = self._subscriptions.pop(viewer_id, None)
        if group is not None:
            group.unsubscribe()
        self._views.pop(viewer_id, None)
        for key in [k for k in self._stamps if k[0] == viewer_id]:
            del self._stamps[key]

    def _on_auth_change(self, viewer: Optional[Viewer]) -> None:
        previous = self._auth_viewer
        self._auth_viewer = viewer.id if viewer is not None else None
        if previous is not None and previous != self._auth_viewer:
            logger.info("conversations.viewer.changed", extra={"previous_viewer_id": previous})
            self.release(previous)

    def close(self) -> None:
        self._closed = True
        for viewer in list(self._subscriptions):
            self.release(viewer)
        self._views.clear()
        for task in list(self._inflight):
            task.cancel()
        if self._remove_auth_listener is not None:
            self._remove_auth_listener()
            self._remove_auth_listener = None

    async def __aenter__(self) -> "ConversationIndex":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class UnreadAggregator:
    """Badge count for a viewer; a pure view over ConversationIndex."""

    def __init__(self, index: ConversationIndex) -> None:
        self._index = index

    async def count(self, viewer_id: Optional[int] = None) -> int:
        return await self._index.total_unread(viewer_id)

    async def badge(self, viewer_id: Optional[int] = None) -> str:
        return format_badge(await self.count(viewer_id))

    def watch(self, viewer_id: int, callback: Callable[[int], Any]) -> Callable[[], None]:
        """callback(count) each time the viewer's listing changes. Returns a remover."""

        def _on_change(changed_viewer: int) -> None:
            if changed_viewer != viewer_id:
                return
            total = sum(v.unread_count for v in self._index.conversations(viewer_id))
            callback(total)

        return self._index.add_listener(_on_change)
