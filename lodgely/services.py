# Wiring for the core components. One Services instance per process (or per test),
# sharing a RemoteStore, its ChangeFeed, the per-property locks and the conversation create locks.
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from sqlalchemy.orm import sessionmaker

from .bookings import BookingRequestStore
from .conversations import ConversationIndex
from .db import SessionLocal
from .feed import ChangeFeed
from .identity import IdentityProvider
from .locks import KeyedLocks, PropertyLocks
from .lookups import ProfileDirectory, PropertyDirectory
from .messages import MessageStream
from .notifier import LoggingNotifier, Notifier
from .properties import PropertyCatalog
from .store import RemoteStore


@dataclass
class Services:
    store: RemoteStore
    properties: PropertyCatalog
    profiles: ProfileDirectory
    property_directory: PropertyDirectory
    bookings: BookingRequestStore
    notifier: Notifier
    conversation_locks: KeyedLocks[Tuple[int, int, Optional[int]]] = field(default_factory=KeyedLocks)

    @property
    def feed(self) -> ChangeFeed:
        return self.store.feed

    def conversation_index(self, identity: Optional[IdentityProvider] = None) -> ConversationIndex:
        return ConversationIndex(
            self.store,
            self.profiles,
            self.property_directory,
            identity=identity,
            create_locks=self.conversation_locks,
        )

    def message_stream(self, conversation_id: int, identity: Optional[IdentityProvider] = None) -> MessageStream:
        return MessageStream(self.store, conversation_id, self.profiles, identity=identity)


def build_services(
    session_factory: Optional[sessionmaker] = None,
    feed: Optional[ChangeFeed] = None,
    notifier: Optional[Notifier] = None,
    locks: Optional[PropertyLocks] = None,
) -> Services:
    store = RemoteStore(session_factory or SessionLocal, feed=feed)
    properties = PropertyCatalog(store)
    profiles = ProfileDirectory(store)
    property_directory = PropertyDirectory(store)
    notifier = notifier or LoggingNotifier()
    bookings = BookingRequestStore(
        store,
        properties,
        profiles,
        property_directory,
        notifier=notifier,
        locks=locks or PropertyLocks(),
    )
    return Services(
        store=store,
        properties=properties,
        profiles=profiles,
        property_directory=property_directory,
        bookings=bookings,
        notifier=notifier,
    )
