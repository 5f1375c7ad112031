# ConversationIndex and UnreadAggregator: derived fields, unread invariant, get-or-create races,
# realtime refresh, and subscription teardown.
from __future__ import annotations

import asyncio

import pytest

from lodgely import models
from lodgely.conversations import ConversationIndex, UnreadAggregator, format_badge
from lodgely.errors import AuthorizationError, NotFoundError, ValidationError
from lodgely.identity import SessionIdentity, Viewer
from lodgely.locks import KeyedLocks
from lodgely.messages import persist_message

from factories import make_profile, raw_unread, window


def _people():
    owner = make_profile("owner@example.com", "owner", "Olivia", "Owner")
    guest = make_profile("guest@example.com", "client", "Gabe", "Guest")
    return owner, guest


@pytest.mark.asyncio
async def test_refresh_derives_counterpart_last_message_and_unread(services):
    owner, guest = _people()
    prop = await services.properties.create(owner.id, "Seaside Loft", window=window("2024-06-01", "2024-09-30"))
    index = services.conversation_index()
    conv = await index.find_or_create(guest.id, owner.id, prop.id)

    await persist_message(services.store, conv.id, guest.id, "Hello")
    for text in ("Hi!", "Dates are open", "Let me know"):
        await persist_message(services.store, conv.id, owner.id, text)

    [view] = await index.refresh(guest.id)
    assert view.other_user_id == owner.id
    assert view.other_user.display_name == "Olivia Owner"
    assert view.property.name == "Seaside Loft"
    assert view.last_message.content == "Let me know"
    assert view.last_message.sender_name == "Olivia Owner"
    assert view.unread_count == 3

    [owner_view] = await index.refresh(owner.id)
    assert owner_view.other_user.display_name == "Gabe Guest"
    assert owner_view.unread_count == 1


@pytest.mark.asyncio
async def test_mark_seen_scenario_clears_unread(services):
    owner, guest = _people()
    index = services.conversation_index()
    conv = await index.find_or_create(guest.id, owner.id)
    for text in ("one", "two", "three"):
        await persist_message(services.store, conv.id, owner.id, text)

    assert (await index.refresh(guest.id))[0].unread_count == 3

    stream = services.message_stream(conv.id)
    await stream.mark_seen(conv.id, guest.id)
    assert (await index.refresh(guest.id))[0].unread_count == 0

    await stream.mark_seen(conv.id, guest.id)
    assert (await index.refresh(guest.id))[0].unread_count == 0


@pytest.mark.asyncio
async def test_total_unread_matches_independent_count(services):
    owner, guest = _people()
    other_owner = make_profile("second@example.com", "owner")
    index = services.conversation_index()
    c1 = await index.find_or_create(guest.id, owner.id)
    c2 = await index.find_or_create(guest.id, other_owner.id)

    for _ in range(4):
        await persist_message(services.store, c1.id, owner.id, "ping")
    for _ in range(2):
        await persist_message(services.store, c2.id, other_owner.id, "pong")
    await persist_message(services.store, c2.id, guest.id, "reply")
    await services.message_stream(c2.id).mark_delivered(c2.id, guest.id)

    await index.refresh(guest.id)
    assert await index.total_unread(guest.id) == raw_unread(guest.id) == 6

    await services.message_stream(c1.id).mark_seen(c1.id, guest.id)
    await index.refresh(guest.id)
    assert await index.total_unread(guest.id) == raw_unread(guest.id) == 2


@pytest.mark.asyncio
async def test_total_unread_picks_up_messages_without_a_subscription(services):
    owner, guest = _people()
    index = services.conversation_index()
    conv = await index.find_or_create(guest.id, owner.id)
    await services.message_stream(conv.id).append(conv.id, guest.id, "Hello")
    assert await index.total_unread(owner.id) == 1

    await services.message_stream(conv.id).append(conv.id, guest.id, "Are you there?")
    assert await index.total_unread(owner.id) == raw_unread(owner.id) == 2


@pytest.mark.asyncio
async def test_listing_is_ordered_by_last_activity(services):
    owner, guest = _people()
    other_owner = make_profile("second@example.com", "owner")
    index = services.conversation_index()
    older = await index.find_or_create(guest.id, owner.id)
    newer = await index.find_or_create(guest.id, other_owner.id)
    assert [v.id for v in await index.refresh(guest.id)] == [newer.id, older.id]


@pytest.mark.asyncio
async def test_find_or_create_is_idempotent(services):
    owner, guest = _people()
    index = services.conversation_index()
    a = await index.find_or_create(guest.id, owner.id)
    b = await index.find_or_create(guest.id, owner.id)
    assert a.id == b.id


@pytest.mark.asyncio
@pytest.mark.parametrize("with_property", [True, False])
async def test_concurrent_find_or_create_from_two_sessions_yields_one_row(services, with_property):
    owner, guest = _people()
    property_id = (await services.properties.create(owner.id, "Seaside Loft")).id if with_property else None
    # Two client sessions with their own create locks, so only the database can serialize them
    first, second = (
        ConversationIndex(services.store, services.profiles, services.property_directory, create_locks=KeyedLocks())
        for _ in range(2)
    )

    a, b = await asyncio.gather(
        first.find_or_create(guest.id, owner.id, property_id),
        second.find_or_create(guest.id, owner.id, property_id),
    )
    assert a.id == b.id
    rows = await services.store.select(models.Conversation)
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_property_and_no_property_threads_are_distinct(services):
    owner, guest = _people()
    prop = await services.properties.create(owner.id, "Seaside Loft")
    index = services.conversation_index()
    general = await index.find_or_create(guest.id, owner.id)
    about_listing = await index.find_or_create(guest.id, owner.id, prop.id)
    assert general.id != about_listing.id
    assert (await index.find_or_create(guest.id, owner.id)).id == general.id


@pytest.mark.asyncio
async def test_create_locks_are_released_after_use(services):
    owner, guest = _people()
    index = services.conversation_index()
    await asyncio.gather(*(index.find_or_create(guest.id, owner.id) for _ in range(3)))
    assert len(services.conversation_locks) == 0


@pytest.mark.asyncio
async def test_cannot_start_conversation_with_yourself(services):
    owner, _ = _people()
    with pytest.raises(ValidationError):
        await services.conversation_index().find_or_create(owner.id, owner.id)


@pytest.mark.asyncio
async def test_start_conversation_posts_first_message(services):
    owner, guest = _people()
    prop = await services.properties.create(owner.id, "Seaside Loft")
    index = services.conversation_index()

    conv, message = await index.start_conversation(guest.id, owner.id, prop.id, " Is July free? ")
    assert message.content == "Is July free?"
    assert message.conversation_id == conv.id

    again, _ = await index.start_conversation(guest.id, owner.id, prop.id, "Following up")
    assert again.id == conv.id
    assert (await index.refresh(owner.id))[0].unread_count == 2


@pytest.mark.asyncio
async def test_start_conversation_validates_before_writing(services):
    owner, guest = _people()
    stranger = make_profile("stranger@example.com", "owner")
    prop = await services.properties.create(owner.id, "Seaside Loft")
    index = services.conversation_index()

    with pytest.raises(ValidationError):
        await index.start_conversation(guest.id, owner.id, prop.id, "   ")
    with pytest.raises(ValidationError):
        await index.start_conversation(guest.id, stranger.id, prop.id, "hi")
    with pytest.raises(NotFoundError):
        await index.start_conversation(guest.id, owner.id, 999, "hi")
    assert await services.store.select(models.Conversation) == []


@pytest.mark.asyncio
async def test_realtime_updates_keep_unread_and_badge_current(services):
    owner, guest = _people()
    index = services.conversation_index()
    conv = await index.find_or_create(guest.id, owner.id)
    await index.refresh(guest.id)
    aggregator = UnreadAggregator(index)
    counts = []
    stop_watching = aggregator.watch(guest.id, counts.append)

    async with index.subscribe(guest.id):
        await persist_message(services.store, conv.id, owner.id, "New message")
        await persist_message(services.store, conv.id, owner.id, "Another")
        await services.feed.settle()
        assert await aggregator.count(guest.id) == raw_unread(guest.id) == 2
        assert await aggregator.badge(guest.id) == "2"
        assert counts[-1] == 2

        await services.message_stream(conv.id).mark_seen(conv.id, guest.id)
        await services.feed.settle()
        assert await aggregator.count(guest.id) == 0
        assert await aggregator.badge(guest.id) == ""

    stop_watching()
    assert services.feed.subscriber_count == 0


@pytest.mark.asyncio
async def test_new_conversation_reaches_subscribed_owner(services):
    owner, guest = _people()
    index = services.conversation_index()
    await index.refresh(owner.id)

    async with index.subscribe(owner.id):
        await services.conversation_index().start_conversation(guest.id, owner.id, None, "Hello there")
        await services.feed.settle()
        [view] = index.conversations(owner.id)
        assert view.unread_count == 1
        assert view.last_message.content == "Hello there"


@pytest.mark.asyncio
async def test_other_viewers_events_do_not_leak(services):
    owner, guest = _people()
    stranger = make_profile("stranger@example.com")
    index = services.conversation_index()
    await index.refresh(stranger.id)

    async with index.subscribe(stranger.id):
        await services.conversation_index().start_conversation(guest.id, owner.id, None, "private")
        await services.feed.settle()
        assert index.conversations(stranger.id) == []


@pytest.mark.asyncio
async def test_sign_out_releases_subscriptions(services):
    owner, guest = _people()
    identity = SessionIdentity(Viewer(guest.id))
    index = services.conversation_index(identity)
    await index.refresh()
    group = index.subscribe()
    assert group.active
    assert services.feed.subscriber_count == 2

    identity.sign_out()
    assert not group.active
    assert services.feed.subscriber_count == 0
    with pytest.raises(AuthorizationError):
        await index.refresh()
    index.close()


@pytest.mark.asyncio
async def test_closed_index_discards_results(services):
    owner, guest = _people()
    index = services.conversation_index()
    await index.find_or_create(guest.id, owner.id)
    index.subscribe(guest.id)
    index.close()
    assert services.feed.subscriber_count == 0
    assert await index.refresh(guest.id) == []
    assert index.conversations(guest.id) == []


@pytest.mark.parametrize("count,badge", [(0, ""), (1, "1"), (99, "99"), (100, "99+"), (250, "99+")])
def test_badge_format(count, badge):
    assert format_badge(count) == badge
