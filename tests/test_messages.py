# MessageStream: history order, validation, optimistic send + realtime echo, seen-state transitions, teardown.
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from lodgely import models
from lodgely.errors import AuthorizationError, NotFoundError, ValidationError
from lodgely.feed import INSERT, UPDATE, ChangeEvent
from lodgely.identity import SessionIdentity, Viewer
from lodgely.messages import MESSAGE_MAX_LENGTH, persist_message

from factories import make_profile


async def _conversation(services):
    owner = make_profile("owner@example.com", "owner", "Olivia", "Owner")
    guest = make_profile("guest@example.com", "client", "Gabe", "Guest")
    conv = await services.conversation_index().find_or_create(guest.id, owner.id)
    return owner, guest, conv


def _event(kind: str, **row) -> ChangeEvent:
    return ChangeEvent(table="messages", type=kind, new=row)


@pytest.mark.asyncio
async def test_load_is_ascending_with_sender_names(services):
    owner, guest, conv = await _conversation(services)
    stream = services.message_stream(conv.id)
    first = await stream.append(conv.id, guest.id, "Is the loft free in July?")
    second = await stream.append(conv.id, owner.id, "  Yes, from the 1st.  ")

    fresh = services.message_stream(conv.id)
    messages = await fresh.load(viewer_id=guest.id)
    assert [m.id for m in messages] == [first.id, second.id]
    assert messages[1].content == "Yes, from the 1st."
    assert [m.sender_name for m in messages] == ["Gabe Guest", "Olivia Owner"]
    assert all(m.status == "sent" and not m.pending for m in messages)


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   ", "\n\t"])
async def test_append_rejects_empty_content(services, content):
    owner, guest, conv = await _conversation(services)
    with pytest.raises(ValidationError):
        await services.message_stream(conv.id).append(conv.id, guest.id, content)


@pytest.mark.asyncio
async def test_append_rejects_overlong_content(services):
    owner, guest, conv = await _conversation(services)
    with pytest.raises(ValidationError):
        await services.message_stream(conv.id).append(conv.id, guest.id, "x" * (MESSAGE_MAX_LENGTH + 1))


@pytest.mark.asyncio
async def test_only_participants_can_post_or_read(services):
    owner, guest, conv = await _conversation(services)
    stranger = make_profile("stranger@example.com")
    stream = services.message_stream(conv.id)
    with pytest.raises(AuthorizationError):
        await stream.append(conv.id, stranger.id, "hello")
    with pytest.raises(AuthorizationError):
        await stream.load(viewer_id=stranger.id)


@pytest.mark.asyncio
async def test_unknown_conversation_is_not_found(services):
    guest = make_profile("guest@example.com")
    with pytest.raises(NotFoundError):
        await persist_message(services.store, 999, guest.id, "hello")


@pytest.mark.asyncio
async def test_append_bumps_last_message_at(services):
    owner, guest, conv = await _conversation(services)
    msg = await services.message_stream(conv.id).append(conv.id, guest.id, "hello")
    row = await services.store.get(models.Conversation, conv.id)
    assert row.last_message_at.replace(tzinfo=None) == msg.created_at.replace(tzinfo=None)


@pytest.mark.asyncio
async def test_mark_seen_is_scoped_and_idempotent(services):
    owner, guest, conv = await _conversation(services)
    stream = services.message_stream(conv.id)
    for text in ("one", "two", "three"):
        await stream.append(conv.id, owner.id, text)
    mine = await stream.append(conv.id, guest.id, "mine")

    assert await stream.mark_seen(conv.id, guest.id) == 3
    statuses = {m.id: m.status for m in await stream.load(viewer_id=guest.id)}
    assert statuses.pop(mine.id) == "sent"
    assert set(statuses.values()) == {"seen"}

    # Second call changes nothing and does not fail
    assert await stream.mark_seen(conv.id, guest.id) == 0
    again = {m.id: m.status for m in await stream.load(viewer_id=guest.id)}
    assert again == {**statuses, mine.id: "sent"}


@pytest.mark.asyncio
async def test_mark_delivered_then_seen_moves_forward(services):
    owner, guest, conv = await _conversation(services)
    stream = services.message_stream(conv.id)
    await stream.append(conv.id, owner.id, "ping")

    assert await stream.mark_delivered(conv.id, guest.id) == 1
    assert await stream.mark_seen(conv.id, guest.id) == 1
    # Delivered never overwrites seen
    assert await stream.mark_delivered(conv.id, guest.id) == 0
    assert [m.status for m in await stream.load(viewer_id=guest.id)] == ["seen"]


@pytest.mark.asyncio
async def test_mark_seen_uses_identity_when_no_viewer_given(services):
    owner, guest, conv = await _conversation(services)
    await services.message_stream(conv.id).append(conv.id, owner.id, "ping")

    stream = services.message_stream(conv.id, SessionIdentity(Viewer(guest.id)))
    assert await stream.mark_seen() == 1

    anonymous = services.message_stream(conv.id, SessionIdentity())
    with pytest.raises(AuthorizationError):
        await anonymous.mark_seen()


@pytest.mark.asyncio
async def test_optimistic_send_is_replaced_not_duplicated(services):
    owner, guest, conv = await _conversation(services)
    identity = SessionIdentity(Viewer(guest.id))

    async with services.message_stream(conv.id, identity) as stream:
        provisional = stream.append_local(guest.id, "draft")
        assert stream.messages[-1].pending
        assert [m.client_ref for m in stream.messages] == [provisional.client_ref]

        sent = await stream.send("On my way")
        await services.feed.settle()

        confirmed = [m for m in stream.messages if m.client_ref == sent.client_ref]
        assert len(confirmed) == 1
        assert confirmed[0].id == sent.id and not confirmed[0].pending

        # Echo of the same insert arriving late is merged by id
        stream.apply_change_event(_event(INSERT, **sent.model_dump(exclude={"sender_name", "pending"})))
        assert len([m for m in stream.messages if m.id == sent.id]) == 1


@pytest.mark.asyncio
async def test_failed_send_removes_provisional_entry(services):
    guest = make_profile("guest@example.com")
    stream = services.message_stream(12345, SessionIdentity(Viewer(guest.id)))
    with pytest.raises(NotFoundError):
        await stream.send("hello?")
    assert stream.messages == []


@pytest.mark.asyncio
async def test_realtime_messages_from_counterpart_arrive_in_order(services):
    owner, guest, conv = await _conversation(services)

    async with services.message_stream(conv.id, SessionIdentity(Viewer(guest.id))) as stream:
        writer = services.message_stream(conv.id)
        a = await writer.append(conv.id, owner.id, "first")
        b = await writer.append(conv.id, owner.id, "second")
        await services.feed.settle()
        assert [m.id for m in stream.messages] == [a.id, b.id]

        await writer.mark_seen(conv.id, guest.id)
        await services.feed.settle()
        assert {m.status for m in stream.messages} == {"seen"}


@pytest.mark.asyncio
async def test_ties_are_ordered_by_id_not_arrival(services):
    owner, guest, conv = await _conversation(services)
    stream = services.message_stream(conv.id)
    ts = datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)
    common = dict(conversation_id=conv.id, sender_id=owner.id, status="sent", created_at=ts)

    stream.apply_change_event(_event(INSERT, id=11, content="later id", **common))
    stream.apply_change_event(_event(INSERT, id=10, content="earlier id", **common))
    assert [m.id for m in stream.messages] == [10, 11]


@pytest.mark.asyncio
async def test_status_updates_never_move_backwards(services):
    owner, guest, conv = await _conversation(services)
    stream = services.message_stream(conv.id)
    ts = datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)
    base = dict(id=1, conversation_id=conv.id, sender_id=owner.id, content="hi", created_at=ts)

    stream.apply_change_event(_event(INSERT, status="sent", **base))
    stream.apply_change_event(_event(UPDATE, status="seen", **base))
    stream.apply_change_event(_event(UPDATE, status="delivered", **base))
    assert [m.status for m in stream.messages] == ["seen"]


@pytest.mark.asyncio
async def test_events_for_other_conversations_are_ignored(services):
    owner, guest, conv = await _conversation(services)
    stream = services.message_stream(conv.id)
    stream.apply_change_event(
        _event(INSERT, id=1, conversation_id=conv.id + 1, sender_id=owner.id, content="x",
               status="sent", created_at=datetime.now(timezone.utc))
    )
    assert stream.messages == []


@pytest.mark.asyncio
async def test_close_releases_subscription_and_ignores_late_events(services):
    owner, guest, conv = await _conversation(services)
    stream = await services.message_stream(conv.id).open(viewer_id=guest.id)
    assert services.feed.subscriber_count == 1

    stream.close()
    stream.close()  # idempotent
    assert services.feed.subscriber_count == 0

    await services.message_stream(conv.id).append(conv.id, owner.id, "after close")
    await services.feed.settle()
    assert stream.messages == []
    assert await stream.load(viewer_id=guest.id) == []
