"""
Unit tests for RoomSession.
Runs the create/join, history, feed and send flow against the in-memory backend.
"""

# Disable this warning as it is a false positive caused by pytest syntax
# pylint: disable=redefined-outer-name

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from roomsync.client.memory import InMemoryBackend
from roomsync.client.session import RoomSession
from roomsync.core.errors import (
    BackendUnavailable,
    DecodeFailure,
    DuplicateCode,
    EmptyMessage,
    InvalidCode,
    NoActiveRoom,
    OperationInProgress,
    RoomNotFound,
)
from roomsync.core.message import Message

# --- Fixtures ---


@pytest.fixture
def backend():
    """A fresh in-memory backend per test."""
    return InMemoryBackend()


@pytest.fixture
def session(backend):
    """A session whose generated codes are predictable."""
    return RoomSession(backend, code_generator=lambda: "K7M2QZ")


def _external(room_id, message_id, text, sender_type="partner"):
    return Message(id=message_id, room_id=room_id, sender_type=sender_type, text=text)


# --- Create / join ---


@pytest.mark.asyncio
async def test_create_room_enters_empty_room_with_live_feed(session, backend):
    room = await session.create_room()

    assert room.code == "K7M2QZ"
    assert session.active_room == room
    assert session.messages == []
    assert session.is_subscribed
    assert [sub.room_id for sub in backend.feed.active_subscriptions] == [room.id]


@pytest.mark.asyncio
async def test_create_load_and_redeliver_scenario(session, backend):
    """Create, load history, receive an external write, then a redelivery of it."""
    room = await session.create_room()
    assert room.code == "K7M2QZ"

    await session.load_history()
    assert session.messages == []

    m1 = backend.messages.add_external(_external(room.id, "m1", "hi"))
    assert [(m.id, m.text) for m in session.messages] == [("m1", "hi")]

    backend.feed.publish(m1)
    assert len(session.messages) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["", "   ", "\n\t"])
async def test_join_blank_code_fails_without_lookup(session, backend, code):
    with pytest.raises(InvalidCode):
        await session.join_room(code)

    assert backend.rooms.lookups == 0
    assert session.active_room is None


@pytest.mark.asyncio
async def test_join_unknown_code_leaves_room_unset(session, backend):
    with pytest.raises(RoomNotFound) as exc_info:
        await session.join_room("bad1")

    assert exc_info.value.message
    assert session.active_room is None
    assert not session.is_subscribed
    assert backend.feed.active_subscriptions == []


@pytest.mark.asyncio
async def test_join_is_case_and_whitespace_insensitive(backend):
    room = await backend.rooms.create("K7M2QZ")

    upper = RoomSession(backend)
    lower = RoomSession(backend)

    assert await upper.join_room("K7M2QZ") == room
    assert await lower.join_room("  k7m2qz ") == room


@pytest.mark.asyncio
async def test_join_loads_existing_history(backend):
    room = await backend.rooms.create("ABCDEF")
    await backend.messages.insert(room.id, "partner", "first")
    await backend.messages.insert(room.id, "user", "second")

    session = RoomSession(backend)
    await session.join_room("abcdef")

    assert [m.text for m in session.messages] == ["first", "second"]


@pytest.mark.asyncio
async def test_create_room_code_collision_is_not_retried(session, backend):
    await backend.rooms.create("K7M2QZ")

    with pytest.raises(DuplicateCode):
        await session.create_room()

    assert session.active_room is None
    assert len(backend.db.rooms) == 1


@pytest.mark.asyncio
async def test_create_room_backend_down(session, backend):
    backend.db.available = False

    with pytest.raises(BackendUnavailable):
        await session.create_room()

    assert session.active_room is None
    assert backend.feed.active_subscriptions == []


# --- Room switches ---


@pytest.mark.asyncio
async def test_switching_rooms_releases_previous_feed(session, backend):
    first = await session.create_room()
    backend.messages.add_external(_external(first.id, "old", "from first room"))
    second = await backend.rooms.create("ZZZZZZ")

    await session.join_room("zzzzzz")

    assert session.active_room == second
    assert session.messages == []
    assert [sub.room_id for sub in backend.feed.active_subscriptions] == [second.id]

    # Inserts into the old room no longer reach this session
    backend.messages.add_external(_external(first.id, "late", "ignored"))
    assert session.messages == []


@pytest.mark.asyncio
async def test_failed_join_keeps_current_room(session, backend):
    room = await session.create_room()
    backend.messages.add_external(_external(room.id, "m1", "hi"))

    with pytest.raises(RoomNotFound):
        await session.join_room("NQPE22")

    assert session.active_room == room
    assert session.is_subscribed
    assert [m.id for m in session.messages] == ["m1"]


@pytest.mark.asyncio
async def test_history_failure_during_join_is_not_a_partial_switch(session, backend):
    room = await session.create_room()
    await backend.rooms.create("ZZZZZZ")

    with patch.object(backend.messages, "list_by_room", AsyncMock(side_effect=BackendUnavailable())):
        with pytest.raises(BackendUnavailable):
            await session.join_room("ZZZZZZ")

    assert session.active_room == room
    assert [sub.room_id for sub in backend.feed.active_subscriptions] == [room.id]


@pytest.mark.asyncio
async def test_insert_during_history_fetch_is_not_lost(backend):
    """Events arriving between feed open and history load are merged after the switch."""
    room = await backend.rooms.create("ABCDEF")
    await backend.messages.insert(room.id, "partner", "before")
    original = backend.messages.list_by_room

    async def list_then_insert(room_id):
        history = await original(room_id)
        backend.messages.add_external(_external(room_id, "during", "racing insert"))
        return history

    session = RoomSession(backend)
    with patch.object(backend.messages, "list_by_room", side_effect=list_then_insert):
        await session.join_room("ABCDEF")

    assert [m.text for m in session.messages] == ["before", "racing insert"]


@pytest.mark.asyncio
async def test_last_room_switch_wins(backend):
    """A slow join that started first cannot overwrite a newer active room."""
    slow_room = await backend.rooms.create("SSSSSS")
    release = asyncio.Event()
    original = backend.rooms.find_by_code

    async def find(code):
        if code == "SSSSSS":
            await release.wait()
        return await original(code)

    session = RoomSession(backend)
    with patch.object(backend.rooms, "find_by_code", side_effect=find):
        slow = asyncio.create_task(session.join_room("SSSSSS"))
        await asyncio.sleep(0)
        create = asyncio.create_task(session.create_room())
        await asyncio.sleep(0)
        release.set()
        joined = await slow
        created = await create

    assert joined == slow_room
    assert session.active_room == created
    assert [sub.room_id for sub in backend.feed.active_subscriptions] == [created.id]


@pytest.mark.asyncio
async def test_concurrent_create_is_rejected(session, backend):
    release = asyncio.Event()
    original = backend.rooms.create

    async def blocked_create(code):
        await release.wait()
        return await original(code)

    with patch.object(backend.rooms, "create", side_effect=blocked_create):
        first = asyncio.create_task(session.create_room())
        await asyncio.sleep(0)
        assert session.is_in_flight("create_room")

        with pytest.raises(OperationInProgress):
            await session.create_room()

        release.set()
        room = await first

    assert session.active_room == room
    assert not session.is_in_flight("create_room")
    assert len(backend.db.rooms) == 1


@pytest.mark.asyncio
async def test_cancelled_join_releases_new_feed(backend):
    """Cancelling a join while history loads leaves no feed open and no room set."""
    await backend.rooms.create("ABCDEF")
    release = asyncio.Event()

    async def blocked_list(room_id):
        await release.wait()
        return []

    session = RoomSession(backend)
    with patch.object(backend.messages, "list_by_room", side_effect=blocked_list):
        join = asyncio.create_task(session.join_room("ABCDEF"))
        await asyncio.sleep(0)
        assert len(backend.feed.active_subscriptions) == 1

        join.cancel()
        with pytest.raises(asyncio.CancelledError):
            await join

    assert backend.feed.active_subscriptions == []
    assert session.active_room is None
    assert not session.is_subscribed
    assert not session.is_in_flight("join_room")


@pytest.mark.asyncio
async def test_cancelled_switch_keeps_previous_room(session, backend):
    room = await session.create_room()
    await backend.rooms.create("ZZZZZZ")
    release = asyncio.Event()

    async def blocked_list(room_id):
        await release.wait()
        return []

    with patch.object(backend.messages, "list_by_room", side_effect=blocked_list):
        join = asyncio.create_task(session.join_room("ZZZZZZ"))
        await asyncio.sleep(0)
        join.cancel()
        with pytest.raises(asyncio.CancelledError):
            await join

    assert session.active_room == room
    assert [sub.room_id for sub in backend.feed.active_subscriptions] == [room.id]


# --- History ---


@pytest.mark.asyncio
async def test_load_history_requires_room(session):
    with pytest.raises(NoActiveRoom):
        await session.load_history()


@pytest.mark.asyncio
async def test_load_history_is_idempotent(session, backend):
    room = await session.create_room()
    await backend.messages.insert(room.id, "partner", "one")
    await backend.messages.insert(room.id, "ai", "two")

    await session.load_history()
    first = session.messages
    await session.load_history()

    assert session.messages == first
    assert [m.text for m in first] == ["one", "two"]


@pytest.mark.asyncio
async def test_feed_delivery_during_load_history_is_kept(session, backend):
    """A message echoed while the history request is pending survives the older snapshot."""
    room = await session.create_room()
    original = backend.messages.list_by_room

    async def snapshot_then_insert(room_id):
        history = await original(room_id)
        backend.messages.add_external(_external(room_id, "m2", "arrived mid-fetch"))
        return history

    with patch.object(backend.messages, "list_by_room", side_effect=snapshot_then_insert):
        await session.load_history()

    assert [m.id for m in session.messages] == ["m2"]

    # A later reload sees it in the store as well
    await session.load_history()
    assert [m.id for m in session.messages] == ["m2"]


@pytest.mark.asyncio
async def test_load_history_failure_keeps_messages(session, backend):
    room = await session.create_room()
    backend.messages.add_external(_external(room.id, "m1", "hi"))

    with patch.object(backend.messages, "list_by_room", AsyncMock(side_effect=BackendUnavailable())):
        with pytest.raises(BackendUnavailable):
            await session.load_history()

    assert [m.id for m in session.messages] == ["m1"]

    # Deliveries after the failed fetch are not tracked as pending arrivals
    backend.messages.add_external(_external(room.id, "m2", "later"))
    assert [m.id for m in session.messages] == ["m1", "m2"]


# --- Feed ---


@pytest.mark.asyncio
async def test_malformed_feed_events_are_recorded_and_dropped(session, backend):
    room = await session.create_room()

    backend.feed.deliver_raw(room.id, "not json at all")
    backend.feed.deliver_raw(room.id, {"id": "x", "room_id": room.id})

    assert session.messages == []
    assert len(session.decode_failures) == 2
    assert all(isinstance(e, DecodeFailure) for e in session.decode_failures)

    # The feed keeps delivering after failures
    backend.messages.add_external(_external(room.id, "m1", "still alive"))
    assert [m.id for m in session.messages] == ["m1"]


@pytest.mark.asyncio
async def test_feed_event_for_another_room_is_ignored(session, backend):
    room = await session.create_room()

    stray = _external("some-other-room", "x1", "wrong room")
    backend.feed.deliver_raw(room.id, stray.model_dump_json())

    assert session.messages == []
    assert session.decode_failures == []


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(session, backend):
    await session.unsubscribe()

    room = await session.create_room()
    await session.unsubscribe()
    await session.unsubscribe()

    assert not session.is_subscribed
    backend.messages.add_external(_external(room.id, "m1", "missed"))
    assert session.messages == []


@pytest.mark.asyncio
async def test_subscribe_reopens_feed(session, backend):
    room = await session.create_room()
    await session.unsubscribe()

    await session.subscribe()
    await session.subscribe()

    assert len(backend.feed.active_subscriptions) == 1
    backend.messages.add_external(_external(room.id, "m1", "back"))
    assert [m.id for m in session.messages] == ["m1"]


@pytest.mark.asyncio
async def test_subscribe_requires_room(session):
    with pytest.raises(NoActiveRoom):
        await session.subscribe()


# --- Sending ---


@pytest.mark.asyncio
async def test_send_without_room_does_not_write(session, backend):
    with pytest.raises(NoActiveRoom):
        await session.send_message("hello")

    assert backend.messages.inserts == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n"])
async def test_send_blank_message_fails(session, backend, text):
    await session.create_room()

    with pytest.raises(EmptyMessage):
        await session.send_message(text)

    assert backend.messages.inserts == 0


@pytest.mark.asyncio
async def test_sent_message_appears_through_echo(session, backend):
    room = await session.create_room()

    with patch.object(backend.messages, "insert", wraps=backend.messages.insert) as insert:
        sent = await session.send_message("  hello  ")

    insert.assert_awaited_once_with(room.id, "user", "hello")
    assert [m.id for m in session.messages] == [sent.id]
    assert session.messages[0].text == "hello"


@pytest.mark.asyncio
async def test_send_does_not_insert_locally_without_echo(session, backend):
    """No optimistic insert: a dropped echo leaves the message invisible."""
    await session.create_room()

    with patch.object(backend.feed, "publish"):
        await session.send_message("lost echo")

    assert session.messages == []
    await session.load_history()
    assert [m.text for m in session.messages] == ["lost echo"]


@pytest.mark.asyncio
async def test_partner_receives_sent_message(backend):
    alice = RoomSession(backend, code_generator=lambda: "HQ7NEW")
    bob = RoomSession(backend)

    room = await alice.create_room()
    await bob.join_room("hq7new")
    await bob.send_message("hi from bob")

    assert [m.text for m in alice.messages] == ["hi from bob"]
    assert [m.text for m in bob.messages] == ["hi from bob"]
    assert alice.messages[0].room_id == room.id


# --- Teardown ---


@pytest.mark.asyncio
async def test_context_manager_releases_feed(backend):
    async with RoomSession(backend, code_generator=lambda: "K7M2QZ") as session:
        await session.create_room()
        assert backend.feed.active_subscriptions

    assert not session.is_subscribed
    assert backend.feed.active_subscriptions == []
