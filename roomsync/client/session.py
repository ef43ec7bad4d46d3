"""
Room session: creates or joins a shared room, loads its history and keeps
the local message list live through the change feed.
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from types import TracebackType
from typing import Callable, Iterator, List, Optional, Set, Type

from pydantic import ValidationError

from roomsync.client.backend import BackendClient, FeedPayload, ISubscription
from roomsync.core.errors import (
    DecodeFailure,
    EmptyMessage,
    InvalidCode,
    NoActiveRoom,
    OperationInProgress,
)
from roomsync.core.message import Message, SenderKind
from roomsync.core.room import Room, generate_room_code, normalize_room_code
from roomsync.core.session_state import SessionState

logger = logging.getLogger(__name__)


class _FeedRelay:
    """
    Routes feed events of one subscription into the session.
    Events are buffered until the room switch that opened the feed commits.
    """

    def __init__(self, session: "RoomSession", room_id: str):
        self._session = session
        self.room_id = room_id
        self.live = False
        self.buffer: List[FeedPayload] = []

    # pylint: disable=protected-access
    def __call__(self, payload: FeedPayload) -> None:
        if self.live:
            self._session._handle_feed_event(self.room_id, payload)
        else:
            self.buffer.append(payload)

    def go_live(self) -> None:
        """Flushes buffered events and delivers the next ones directly"""
        self.live = True
        pending, self.buffer = self.buffer, []
        for payload in pending:
            self._session._handle_feed_event(self.room_id, payload)


class RoomSession:
    """
    Client-side state of one shared room.

    All mutations run on the event loop. Feed events are handled synchronously
    (decode, room check, de-dup, append) so they never interleave with each other
    or with a room switch.
    """

    def __init__(
        self,
        backend: BackendClient,
        code_generator: Callable[[], str] = generate_room_code,
    ) -> None:
        self._backend = backend
        self._code_generator = code_generator
        self._state = SessionState()
        self._subscription: Optional[ISubscription] = None
        self._relay: Optional[_FeedRelay] = None
        self._in_flight: Set[str] = set()
        # Room switches apply in call order, the last one wins
        self._transition_lock = asyncio.Lock()
        self.decode_failures: List[DecodeFailure] = []
        # Messages accepted from the feed while a history fetch is pending
        self._arrival_logs: List[List[Message]] = []

    @property
    def active_room(self) -> Optional[Room]:
        """The room this session is in, if any"""
        return self._state.active_room

    @property
    def messages(self) -> List[Message]:
        """Snapshot of the local messages ordered by created_at"""
        return list(self._state.messages)

    @property
    def is_subscribed(self) -> bool:
        """True while a live feed is open"""
        return self._subscription is not None and self._subscription.active

    def is_in_flight(self, operation: str) -> bool:
        """Checks whether an operation is waiting on the backend"""
        return operation in self._in_flight

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        if operation in self._in_flight:
            logger.debug("Rejected %s: already in flight", operation)
            raise OperationInProgress()
        self._in_flight.add(operation)
        try:
            yield
        finally:
            self._in_flight.discard(operation)

    # === Room transitions ===

    async def create_room(self) -> Room:
        """
        Creates a room with a freshly generated code and enters it.
        A code collision surfaces as DuplicateCode; it is not retried.
        """
        with self._guard("create_room"):
            code = self._code_generator()
            async with self._transition_lock:
                room = await self._backend.rooms.create(code)
                logger.info("Created room %s (%s)", room.code, room.id)
                await self._enter(room)
            return room

    async def join_room(self, code: str) -> Room:
        """Joins an existing room by its code (case and surrounding whitespace ignored)."""
        normalized = normalize_room_code(code)
        if not normalized:
            raise InvalidCode()

        with self._guard("join_room"):
            async with self._transition_lock:
                room = await self._backend.rooms.find_by_code(normalized)
                logger.info("Joining room %s (%s)", room.code, room.id)
                await self._enter(room)
            return room

    async def _enter(self, room: Room) -> None:
        # The new feed opens before the history fetch so no insert falls in between.
        # Nothing touches the current state until every backend call succeeded.
        relay = _FeedRelay(self, room.id)
        subscription = await self._backend.feed.subscribe(room.id, relay)
        try:
            history = await self._backend.messages.list_by_room(room.id)
        except BaseException:
            # Cancellation included: the new feed must not outlive a switch that never happened.
            await subscription.close()
            raise

        # Commit without awaiting, then release the old feed.
        previous = self._detach_feed()
        self._state.enter_room(room, history)
        self._subscription = subscription
        self._relay = relay
        relay.go_live()
        if previous is not None:
            await previous.close()
        logger.info("Entered room %s with %d messages", room.code, len(history))

    # === History & feed ===

    async def load_history(self) -> None:
        """Replaces the local messages with the active room's stored history."""
        room = self._require_room()
        with self._guard("load_history"):
            # Feed deliveries during the fetch may be newer than the snapshot.
            arrivals: List[Message] = []
            self._arrival_logs.append(arrivals)
            try:
                history = await self._backend.messages.list_by_room(room.id)
            finally:
                self._arrival_logs.remove(arrivals)

            if self.active_room is not None and self.active_room.id == room.id:
                self._state.replace_messages(history)
                for message in arrivals:
                    self._state.add_message(message)
            else:
                logger.debug("Discarded history of %s: room changed meanwhile", room.code)

    async def subscribe(self) -> None:
        """Opens the live feed of the active room, replacing any open one."""
        room = self._require_room()
        await self.unsubscribe()

        relay = _FeedRelay(self, room.id)
        relay.live = True
        self._subscription = await self._backend.feed.subscribe(room.id, relay)
        self._relay = relay
        logger.debug("Subscribed to room %s", room.code)

    def _detach_feed(self) -> Optional[ISubscription]:
        subscription, self._subscription = self._subscription, None
        if self._relay is not None:
            self._relay.live = False
            self._relay = None
        return subscription

    async def unsubscribe(self) -> None:
        """Releases the live feed. No-op when none is open."""
        subscription = self._detach_feed()
        if subscription is not None:
            await subscription.close()
            logger.debug("Unsubscribed from room %s", subscription.room_id)

    def _handle_feed_event(self, room_id: str, payload: FeedPayload) -> None:
        try:
            message = self._decode(payload)
        except DecodeFailure as e:
            logger.warning("Dropped feed event for room %s: %s", room_id, e.message)
            self.decode_failures.append(e)
            return

        room = self.active_room
        if room is None or message.room_id != room.id or room_id != room.id:
            logger.debug("Ignored message %s for inactive room %s", message.id, message.room_id)
            return

        if not self._state.add_message(message):
            logger.debug("Duplicate delivery of message %s", message.id)
            return
        for arrivals in self._arrival_logs:
            arrivals.append(message)

    @staticmethod
    def _decode(payload: FeedPayload) -> Message:
        try:
            if isinstance(payload, (str, bytes)):
                payload = json.loads(payload)
            return Message.model_validate(payload)
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            raise DecodeFailure(f"Received a message that could not be read: {e}") from e

    # === Sending ===

    async def send_message(self, text: str, sender_type: str = SenderKind.USER.value) -> Message:
        """
        Writes a message to the active room.
        The local list is not touched: the message shows up when the feed echoes it.
        """
        trimmed = text.strip()
        if not trimmed:
            raise EmptyMessage()
        room = self._require_room()

        with self._guard("send_message"):
            message = await self._backend.messages.insert(room.id, sender_type, trimmed)
            logger.debug("Sent message %s to room %s", message.id, room.code)
            return message

    def _require_room(self) -> Room:
        if self._state.active_room is None:
            raise NoActiveRoom()
        return self._state.active_room

    # === Teardown ===

    async def close(self) -> None:
        """View teardown: releases the live feed."""
        await self.unsubscribe()

    async def __aenter__(self) -> "RoomSession":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()
