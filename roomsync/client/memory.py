"""
In-memory backend collaborators.
Used by tests and local demos in place of the HTTP + Redis backend.
Fan-out is synchronous: every insert is delivered to matching subscribers
before insert() returns.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from roomsync.client.backend import (
    BackendClient,
    FeedCallback,
    FeedPayload,
    IChangeFeed,
    IMessageStore,
    IRoomDirectory,
    ISubscription,
)
from roomsync.core.errors import BackendUnavailable, DuplicateCode, RoomNotFound
from roomsync.core.message import Message
from roomsync.core.room import Room

logger = logging.getLogger(__name__)

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class InMemoryDatabase:
    """Shared tables behind the in-memory collaborators."""

    def __init__(self) -> None:
        self.rooms: Dict[str, Room] = {}
        self.messages: List[Message] = []
        self.available = True
        self._ticks = 0

    def check_available(self) -> None:
        """Raises BackendUnavailable while the fake is switched off"""
        if not self.available:
            raise BackendUnavailable()

    def next_timestamp(self) -> str:
        """Strictly increasing ISO-8601 timestamps"""
        self._ticks += 1
        return (_EPOCH + timedelta(milliseconds=self._ticks)).isoformat()


class InMemoryRoomDirectory(IRoomDirectory):
    """Rooms table with a unique code constraint."""

    def __init__(self, db: InMemoryDatabase):
        self._db = db
        # Lookups reaching the directory, so tests can assert none happened
        self.lookups = 0

    async def create(self, code: str) -> Room:
        self._db.check_available()
        if any(room.code == code for room in self._db.rooms.values()):
            raise DuplicateCode()

        room = Room(id=str(uuid.uuid4()), code=code, created_at=self._db.next_timestamp())
        self._db.rooms[room.id] = room
        return room

    async def find_by_code(self, code: str) -> Room:
        self.lookups += 1
        self._db.check_available()
        for room in self._db.rooms.values():
            if room.code == code:
                return room
        raise RoomNotFound()

    async def find_by_id(self, room_id: str) -> Room:
        self.lookups += 1
        self._db.check_available()
        room = self._db.rooms.get(room_id)
        if room is None:
            raise RoomNotFound()
        return room


class InMemoryChangeFeed(IChangeFeed):
    """Delivers inserts to subscribers of the matching room."""

    def __init__(self) -> None:
        self._subscriptions: List["InMemorySubscription"] = []

    async def subscribe(self, room_id: str, on_insert: FeedCallback) -> ISubscription:
        subscription = InMemorySubscription(self, room_id, on_insert)
        self._subscriptions.append(subscription)
        logger.debug("Subscribed to room %s", room_id)
        return subscription

    @property
    def active_subscriptions(self) -> List["InMemorySubscription"]:
        """Subscriptions that were not closed yet"""
        return [sub for sub in self._subscriptions if sub.active]

    def publish(self, message: Message) -> None:
        """Delivers a message to every open feed of its room"""
        self.deliver_raw(message.room_id, message.model_dump(mode="json"))

    def deliver_raw(self, room_id: str, payload: FeedPayload) -> None:
        """Pushes an arbitrary payload down the room's feeds (redelivery, malformed events)"""
        for subscription in self.active_subscriptions:
            if subscription.room_id == room_id:
                subscription.deliver(payload)

    def remove(self, subscription: "InMemorySubscription") -> None:
        """Forgets a closed subscription"""
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


class InMemorySubscription(ISubscription):
    """Handle returned by InMemoryChangeFeed.subscribe."""

    def __init__(self, feed: InMemoryChangeFeed, room_id: str, on_insert: FeedCallback):
        self._feed = feed
        self._room_id = room_id
        self._on_insert = on_insert
        self._active = True

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, payload: FeedPayload) -> None:
        """Invokes the subscriber callback while open"""
        if self._active:
            self._on_insert(payload)

    async def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._feed.remove(self)


class InMemoryMessageStore(IMessageStore):
    """Messages table. Inserts are published to the change feed."""

    def __init__(self, db: InMemoryDatabase, feed: Optional[InMemoryChangeFeed] = None):
        self._db = db
        self._feed = feed
        self.inserts = 0

    async def insert(self, room_id: str, sender_type: str, text: str) -> Message:
        self._db.check_available()
        if room_id not in self._db.rooms:
            raise RoomNotFound()

        message = Message(
            id=str(uuid.uuid4()),
            room_id=room_id,
            sender_type=sender_type,
            text=text,
            created_at=self._db.next_timestamp(),
        )
        self._db.messages.append(message)
        self.inserts += 1

        if self._feed is not None:
            self._feed.publish(message)
        return message

    async def list_by_room(self, room_id: str) -> List[Message]:
        self._db.check_available()
        # created_at is strictly increasing, so insertion order is already sorted
        return [message for message in self._db.messages if message.room_id == room_id]

    def add_external(self, message: Message) -> Message:
        """
        Stores a message written by another client (fixed id allowed) and publishes it.
        """
        if message.created_at is None:
            message = message.model_copy(update={"created_at": self._db.next_timestamp()})
        self._db.messages.append(message)
        if self._feed is not None:
            self._feed.publish(message)
        return message


class InMemoryBackend(BackendClient):
    """A BackendClient wired to a fresh in-memory database."""

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        self.db = db or InMemoryDatabase()
        feed = InMemoryChangeFeed()
        super().__init__(
            rooms=InMemoryRoomDirectory(self.db),
            messages=InMemoryMessageStore(self.db, feed),
            feed=feed,
        )
