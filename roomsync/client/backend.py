"""
Contracts of the backend collaborators a RoomSession talks to.
Implementations: HTTP + Redis (roomsync.client.http, roomsync.client.realtime)
and in-memory fakes (roomsync.client.memory).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List

from roomsync.core.message import Message
from roomsync.core.room import Room

# Raw feed payload: a JSON string or an already decoded mapping
FeedPayload = Any
FeedCallback = Callable[[FeedPayload], None]


class IRoomDirectory(ABC):
    """Persists rooms keyed by their short code."""

    @abstractmethod
    async def create(self, code: str) -> Room:
        """
        Creates a room with the given code.
        Raises DuplicateCode if the code is taken, BackendUnavailable on transport errors.
        """
        pass

    @abstractmethod
    async def find_by_code(self, code: str) -> Room:
        """Looks a room up by its normalized code. Raises RoomNotFound."""
        pass

    @abstractmethod
    async def find_by_id(self, room_id: str) -> Room:
        """Looks a room up by id. Raises RoomNotFound."""
        pass


class IMessageStore(ABC):
    """Persists ordered messages per room."""

    @abstractmethod
    async def insert(self, room_id: str, sender_type: str, text: str) -> Message:
        """Writes a new message. Raises BackendUnavailable on write errors."""
        pass

    @abstractmethod
    async def list_by_room(self, room_id: str) -> List[Message]:
        """Returns the room's messages ordered by created_at ascending."""
        pass


class ISubscription(ABC):
    """Handle of a live feed. Owned by whoever opened it."""

    @property
    @abstractmethod
    def room_id(self) -> str:
        """Room the feed is scoped to"""
        pass

    @property
    @abstractmethod
    def active(self) -> bool:
        """False once closed"""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Stops deliveries. Closing twice is a no-op."""
        pass


class IChangeFeed(ABC):
    """Publishes an event per inserted message, scoped by room."""

    @abstractmethod
    async def subscribe(self, room_id: str, on_insert: FeedCallback) -> ISubscription:
        """
        Opens a feed for a room. on_insert is called on the event loop with the raw payload
        of every insert. Delivery is at-least-once and unordered.
        """
        pass


@dataclass
class BackendClient:
    """The three collaborators bundled, injected into a RoomSession."""

    rooms: IRoomDirectory
    messages: IMessageStore
    feed: IChangeFeed
    # Transport cleanup hooks (HTTP client, Redis connection)
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self) -> None:
        """Releases transport resources held by the collaborators."""
        for closer in self.closers:
            await closer()
