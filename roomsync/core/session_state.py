"""In memory room session state (active room and its messages)"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from roomsync.core.message import Message
from roomsync.core.room import Room


@dataclass
class SessionState:
    """
    Keeps the client-side state of one room session.
    Messages stay ordered by created_at with no duplicate ids.
    """

    active_room: Optional[Room] = None
    messages: List[Message] = field(default_factory=list)
    _seen_ids: Set[str] = field(default_factory=set, repr=False)

    def enter_room(self, room: Room, history: Iterable[Message]) -> None:
        """Switches to a room and replaces the messages with its history"""
        self.active_room = room
        self.replace_messages(history)

    def replace_messages(self, history: Iterable[Message]) -> None:
        """Replaces the message sequence wholesale"""
        self.messages = []
        self._seen_ids = set()
        for message in history:
            self.add_message(message)

    def has_message(self, message_id: str) -> bool:
        """Checks if a message id is already present"""
        return message_id in self._seen_ids

    def add_message(self, message: Message) -> bool:
        """
        Appends a message unless its id is already present.
        Returns True if the sequence changed.
        """
        if message.id in self._seen_ids:
            return False

        self._seen_ids.add(message.id)
        self.messages.append(message)

        # Feed order can differ from created_at under concurrent writers.
        if len(self.messages) > 1 and _is_out_of_order(self.messages[-2], message):
            self.messages.sort(key=_order_key)
        return True


def _order_key(message: Message) -> tuple[int, str]:
    # Undated messages sort last, keeping their arrival order (sort is stable).
    if message.created_at is None:
        return (1, "")
    return (0, message.created_at)


def _is_out_of_order(previous: Message, latest: Message) -> bool:
    return _order_key(previous) > _order_key(latest)
