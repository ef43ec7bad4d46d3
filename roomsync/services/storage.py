"""
Defines storage management APIs, using SQLite, for
the rooms and messages persisted by the backend.
"""

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from roomsync.core.errors import DuplicateCode, RoomNotFound
from roomsync.core.message import Message, NewMessage
from roomsync.core.room import Room


def utc_timestamp() -> str:
    """Current time as a fixed-width ISO-8601 UTC string (sorts lexically)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class StorageService:
    """Handles the backend's persistence of rooms and messages."""

    def __init__(self, db_name: str):
        self.db_name = db_name
        self._init_db()

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_name)
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_conn() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS rooms (
                    id TEXT PRIMARY KEY,
                    code TEXT NOT NULL UNIQUE,
                    created_at TEXT
                    )
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    room_id TEXT NOT NULL REFERENCES rooms(id),
                    sender_type TEXT NOT NULL,
                    text TEXT NOT NULL,
                    created_at TEXT
                    )
                """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_created_at
                    ON messages(created_at)
                """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_room_id
                    ON messages(room_id)
                """
            )

            conn.commit()

    # === Rooms ===

    def create_room(self, code: str) -> Room:
        """
        Inserts a room with the given code.
        Raises DuplicateCode if the code is already taken.
        """
        room = Room(id=str(uuid.uuid4()), code=code, created_at=utc_timestamp())
        with self._get_conn() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO rooms (id, code, created_at)
                        VALUES (?, ?, ?)
                    """,
                    (room.id, room.code, room.created_at),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise DuplicateCode(f"Room code {code} is already in use.") from e
        return room

    def get_room_by_code(self, code: str) -> Optional[Room]:
        """Looks a room up by its exact code."""
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM rooms WHERE code = ?", (code,)).fetchone()
            return Room(**dict(row)) if row else None

    def get_room(self, room_id: str) -> Optional[Room]:
        """Looks a room up by id."""
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
            return Room(**dict(row)) if row else None

    # === Messages ===

    def add_message(self, new_message: NewMessage) -> Message:
        """
        Inserts a new message in the room.
        Raises RoomNotFound if the room does not exist.
        """
        message = Message(
            id=str(uuid.uuid4()),
            room_id=new_message.room_id,
            sender_type=new_message.sender_type,
            text=new_message.text,
            created_at=utc_timestamp(),
        )
        with self._get_conn() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO messages
                        (id, room_id, sender_type, text, created_at)
                        VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.room_id,
                        message.sender_type,
                        message.text,
                        message.created_at,
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise RoomNotFound(f"Room {new_message.room_id} does not exist.") from e
        return message

    def get_room_messages(self, room_id: str, limit: Optional[int] = None, offset: int = 0) -> List[Message]:
        """Retrieves a room's messages, oldest first."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, room_id, sender_type, text, created_at FROM messages
                    WHERE room_id = ?
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT ? OFFSET ?
                """,
                (room_id, -1 if limit is None else limit, offset),
            )
            return [Message(**dict(row)) for row in cursor.fetchall()]
