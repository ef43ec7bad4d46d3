"""
Room structure and room code helpers.
Codes are short, human-shareable and avoid visually ambiguous characters.
"""

import secrets
import uuid
from typing import Optional

from pydantic import BaseModel, Field

# No 0/O, 1/I/L
ROOM_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6
ROOM_CODE_PATTERN = f"^[{ROOM_CODE_ALPHABET}]{{{ROOM_CODE_LENGTH}}}$"


class Room(BaseModel):
    """A shared conversation identified by a short code."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    code: str
    created_at: Optional[str] = None


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    """Returns a random room code drawn from ROOM_CODE_ALPHABET."""
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def normalize_room_code(code: str) -> str:
    """Trims whitespace and uppercases a user-typed code."""
    return code.strip().upper()


def feed_channel(room_id: str) -> str:
    """Name of the pub/sub channel carrying a room's inserts."""
    return f"room_{room_id}"
