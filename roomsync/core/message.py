"""
Define Message structure to ensure consistency in the system
"""

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SenderKind(str, Enum):
    """Known sender_type values. Storage does not enforce them."""

    USER = "user"
    PARTNER = "partner"
    AI = "ai"


class Message(BaseModel):
    """Message structure in the app."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    room_id: str
    sender_type: str
    text: str
    created_at: Optional[str] = None

    @property
    def sender_kind(self) -> Optional[SenderKind]:
        """The sender as a SenderKind, or None for unknown values."""
        try:
            return SenderKind(self.sender_type)
        except ValueError:
            return None


class NewMessage(BaseModel):
    """Payload for inserting a message."""

    room_id: str
    sender_type: str = SenderKind.USER.value
    text: str
