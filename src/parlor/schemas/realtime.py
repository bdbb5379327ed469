"""Realtime event payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

PresenceStatus = Literal["online", "typing", "away"]


class PresenceState(BaseModel):
    """A peer's live status within a thread channel."""

    user_id: str
    status: PresenceStatus = "online"
    last_seen: datetime


class TypingEvent(BaseModel):
    """Ephemeral typing broadcast."""

    user_id: str
    is_typing: bool = False


class ReadChange(BaseModel):
    id: str
    was_read: bool = False
    is_read: bool = False


class ReadReceipt(BaseModel):
    """Read-state changes made by ``reader_id`` in one thread."""

    reader_id: str
    changes: list[ReadChange] = Field(default_factory=list)

    def newly_read(self) -> list[str]:
        """Ids that flipped from unread to read."""
        return [change.id for change in self.changes if change.is_read and not change.was_read]
