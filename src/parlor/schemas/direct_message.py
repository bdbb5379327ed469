# src/parlor/schemas/direct_message.py
"""Direct message-related Pydantic schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from parlor.db.time import as_utc

MessageType = Literal["text", "image", "audio"]


class ProfileRecord(BaseModel):
    """Public directory entry for a user."""

    id: str
    display_name: str | None = None
    public_key: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ThreadRecord(BaseModel):
    """Thread row as stored remotely."""

    id: str
    participant_a: str
    participant_b: str
    created_at: datetime
    archived_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "archived_at")
    @classmethod
    def _normalise_tz(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def participant_ids(self) -> list[str]:
        return [self.participant_a, self.participant_b]

    def has_participant(self, user_id: str) -> bool:
        """Return True if ``user_id`` belongs to this thread."""
        return user_id in (self.participant_a, self.participant_b)

    def peer_of(self, user_id: str) -> str:
        """Return the other participant."""
        return self.participant_b if self.participant_a == user_id else self.participant_a


class MessageDraft(BaseModel):
    """A sealed message ready to be written to the store.

    Drafts are what the offline outbox persists and later replays, so they
    never carry plaintext for encrypted messages.
    """

    thread_id: str
    sender_id: str
    message_type: MessageType = "text"
    cipher_content: str = ""
    encrypted_key: str | None = None
    sender_encrypted_key: str | None = None
    iv: str | None = None
    is_encrypted: bool = False
    media_url: str | None = None


class MessageRecord(MessageDraft):
    """Message row as stored remotely."""

    id: str
    is_read: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at")
    @classmethod
    def _normalise_tz(cls, value: datetime) -> datetime:
        return as_utc(value)


class Attachment(BaseModel):
    """Already-uploaded media attached to a message."""

    kind: Literal["image", "audio"]
    url: str = Field(..., min_length=1)
    size_bytes: int = Field(default=0, ge=0)


class DmMessage(BaseModel):
    """Message as shown to this client, with content already decrypted."""

    id: str
    thread_id: str
    sender_id: str
    message_type: MessageType
    content: str | None
    media_url: str | None = None
    is_read: bool = False
    created_at: datetime
    encrypted: bool = False
    # True while the message only exists in the local outbox.
    pending: bool = False
    decrypt_error: str | None = None


class DmThreadView(BaseModel):
    """Thread summary for the conversation list."""

    id: str
    participant_ids: list[str]
    created_at: datetime
    last_message: DmMessage | None = None
    unread_count: int = 0


class MarkReadResult(BaseModel):
    """Outcome of marking a thread as read."""

    updated_count: int


# --- HTTP payloads -------------------------------------------------------------


class ThreadCreate(BaseModel):
    """Request body for creating a thread."""

    peer_id: str = Field(..., min_length=1)


class PublicKeyUpdate(BaseModel):
    """Request body for publishing the caller's public key."""

    public_key: str = Field(..., min_length=1)


class MarkReadRequest(BaseModel):
    """Request body for marking messages read.

    When ``up_to`` is given only peer messages created at or before that
    instant are marked.
    """

    up_to: datetime | None = None


class MarkReadResponse(BaseModel):
    """Ids of messages whose read flag flipped from false to true."""

    message_ids: list[str]


class UnreadCount(BaseModel):
    """Unread counter for one thread."""

    count: int
