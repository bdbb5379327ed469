# src/parlor/schemas/__init__.py
"""Pydantic schemas for the Parlor API and realtime events."""

from .direct_message import (
    Attachment,
    DmMessage,
    DmThreadView,
    MarkReadResult,
    MessageDraft,
    MessageRecord,
    ProfileRecord,
    ThreadRecord,
)
from .realtime import PresenceState, ReadChange, ReadReceipt, TypingEvent

__all__ = [
    "Attachment",
    "DmMessage",
    "DmThreadView",
    "MarkReadResult",
    "MessageDraft",
    "MessageRecord",
    "PresenceState",
    "ProfileRecord",
    "ReadChange",
    "ReadReceipt",
    "ThreadRecord",
    "TypingEvent",
]
