"""The minimal CRUD contract the messaging core needs from its backend."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from parlor.schemas.direct_message import (
    MessageDraft,
    MessageRecord,
    ProfileRecord,
    ThreadRecord,
)

__all__ = ["MessageStore"]


class MessageStore(Protocol):
    """Async store for profiles, threads and messages.

    Implementations raise :class:`parlor.core.errors.NetworkError` for
    transient failures so callers can fall back to the offline outbox.
    """

    async def get_profile(self, user_id: str) -> ProfileRecord | None: ...

    async def set_public_key(self, user_id: str, public_key: str) -> None: ...

    async def find_active_thread(self, user_a: str, user_b: str) -> ThreadRecord | None: ...

    async def insert_thread(self, user_a: str, user_b: str) -> ThreadRecord: ...

    async def get_thread(self, thread_id: str) -> ThreadRecord | None: ...

    async def list_threads(self, user_id: str) -> list[ThreadRecord]: ...

    async def insert_message(self, draft: MessageDraft) -> MessageRecord: ...

    async def get_message(self, message_id: str) -> MessageRecord | None: ...

    async def list_messages(
        self,
        thread_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageRecord]: ...

    async def last_message(self, thread_id: str) -> MessageRecord | None: ...

    async def count_unread(self, thread_id: str, reader_id: str) -> int: ...

    async def mark_read(
        self,
        thread_id: str,
        reader_id: str,
        up_to: datetime | None = None,
    ) -> list[str]: ...
