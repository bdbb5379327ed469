"""SQLAlchemy-backed message store."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parlor.core.errors import NotFoundError
from parlor.models import DirectMessage, DmThread, Profile
from parlor.schemas.direct_message import (
    MessageDraft,
    MessageRecord,
    ProfileRecord,
    ThreadRecord,
)

__all__ = ["SqlMessageStore", "sorted_pair"]

logger = logging.getLogger(__name__)


def sorted_pair(user_a: str, user_b: str) -> tuple[str, str]:
    """Return the canonical (sorted) participant pair."""
    first, second = sorted((user_a, user_b))
    return first, second


class SqlMessageStore:
    """Thin wrapper around database access for threads and messages.

    The methods are ``async`` to satisfy :class:`MessageStore`, but the
    session calls block the event loop. That suits the request-scoped API
    handlers; a client-side :class:`~parlor.services.dm.DmService` in
    production talks to :class:`~parlor.repositories.http.HttpMessageStore`.
    """

    def __init__(self, session: Session) -> None:
        """Initialize the store with a SQLAlchemy session."""
        self.session = session

    async def get_profile(self, user_id: str) -> ProfileRecord | None:
        profile = self.session.get(Profile, user_id)
        return ProfileRecord.model_validate(profile) if profile else None

    async def set_public_key(self, user_id: str, public_key: str) -> None:
        profile = self.session.get(Profile, user_id)
        if profile is None:
            raise NotFoundError(f"Profile {user_id} not found")
        profile.public_key = public_key
        self.session.commit()

    async def find_active_thread(self, user_a: str, user_b: str) -> ThreadRecord | None:
        first, second = sorted_pair(user_a, user_b)
        thread = self.session.scalars(
            select(DmThread).where(
                DmThread.participant_a == first,
                DmThread.participant_b == second,
                DmThread.archived_at.is_(None),
            )
        ).first()
        return ThreadRecord.model_validate(thread) if thread else None

    async def insert_thread(self, user_a: str, user_b: str) -> ThreadRecord:
        """Insert a thread for the pair, returning the existing one on conflict."""
        first, second = sorted_pair(user_a, user_b)
        thread = DmThread(participant_a=first, participant_b=second)
        self.session.add(thread)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = await self.find_active_thread(first, second)
            if existing is None:
                raise
            logger.info("Thread for pair already existed; reusing %s", existing.id)
            return existing
        self.session.refresh(thread)
        return ThreadRecord.model_validate(thread)

    async def get_thread(self, thread_id: str) -> ThreadRecord | None:
        thread = self.session.get(DmThread, thread_id)
        return ThreadRecord.model_validate(thread) if thread else None

    async def list_threads(self, user_id: str) -> list[ThreadRecord]:
        threads = self.session.scalars(
            select(DmThread)
            .where(or_(DmThread.participant_a == user_id, DmThread.participant_b == user_id))
            .order_by(DmThread.created_at.desc(), DmThread.id)
        )
        return [ThreadRecord.model_validate(thread) for thread in threads]

    async def insert_message(self, draft: MessageDraft) -> MessageRecord:
        message = DirectMessage(**draft.model_dump())
        self.session.add(message)
        self.session.commit()
        self.session.refresh(message)
        return MessageRecord.model_validate(message)

    async def get_message(self, message_id: str) -> MessageRecord | None:
        message = self.session.get(DirectMessage, message_id)
        return MessageRecord.model_validate(message) if message else None

    async def list_messages(
        self,
        thread_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageRecord]:
        """Return messages ascending by creation time.

        With ``limit`` the most recent ``limit`` messages are returned, still
        in ascending order.
        """
        stmt = select(DirectMessage).where(DirectMessage.thread_id == thread_id)
        if since is not None:
            stmt = stmt.where(DirectMessage.created_at > since)
        if limit is not None:
            stmt = stmt.order_by(DirectMessage.created_at.desc(), DirectMessage.id.desc()).limit(limit)
            rows = list(self.session.scalars(stmt))
            rows.reverse()
        else:
            stmt = stmt.order_by(DirectMessage.created_at, DirectMessage.id)
            rows = list(self.session.scalars(stmt))
        return [MessageRecord.model_validate(row) for row in rows]

    async def last_message(self, thread_id: str) -> MessageRecord | None:
        message = self.session.scalars(
            select(DirectMessage)
            .where(DirectMessage.thread_id == thread_id)
            .order_by(DirectMessage.created_at.desc(), DirectMessage.id.desc())
            .limit(1)
        ).first()
        return MessageRecord.model_validate(message) if message else None

    async def count_unread(self, thread_id: str, reader_id: str) -> int:
        count = self.session.scalar(
            select(func.count())
            .select_from(DirectMessage)
            .where(
                DirectMessage.thread_id == thread_id,
                DirectMessage.sender_id != reader_id,
                DirectMessage.is_read.is_(False),
            )
        )
        return int(count or 0)

    async def mark_read(
        self,
        thread_id: str,
        reader_id: str,
        up_to: datetime | None = None,
    ) -> list[str]:
        """Flip unread peer messages to read and return the affected ids."""
        conditions = [
            DirectMessage.thread_id == thread_id,
            DirectMessage.sender_id != reader_id,
            DirectMessage.is_read.is_(False),
        ]
        if up_to is not None:
            conditions.append(DirectMessage.created_at <= up_to)

        ids = list(self.session.scalars(select(DirectMessage.id).where(*conditions)))
        if not ids:
            return []
        self.session.execute(
            update(DirectMessage)
            .where(DirectMessage.id.in_(ids), DirectMessage.is_read.is_(False))
            .values(is_read=True)
        )
        self.session.commit()
        return ids
