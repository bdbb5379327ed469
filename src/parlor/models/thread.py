"""Models describing two-party direct-message threads."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from parlor.db.session import Base
from parlor.db.time import utcnow


def _new_id() -> str:
    return uuid4().hex


class DmThread(Base):
    """Conversation container between exactly two users.

    Participants are stored in sorted order so an unordered pair maps to a
    single row; at most one non-archived thread exists per pair.
    """

    __tablename__ = "dm_thread"
    __table_args__ = (
        CheckConstraint("participant_a < participant_b", name="ck_dm_thread_sorted_pair"),
        Index(
            "uq_dm_thread_active_pair",
            "participant_a",
            "participant_b",
            unique=True,
            sqlite_where=text("archived_at IS NULL"),
            postgresql_where=text("archived_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    participant_a: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_profile.id"), nullable=False
    )
    participant_b: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_profile.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    # Archiving is owned by another subsystem; this core only reads it.
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def has_participant(self, user_id: str) -> bool:
        """Return True if ``user_id`` is one of the two participants."""
        return user_id in (self.participant_a, self.participant_b)

    def peer_of(self, user_id: str) -> str:
        """Return the participant that is not ``user_id``."""
        return self.participant_b if self.participant_a == user_id else self.participant_a
