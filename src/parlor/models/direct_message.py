# src/parlor/models/direct_message.py
"""Models describing direct messages between users."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from parlor.db.session import Base
from parlor.db.time import utcnow


def _new_id() -> str:
    return uuid4().hex


class DirectMessage(Base):
    """Encrypted message exchanged inside a thread.

    The store never sees plaintext for encrypted messages: ``cipher_content``
    holds the AES-GCM output, ``encrypted_key`` the content key sealed to the
    recipient and ``sender_encrypted_key`` the same key sealed to the sender.
    Everything except ``is_read`` is immutable once written.
    """

    __tablename__ = "direct_message"
    __table_args__ = (Index("ix_direct_message_thread_created", "thread_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    thread_id: Mapped[str] = mapped_column(String(32), ForeignKey("dm_thread.id"), nullable=False)
    sender_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_profile.id"), nullable=False
    )
    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="text")

    cipher_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    encrypted_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    sender_encrypted_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    iv: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
