"""SQLAlchemy model for the on-device offline outbox."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from parlor.db.local import LocalBase
from parlor.db.time import utcnow

OUTBOX_PENDING = "pending"
OUTBOX_SYNCING = "syncing"
OUTBOX_SYNCED = "synced"
OUTBOX_FAILED = "failed"


def _new_id() -> str:
    return uuid4().hex


class OutboxRecord(LocalBase):
    """A write that could not reach the remote store yet."""

    __tablename__ = "outbox_entry"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    local_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, default=_new_id)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    # JSON document with sensitive fields sealed by the local vault.
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=OUTBOX_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
