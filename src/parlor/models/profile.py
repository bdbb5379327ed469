"""SQLAlchemy model for user profiles and their published public keys."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from parlor.db.session import Base
from parlor.db.time import utcnow


class Profile(Base):
    """Directory entry for a user.

    Only the public half of a user's key pair is ever stored here.
    """

    __tablename__ = "user_profile"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Base64 SubjectPublicKeyInfo; NULL until the client publishes a key.
    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
