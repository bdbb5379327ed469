"""Local (on-device) database used for the offline outbox."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class LocalBase(DeclarativeBase):
    """Declarative base for tables that never leave the device."""


def create_local_engine(url: str) -> Engine:
    """Create the local engine, making sure a file-backed SQLite directory exists."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(url, connect_args={"check_same_thread": False})

    import parlor.models.outbox  # noqa: F401

    LocalBase.metadata.create_all(bind=engine)
    return engine


def local_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory bound to the local engine."""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
