# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Generator, Iterator
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("PYTEST_RUNNING", "true")

from parlor.core.security import create_access_token
from parlor.db.local import create_local_engine, local_session_factory
from parlor.db.session import Base
from parlor.db.session import get_db as app_get_session
from parlor.main import app as fastapi_app
from parlor.models import Profile
from parlor.repositories.sql import SqlMessageStore
from parlor.services.broker import LocalBroker
from parlor.services.crypto import CryptoService, KeyPairText
from parlor.services.dm import DmService
from parlor.services.key_store import InMemoryKeyStore
from parlor.services.outbox import OfflineOutbox
from parlor.services.realtime import RealtimeGateway
from parlor.services.vault import LocalVault

TEST_DB_URL = "sqlite://"
TEST_VAULT_SECRET = "test-vault-secret"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture(scope="session")
def key_pairs() -> dict[str, KeyPairText]:
    """RSA key pairs generated once per run; generation is slow."""
    crypto = CryptoService()
    return {name: crypto.generate_key_pair() for name in ("alice", "bob", "carol")}


def _make_profile(db_session: Session, user_id: str, public_key: str | None) -> Profile:
    profile = Profile(id=user_id, display_name=user_id.title(), public_key=public_key)
    db_session.add(profile)
    db_session.commit()
    return profile


@pytest.fixture()
def alice(db_session: Session, key_pairs: dict[str, KeyPairText]) -> Profile:
    return _make_profile(db_session, "alice", key_pairs["alice"].public_key)


@pytest.fixture()
def bob(db_session: Session, key_pairs: dict[str, KeyPairText]) -> Profile:
    return _make_profile(db_session, "bob", key_pairs["bob"].public_key)


@pytest.fixture()
def carol(db_session: Session, key_pairs: dict[str, KeyPairText]) -> Profile:
    return _make_profile(db_session, "carol", key_pairs["carol"].public_key)


@pytest.fixture()
def alice_headers(alice: Profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(alice.id)}"}


@pytest.fixture()
def bob_headers(bob: Profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(bob.id)}"}


@pytest.fixture()
def carol_headers(carol: Profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(carol.id)}"}


@pytest.fixture()
def store(db_session: Session) -> SqlMessageStore:
    return SqlMessageStore(db_session)


@pytest.fixture()
def broker() -> LocalBroker:
    return LocalBroker()


@pytest.fixture()
def vault() -> LocalVault:
    return LocalVault(TEST_VAULT_SECRET)


@pytest.fixture()
def outbox_factory(tmp_path: Path, vault: LocalVault) -> Callable[..., OfflineOutbox]:
    """Build outboxes on a file-backed SQLite database under ``tmp_path``."""
    engines: list[Engine] = []

    def _factory(name: str = "outbox", **kwargs) -> OfflineOutbox:
        local_engine = create_local_engine(f"sqlite:///{tmp_path / 'device' / name}.db")
        engines.append(local_engine)
        kwargs.setdefault("vault", vault)
        return OfflineOutbox(local_session_factory(local_engine), **kwargs)

    yield _factory

    for local_engine in engines:
        local_engine.dispose()


@pytest.fixture()
def dm_factory(
    store: SqlMessageStore,
    broker: LocalBroker,
    key_pairs: dict[str, KeyPairText],
) -> Callable[..., DmService]:
    """Build a DmService for a user whose private key is already on the device."""

    def _factory(
        user_id: str,
        *,
        message_store=None,
        outbox: OfflineOutbox | None = None,
        with_key: bool = True,
        typing_timeout: float = 3.0,
    ) -> DmService:
        crypto = CryptoService(InMemoryKeyStore())
        if with_key:
            crypto.store_private_key(user_id, key_pairs[user_id].private_key)
        gateway = RealtimeGateway(broker, typing_timeout=typing_timeout)
        return DmService(user_id, message_store or store, crypto, gateway, outbox=outbox)

    return _factory
