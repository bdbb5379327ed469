"""Tests for the SQLAlchemy message store."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from parlor.core.errors import NotFoundError
from parlor.db.time import utcnow
from parlor.models import DirectMessage, DmThread, Profile
from parlor.repositories.sql import SqlMessageStore, sorted_pair
from parlor.schemas.direct_message import MessageDraft


def _draft(thread_id: str, sender_id: str, text: str = "hi") -> MessageDraft:
    return MessageDraft(thread_id=thread_id, sender_id=sender_id, cipher_content=text)


def test_sorted_pair() -> None:
    assert sorted_pair("bob", "alice") == ("alice", "bob")
    assert sorted_pair("alice", "bob") == ("alice", "bob")


@pytest.mark.asyncio
async def test_insert_thread_stores_sorted_pair(store: SqlMessageStore, alice: Profile, bob: Profile) -> None:
    thread = await store.insert_thread("bob", "alice")

    assert (thread.participant_a, thread.participant_b) == ("alice", "bob")
    assert (await store.find_active_thread("alice", "bob")).id == thread.id
    assert (await store.find_active_thread("bob", "alice")).id == thread.id


@pytest.mark.asyncio
async def test_archived_thread_is_not_active(
    store: SqlMessageStore, db_session: Session, alice: Profile, bob: Profile
) -> None:
    thread = await store.insert_thread("alice", "bob")
    row = db_session.get(DmThread, thread.id)
    row.archived_at = utcnow()
    db_session.commit()

    assert await store.find_active_thread("alice", "bob") is None
    replacement = await store.insert_thread("alice", "bob")
    assert replacement.id != thread.id


@pytest.mark.asyncio
async def test_set_public_key_requires_profile(store: SqlMessageStore) -> None:
    with pytest.raises(NotFoundError):
        await store.set_public_key("nobody", "key")


@pytest.mark.asyncio
async def test_list_messages_orders_and_limits(
    store: SqlMessageStore, db_session: Session, alice: Profile, bob: Profile
) -> None:
    thread = await store.insert_thread("alice", "bob")
    base = utcnow() - timedelta(minutes=10)
    for minute, text in enumerate(["one", "two", "three", "four"]):
        db_session.add(
            DirectMessage(
                thread_id=thread.id,
                sender_id="alice",
                cipher_content=text,
                created_at=base + timedelta(minutes=minute),
            )
        )
    db_session.commit()

    everything = await store.list_messages(thread.id)
    assert [m.cipher_content for m in everything] == ["one", "two", "three", "four"]

    latest = await store.list_messages(thread.id, limit=2)
    assert [m.cipher_content for m in latest] == ["three", "four"]

    newer = await store.list_messages(thread.id, since=base + timedelta(minutes=1))
    assert [m.cipher_content for m in newer] == ["three", "four"]

    assert (await store.last_message(thread.id)).cipher_content == "four"


@pytest.mark.asyncio
async def test_mark_read_only_flips_peer_messages(
    store: SqlMessageStore, alice: Profile, bob: Profile
) -> None:
    thread = await store.insert_thread("alice", "bob")
    from_bob = await store.insert_message(_draft(thread.id, "bob", "hey"))
    from_alice = await store.insert_message(_draft(thread.id, "alice", "yo"))

    assert await store.count_unread(thread.id, "alice") == 1

    flipped = await store.mark_read(thread.id, "alice")
    assert flipped == [from_bob.id]
    assert await store.count_unread(thread.id, "alice") == 0
    assert (await store.get_message(from_alice.id)).is_read is False

    # A second call has nothing left to flip.
    assert await store.mark_read(thread.id, "alice") == []


@pytest.mark.asyncio
async def test_mark_read_up_to(
    store: SqlMessageStore, db_session: Session, alice: Profile, bob: Profile
) -> None:
    thread = await store.insert_thread("alice", "bob")
    base = utcnow() - timedelta(minutes=5)
    rows = [
        DirectMessage(
            thread_id=thread.id,
            sender_id="bob",
            cipher_content=str(i),
            created_at=base + timedelta(minutes=i),
        )
        for i in range(3)
    ]
    db_session.add_all(rows)
    db_session.commit()

    flipped = await store.mark_read(thread.id, "alice", up_to=base + timedelta(minutes=1))

    assert sorted(flipped) == sorted([rows[0].id, rows[1].id])
    assert await store.count_unread(thread.id, "alice") == 1


@pytest.mark.asyncio
async def test_list_threads_for_user(
    store: SqlMessageStore, alice: Profile, bob: Profile, carol: Profile
) -> None:
    ab = await store.insert_thread("alice", "bob")
    ac = await store.insert_thread("carol", "alice")
    await store.insert_thread("bob", "carol")

    ids = {thread.id for thread in await store.list_threads("alice")}
    assert ids == {ab.id, ac.id}
