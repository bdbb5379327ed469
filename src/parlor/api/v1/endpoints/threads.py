# src/parlor/api/v1/endpoints/threads.py
"""Thread and thread-message endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, status

from parlor.api.v1.dependencies import CurrentUserDep, StoreDep, require_thread
from parlor.schemas.direct_message import (
    MarkReadRequest,
    MarkReadResponse,
    MessageDraft,
    MessageRecord,
    ThreadCreate,
    ThreadRecord,
    UnreadCount,
)

router = APIRouter(prefix="/threads", tags=["threads"])


@router.get("", response_model=list[ThreadRecord])
async def list_threads(current_user: CurrentUserDep, store: StoreDep) -> list[ThreadRecord]:
    """List the caller's threads, newest first."""
    return await store.list_threads(current_user.id)


@router.get("/lookup", response_model=ThreadRecord)
async def lookup_thread(
    current_user: CurrentUserDep,
    store: StoreDep,
    peer_id: str = Query(..., min_length=1),
) -> ThreadRecord:
    """Find the active thread between the caller and ``peer_id``."""
    thread = await store.find_active_thread(current_user.id, peer_id)
    if thread is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    return thread


@router.post("", response_model=ThreadRecord, status_code=status.HTTP_201_CREATED)
async def create_thread(
    body: ThreadCreate,
    current_user: CurrentUserDep,
    store: StoreDep,
) -> ThreadRecord:
    """Create the thread with ``peer_id``, or return the one that already exists."""
    if body.peer_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot start a conversation with yourself",
        )
    if await store.get_profile(body.peer_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Peer not found")

    existing = await store.find_active_thread(current_user.id, body.peer_id)
    if existing is not None:
        return existing
    return await store.insert_thread(current_user.id, body.peer_id)


@router.get("/{thread_id}", response_model=ThreadRecord)
async def get_thread(thread_id: str, current_user: CurrentUserDep, store: StoreDep) -> ThreadRecord:
    return await require_thread(store, thread_id, current_user.id)


@router.get("/{thread_id}/messages", response_model=list[MessageRecord])
async def list_messages(
    thread_id: str,
    current_user: CurrentUserDep,
    store: StoreDep,
    since: datetime | None = Query(None),
    limit: int | None = Query(None, ge=1, le=500),
) -> list[MessageRecord]:
    """Return sealed messages oldest first."""
    await require_thread(store, thread_id, current_user.id)
    return await store.list_messages(thread_id, since=since, limit=limit)


@router.post(
    "/{thread_id}/messages",
    response_model=MessageRecord,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    thread_id: str,
    draft: MessageDraft,
    current_user: CurrentUserDep,
    store: StoreDep,
) -> MessageRecord:
    """Store a sealed message written by the caller."""
    await require_thread(store, thread_id, current_user.id)
    if draft.thread_id != thread_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message thread does not match the URL",
        )
    if draft.sender_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot send on behalf of another user",
        )
    if not draft.cipher_content and not draft.media_url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message must have content or media",
        )
    if draft.is_encrypted and not (draft.encrypted_key and draft.iv):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Encrypted messages need a key and an iv",
        )
    return await store.insert_message(draft)


@router.get("/{thread_id}/messages/last", response_model=MessageRecord)
async def last_message(thread_id: str, current_user: CurrentUserDep, store: StoreDep) -> MessageRecord:
    await require_thread(store, thread_id, current_user.id)
    message = await store.last_message(thread_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread has no messages")
    return message


@router.get("/{thread_id}/unread-count", response_model=UnreadCount)
async def unread_count(thread_id: str, current_user: CurrentUserDep, store: StoreDep) -> UnreadCount:
    await require_thread(store, thread_id, current_user.id)
    return UnreadCount(count=await store.count_unread(thread_id, current_user.id))


@router.post("/{thread_id}/read", response_model=MarkReadResponse)
async def mark_read(
    thread_id: str,
    body: MarkReadRequest,
    current_user: CurrentUserDep,
    store: StoreDep,
) -> MarkReadResponse:
    """Mark the peer's unread messages as read, optionally only up to ``up_to``."""
    await require_thread(store, thread_id, current_user.id)
    flipped = await store.mark_read(thread_id, current_user.id, up_to=body.up_to)
    return MarkReadResponse(message_ids=flipped)
