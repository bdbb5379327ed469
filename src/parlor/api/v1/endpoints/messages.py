# src/parlor/api/v1/endpoints/messages.py
"""Single-message lookup."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from parlor.api.v1.dependencies import CurrentUserDep, StoreDep, require_thread
from parlor.schemas.direct_message import MessageRecord

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/{message_id}", response_model=MessageRecord)
async def get_message(message_id: str, current_user: CurrentUserDep, store: StoreDep) -> MessageRecord:
    message = await store.get_message(message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    await require_thread(store, message.thread_id, current_user.id)
    return message
