# src/parlor/api/v1/endpoints/profiles.py
"""Profile directory endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from parlor.api.v1.dependencies import CurrentUserDep, StoreDep
from parlor.schemas.direct_message import ProfileRecord, PublicKeyUpdate

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.put("/me/public-key", response_model=ProfileRecord)
async def publish_public_key(
    body: PublicKeyUpdate,
    current_user: CurrentUserDep,
    store: StoreDep,
) -> ProfileRecord:
    """Publish the caller's public key."""
    await store.set_public_key(current_user.id, body.public_key)
    profile = await store.get_profile(current_user.id)
    if profile is None:  # pragma: no cover - the caller was just authenticated
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile


@router.get("/{user_id}", response_model=ProfileRecord)
async def get_profile(user_id: str, current_user: CurrentUserDep, store: StoreDep) -> ProfileRecord:
    """Return a profile including its public key."""
    profile = await store.get_profile(user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile
