"""Shared API dependencies for authentication and store access."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from parlor.core.security import decode_access_token
from parlor.db.session import get_db
from parlor.models import Profile
from parlor.repositories.sql import SqlMessageStore
from parlor.schemas.direct_message import ThreadRecord

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: SessionDep,
) -> Profile:
    """Get the current authenticated profile from the bearer token.

    Raises:
        HTTPException: If the token is invalid or the profile does not exist.
    """
    subject = decode_access_token(credentials.credentials)
    if subject is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    profile = db.get(Profile, subject)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return profile


def get_store(db: SessionDep) -> SqlMessageStore:
    return SqlMessageStore(db)


# Type alias for current user dependency
CurrentUserDep = Annotated[Profile, Depends(get_current_user)]
StoreDep = Annotated[SqlMessageStore, Depends(get_store)]


async def require_thread(store: SqlMessageStore, thread_id: str, user_id: str) -> ThreadRecord:
    """Load a thread the caller participates in or raise 404/403."""
    thread = await store.get_thread(thread_id)
    if thread is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    if not thread.has_participant(user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a participant of this thread",
        )
    return thread
