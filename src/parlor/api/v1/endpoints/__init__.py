# src/parlor/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .messages import router as messages_router
from .profiles import router as profiles_router
from .threads import router as threads_router

__all__ = [
    "messages_router",
    "profiles_router",
    "threads_router",
]
