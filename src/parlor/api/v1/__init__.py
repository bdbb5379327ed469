# src/parlor/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import messages_router, profiles_router, threads_router

__all__ = [
    "messages_router",
    "profiles_router",
    "threads_router",
]
