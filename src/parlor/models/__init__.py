# src/parlor/models/__init__.py
"""SQLAlchemy models for the Parlor message store."""

from .direct_message import DirectMessage
from .profile import Profile
from .thread import DmThread

__all__ = [
    "DirectMessage",
    "DmThread",
    "Profile",
]
