"""Message store implementations."""

from .base import MessageStore
from .http import HttpMessageStore
from .sql import SqlMessageStore

__all__ = ["HttpMessageStore", "MessageStore", "SqlMessageStore"]
