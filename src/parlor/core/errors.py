"""Error taxonomy shared by the direct-messaging core."""

from __future__ import annotations


class ParlorError(RuntimeError):
    """Base exception for all Parlor failures."""


class ValidationError(ParlorError):
    """Raised for invalid input such as self-threads or empty messages."""


class CryptoError(ParlorError):
    """Raised when sealing or opening a message fails.

    Decryption failures always raise this error; callers never receive
    partial or placeholder plaintext.
    """


class NotFoundError(ParlorError):
    """Raised when a thread, message or profile does not exist."""


class PermissionDeniedError(ParlorError):
    """Raised when acting on a thread or message the user does not belong to."""


class NetworkError(ParlorError):
    """Transient, retryable failure reaching the remote store."""


class StorageFullError(ParlorError):
    """Raised when the offline outbox would exceed its count or size bound."""


class CorruptedDataError(ParlorError):
    """Raised when a local cache entry cannot be decoded."""
