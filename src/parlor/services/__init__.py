# src/parlor/services/__init__.py
"""Business logic services for Parlor direct messaging."""

from .broker import LocalBroker
from .connectivity import ConnectivityMonitor
from .crypto import CryptoService
from .dm import DmService, DmThreadHandlers
from .outbox import OfflineOutbox
from .realtime import RealtimeGateway
from .vault import LocalVault

__all__ = [
    "ConnectivityMonitor",
    "CryptoService",
    "DmService",
    "DmThreadHandlers",
    "LocalBroker",
    "LocalVault",
    "OfflineOutbox",
    "RealtimeGateway",
]
