"""Network connectivity signal."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Any]


class ConnectivityMonitor:
    """Tracks whether the remote store is reachable.

    Listeners are notified only when the state actually changes.
    """

    def __init__(self, connected: bool = True) -> None:
        self._connected = connected
        self._listeners: list[ConnectivityListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register ``listener`` and return a function that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Connectivity changed: %s", "online" if connected else "offline")
        for listener in list(self._listeners):
            try:
                result = listener(connected)
            except Exception:
                logger.exception("Connectivity listener %r raised", listener)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
