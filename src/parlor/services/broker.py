"""Publish/subscribe transport used by the realtime gateway.

``LocalBroker`` is an in-process implementation with the same surface as a
hosted realtime provider: named topics, per-channel event callbacks,
broadcasts, and presence tracking with full-roster sync events. Each channel
owns one dispatch task that delivers events strictly in publish order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, Final, Protocol

logger = logging.getLogger(__name__)

EVENT_PRESENCE_SYNC: Final[str] = "presence.sync"

EventCallback = Callable[[dict[str, Any]], Any]


class RealtimeChannel(Protocol):
    """A live subscription to one topic."""

    topic: str

    def on(self, event: str, callback: EventCallback) -> RealtimeChannel: ...

    async def subscribe(self) -> None: ...

    async def unsubscribe(self) -> None: ...

    async def send(self, event: str, payload: dict[str, Any]) -> None: ...

    async def track(self, state: dict[str, Any]) -> None: ...

    def presence_state(self) -> dict[str, dict[str, Any]]: ...


class RealtimeBroker(Protocol):
    """Factory for channels plus server-side publishing."""

    def channel(self, topic: str, presence_key: str | None = None) -> RealtimeChannel: ...

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None: ...


class LocalChannel:
    """Channel handle returned by :class:`LocalBroker`."""

    def __init__(self, broker: LocalBroker, topic: str, presence_key: str | None) -> None:
        self.topic = topic
        self.presence_key = presence_key
        self._broker = broker
        self._callbacks: dict[str, list[EventCallback]] = {}
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def subscribed(self) -> bool:
        return self._task is not None and not self._closed

    def on(self, event: str, callback: EventCallback) -> LocalChannel:
        self._callbacks.setdefault(event, []).append(callback)
        return self

    async def subscribe(self) -> None:
        if self._closed:
            raise RuntimeError(f"Channel {self.topic} was already unsubscribed")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._dispatch())
            self._broker._attach(self)

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker._detach(self)
        if self._task is not None:
            self._task.cancel()
            self._task = None
        for task in list(self._background):
            task.cancel()
        # Release anyone waiting on flush() for events we will never deliver.
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        """Broadcast an ephemeral event to the other members of the topic."""
        if not self.subscribed:
            logger.debug("Dropping %s on unsubscribed channel %s", event, self.topic)
            return
        self._broker._fan_out(self.topic, event, payload, skip=self)

    async def track(self, state: dict[str, Any]) -> None:
        """Publish this member's presence state and trigger a roster sync."""
        if self.presence_key is None:
            raise RuntimeError(f"Channel {self.topic} has no presence key")
        if not self.subscribed:
            return
        self._broker._track(self.topic, self.presence_key, dict(state))

    def presence_state(self) -> dict[str, dict[str, Any]]:
        return self._broker._roster(self.topic)

    def _enqueue(self, event: str, payload: dict[str, Any]) -> None:
        if not self._closed:
            self._queue.put_nowait((event, payload))

    async def _dispatch(self) -> None:
        while True:
            event, payload = await self._queue.get()
            try:
                for callback in list(self._callbacks.get(event, ())):
                    self._invoke(callback, event, payload)
            finally:
                self._queue.task_done()

    def _invoke(self, callback: EventCallback, event: str, payload: dict[str, Any]) -> None:
        try:
            result = callback(payload)
        except Exception:
            logger.exception("Handler for %s on %s raised", event, self.topic)
            return
        if inspect.isawaitable(result):
            # Coroutine handlers run beside the channel so they cannot stall it.
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._handler_finished)

    def _handler_finished(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Async handler on %s failed", self.topic, exc_info=task.exception()
            )

    async def join(self) -> None:
        await self._queue.join()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


class LocalBroker:
    """In-process realtime broker shared by every gateway in one process."""

    def __init__(self) -> None:
        self._members: dict[str, list[LocalChannel]] = {}
        self._presence: dict[str, dict[str, dict[str, Any]]] = {}

    def channel(self, topic: str, presence_key: str | None = None) -> LocalChannel:
        return LocalChannel(self, topic, presence_key)

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        """Deliver an event to every member of ``topic``."""
        self._fan_out(topic, event, payload, skip=None)

    def member_count(self, topic: str) -> int:
        return len(self._members.get(topic, ()))

    async def flush(self) -> None:
        """Wait until every queued event has been dispatched."""
        while True:
            channels = [ch for members in self._members.values() for ch in members]
            pending = [ch for ch in channels if not ch._queue.empty() or ch._background]
            if not pending:
                return
            await asyncio.gather(*(ch.join() for ch in pending))

    def _attach(self, channel: LocalChannel) -> None:
        self._members.setdefault(channel.topic, []).append(channel)

    def _detach(self, channel: LocalChannel) -> None:
        members = self._members.get(channel.topic)
        if members and channel in members:
            members.remove(channel)
        if not members:
            self._members.pop(channel.topic, None)

        key = channel.presence_key
        if key is None:
            return
        still_present = any(ch.presence_key == key for ch in self._members.get(channel.topic, ()))
        roster = self._presence.get(channel.topic)
        if roster is not None and not still_present and roster.pop(key, None) is not None:
            self._fan_out(channel.topic, EVENT_PRESENCE_SYNC, {}, skip=None)
        if roster is not None and not roster:
            self._presence.pop(channel.topic, None)

    def _fan_out(
        self,
        topic: str,
        event: str,
        payload: dict[str, Any],
        skip: LocalChannel | None,
    ) -> None:
        for channel in list(self._members.get(topic, ())):
            if channel is not skip:
                channel._enqueue(event, payload)

    def _track(self, topic: str, key: str, state: dict[str, Any]) -> None:
        self._presence.setdefault(topic, {})[key] = state
        self._fan_out(topic, EVENT_PRESENCE_SYNC, {}, skip=None)

    def _roster(self, topic: str) -> dict[str, dict[str, Any]]:
        return {key: dict(state) for key, state in self._presence.get(topic, {}).items()}
