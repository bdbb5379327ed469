"""Realtime gateway for thread channels, presence and typing indicators."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

from parlor.core.settings import settings
from parlor.db.time import as_utc, utcnow
from parlor.schemas.direct_message import MessageRecord
from parlor.schemas.realtime import (
    PresenceState,
    PresenceStatus,
    ReadChange,
    ReadReceipt,
    TypingEvent,
)
from parlor.services.broker import EVENT_PRESENCE_SYNC, RealtimeBroker, RealtimeChannel
from parlor.services.delivery import OrderedDelivery

logger = logging.getLogger(__name__)

EVENT_NEW_MESSAGE: Final[str] = "message.new"
EVENT_MESSAGE_READ: Final[str] = "message.read"
EVENT_TYPING: Final[str] = "typing"


def thread_topic(thread_id: str) -> str:
    return f"dm_thread:{thread_id}"


def user_topic(user_id: str) -> str:
    return f"user_notifications:{user_id}"


def _ignore(*_args: Any) -> None:
    return None


@dataclass
class ThreadHandlers:
    """Callbacks for one subscribed thread."""

    on_new_message: Callable[[MessageRecord], Any]
    on_message_read: Callable[[str, str], Any] = _ignore
    on_typing: Callable[[str, bool], Any] = _ignore
    on_presence_change: Callable[[str, PresenceState], Any] = _ignore


MembershipCheck = Callable[[str, str], Awaitable[bool]]


class RealtimeGateway:
    """Manages one client's live channels on top of a broker.

    At most one channel exists per thread; subscribing again replaces the
    previous channel after unsubscribing it exactly once.
    """

    def __init__(self, broker: RealtimeBroker, *, typing_timeout: float | None = None) -> None:
        self._broker = broker
        self._typing_timeout = (
            typing_timeout if typing_timeout is not None else settings.typing_timeout_seconds
        )
        self._channels: dict[str, RealtimeChannel] = {}
        self._user_channels: dict[str, RealtimeChannel] = {}
        self._user_deliveries: dict[str, OrderedDelivery[tuple[MessageRecord, bool]]] = {}
        self._rosters: dict[str, dict[str, PresenceState]] = {}
        self._presence: dict[str, PresenceState] = {}
        self._typing_timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def is_subscribed(self, thread_id: str) -> bool:
        return thread_id in self._channels

    async def subscribe_to_thread(
        self,
        thread_id: str,
        user_id: str,
        handlers: ThreadHandlers,
    ) -> RealtimeChannel:
        """Open the live channel for ``thread_id`` and announce ``user_id`` as online."""
        await self.unsubscribe_from_thread(thread_id)

        channel = self._broker.channel(thread_topic(thread_id), presence_key=user_id)

        def _on_new(payload: dict[str, Any]) -> Any:
            return handlers.on_new_message(MessageRecord.model_validate(payload))

        def _on_read(payload: dict[str, Any]) -> None:
            receipt = ReadReceipt.model_validate(payload)
            for message_id in receipt.newly_read():
                self._call(handlers.on_message_read, message_id, receipt.reader_id)

        def _on_typing(payload: dict[str, Any]) -> None:
            event = TypingEvent.model_validate(payload)
            if event.user_id != user_id:
                self._call(handlers.on_typing, event.user_id, event.is_typing)

        def _on_sync(_payload: dict[str, Any]) -> None:
            self._sync_presence(thread_id, user_id, channel, handlers)

        channel.on(EVENT_NEW_MESSAGE, _on_new)
        channel.on(EVENT_MESSAGE_READ, _on_read)
        channel.on(EVENT_TYPING, _on_typing)
        channel.on(EVENT_PRESENCE_SYNC, _on_sync)

        self._channels[thread_id] = channel
        await channel.subscribe()
        await channel.track({"status": "online", "last_seen": utcnow().isoformat()})
        logger.debug("Subscribed %s to thread %s", user_id, thread_id)
        return channel

    async def unsubscribe_from_thread(self, thread_id: str) -> None:
        self._cancel_typing_timer(thread_id)
        channel = self._channels.pop(thread_id, None)
        self._rosters.pop(thread_id, None)
        if channel is not None:
            await channel.unsubscribe()
            logger.debug("Unsubscribed from thread %s", thread_id)

    async def broadcast_message(self, message: MessageRecord, participant_ids: list[str]) -> None:
        """Publish a stored message to the thread and to each participant's inbox."""
        payload = message.model_dump(mode="json")
        await self._broker.publish(thread_topic(message.thread_id), EVENT_NEW_MESSAGE, payload)
        for participant_id in participant_ids:
            await self._broker.publish(user_topic(participant_id), EVENT_NEW_MESSAGE, payload)

    async def broadcast_read(self, thread_id: str, message_ids: list[str], reader_id: str) -> None:
        receipt = ReadReceipt(
            reader_id=reader_id,
            changes=[ReadChange(id=message_id, was_read=False, is_read=True) for message_id in message_ids],
        )
        await self._broker.publish(thread_topic(thread_id), EVENT_MESSAGE_READ, receipt.model_dump())

    async def send_typing_indicator(self, thread_id: str, user_id: str, is_typing: bool) -> None:
        """Broadcast typing state; ``True`` reverts to ``False`` after the timeout."""
        channel = self._channels.get(thread_id)
        if channel is None:
            logger.debug("Ignoring typing indicator for unsubscribed thread %s", thread_id)
            return

        self._cancel_typing_timer(thread_id)
        if is_typing:
            loop = asyncio.get_running_loop()
            self._typing_timers[thread_id] = loop.call_later(
                self._typing_timeout, self._typing_expired, thread_id, user_id
            )
        await channel.send(EVENT_TYPING, TypingEvent(user_id=user_id, is_typing=is_typing).model_dump())

    def _typing_expired(self, thread_id: str, user_id: str) -> None:
        self._typing_timers.pop(thread_id, None)
        self._spawn(self._stop_typing(thread_id, user_id))

    async def _stop_typing(self, thread_id: str, user_id: str) -> None:
        channel = self._channels.get(thread_id)
        # A keystroke after expiry owns the thread's timer now.
        if channel is None or thread_id in self._typing_timers:
            return
        await channel.send(EVENT_TYPING, TypingEvent(user_id=user_id, is_typing=False).model_dump())

    def _cancel_typing_timer(self, thread_id: str) -> None:
        timer = self._typing_timers.pop(thread_id, None)
        if timer is not None:
            timer.cancel()

    async def update_presence(self, thread_id: str, user_id: str, status: PresenceStatus) -> None:
        channel = self._channels.get(thread_id)
        if channel is None:
            logger.debug("Ignoring presence update for unsubscribed thread %s", thread_id)
            return
        now = utcnow()
        await channel.track({"status": status, "last_seen": now.isoformat()})
        self._presence[user_id] = PresenceState(user_id=user_id, status=status, last_seen=now)

    def get_presence_state(self, user_id: str) -> PresenceState | None:
        return self._presence.get(user_id)

    def get_all_presence_states(self) -> dict[str, PresenceState]:
        return dict(self._presence)

    async def subscribe_to_user_notifications(
        self,
        user_id: str,
        on_new_message: Callable[[MessageRecord], Any],
        is_member: MembershipCheck,
    ) -> RealtimeChannel:
        """Listen for new messages in any of ``user_id``'s threads.

        Events for threads ``user_id`` does not belong to are dropped.
        Membership checks run concurrently, but messages reach
        ``on_new_message`` in the order the channel received them.
        """
        await self.unsubscribe_from_user_notifications(user_id)
        channel = self._broker.channel(user_topic(user_id))

        def _deliver(item: tuple[MessageRecord, bool]) -> Any:
            message, allowed = item
            if not allowed:
                logger.warning(
                    "Dropping notification for thread %s: %s is not a participant",
                    message.thread_id,
                    user_id,
                )
                return None
            return on_new_message(message)

        delivery: OrderedDelivery[tuple[MessageRecord, bool]] = OrderedDelivery(_deliver)

        async def _check(message: MessageRecord) -> tuple[MessageRecord, bool]:
            return message, await is_member(message.thread_id, user_id)

        def _on_new(payload: dict[str, Any]) -> None:
            delivery.submit(_check(MessageRecord.model_validate(payload)))

        channel.on(EVENT_NEW_MESSAGE, _on_new)
        self._user_channels[user_id] = channel
        self._user_deliveries[user_id] = delivery
        await channel.subscribe()
        return channel

    async def unsubscribe_from_user_notifications(self, user_id: str) -> None:
        delivery = self._user_deliveries.pop(user_id, None)
        if delivery is not None:
            delivery.close()
        channel = self._user_channels.pop(user_id, None)
        if channel is not None:
            await channel.unsubscribe()

    async def drain(self) -> None:
        """Wait until received notifications have reached their listeners."""
        for delivery in list(self._user_deliveries.values()):
            await delivery.drain()

    async def cleanup(self) -> None:
        """Close every channel and forget all presence state. Safe to repeat."""
        for thread_id in list(self._channels):
            await self.unsubscribe_from_thread(thread_id)
        for user_id in list(self._user_channels):
            await self.unsubscribe_from_user_notifications(user_id)
        for timer in self._typing_timers.values():
            timer.cancel()
        self._typing_timers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._presence.clear()
        self._rosters.clear()

    def _sync_presence(
        self,
        thread_id: str,
        own_id: str,
        channel: RealtimeChannel,
        handlers: ThreadHandlers,
    ) -> None:
        if self._channels.get(thread_id) is not channel:
            return
        roster = self._rosters.setdefault(thread_id, {})
        snapshot = channel.presence_state()
        changed: list[PresenceState] = []

        for member_id, raw in snapshot.items():
            state = PresenceState(
                user_id=member_id,
                status=raw.get("status", "online"),
                last_seen=_parse_time(raw.get("last_seen")),
            )
            if roster.get(member_id) != state:
                roster[member_id] = state
                self._presence[member_id] = state
                if member_id != own_id:
                    changed.append(state)

        for member_id in [key for key in roster if key not in snapshot]:
            previous = roster.pop(member_id)
            departed = PresenceState(user_id=member_id, status="away", last_seen=previous.last_seen)
            self._presence[member_id] = departed
            if member_id != own_id and departed != previous:
                changed.append(departed)

        for state in changed:
            self._call(handlers.on_presence_change, state.user_id, state)

    def _call(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Realtime handler %r raised", callback)
            return
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)

    def _task_finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Realtime background task failed", exc_info=task.exception())


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value))
        except ValueError:
            logger.debug("Unparseable presence timestamp %r", value)
    return utcnow()

