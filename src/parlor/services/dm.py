"""Direct-messaging core: threads, encrypted messages, read state and live updates."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from parlor.core.errors import (
    CryptoError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from parlor.repositories.base import MessageStore
from parlor.schemas.direct_message import (
    Attachment,
    DmMessage,
    DmThreadView,
    MarkReadResult,
    MessageDraft,
    MessageRecord,
    MessageType,
    ThreadRecord,
)
from parlor.schemas.realtime import PresenceState, PresenceStatus
from parlor.services.crypto import CryptoService, EncryptedMessage
from parlor.services.delivery import OrderedDelivery
from parlor.services.outbox import KIND_DM_MESSAGE, OfflineOutbox
from parlor.services.realtime import RealtimeGateway, ThreadHandlers

logger = logging.getLogger(__name__)


def _ignore(*_args: Any) -> None:
    return None


@dataclass
class DmThreadHandlers:
    """UI callbacks for a live thread. Messages arrive already decrypted."""

    on_new_message: Callable[[DmMessage], Any]
    on_message_read: Callable[[str, str], Any] = _ignore
    on_typing: Callable[[str, bool], Any] = _ignore
    on_presence_change: Callable[[str, PresenceState], Any] = _ignore


class DmService:
    """Direct messaging for one signed-in user.

    Every store or crypto failure surfaces as a typed
    :class:`~parlor.core.errors.ParlorError`. Sends that fail with a
    :class:`NetworkError` are queued in the offline outbox when one is
    configured.
    """

    def __init__(
        self,
        current_user_id: str,
        store: MessageStore,
        crypto: CryptoService,
        gateway: RealtimeGateway,
        outbox: OfflineOutbox | None = None,
    ) -> None:
        self.current_user_id = current_user_id
        self._store = store
        self._crypto = crypto
        self._gateway = gateway
        self._outbox = outbox
        # Last known good values, used when the store is unreachable.
        self._threads: dict[str, ThreadRecord] = {}
        self._public_keys: dict[str, str] = {}
        self._deliveries: dict[str, OrderedDelivery[DmMessage]] = {}
        self._notifications: OrderedDelivery[DmMessage] | None = None
        if outbox is not None:
            outbox.register_handler(KIND_DM_MESSAGE, self.replay_outbox_entry)

    # --- keys ----------------------------------------------------------------

    async def setup_encryption(self) -> str:
        """Make sure the user has a local private key and a published public key.

        Returns:
            The user's published public key.
        """
        user_id = self.current_user_id
        profile = await self._store.get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"Profile {user_id} not found")

        private_key = await asyncio.to_thread(self._crypto.get_private_key, user_id)
        if private_key and profile.public_key:
            self._public_keys[user_id] = profile.public_key
            return profile.public_key

        pair = await asyncio.to_thread(self._crypto.generate_key_pair)
        # Keep the private half before publishing so a published key is always usable.
        await asyncio.to_thread(self._crypto.store_private_key, user_id, pair.private_key)
        await self._store.set_public_key(user_id, pair.public_key)
        self._public_keys[user_id] = pair.public_key
        logger.info("Generated and published a new key pair for %s", user_id)
        return pair.public_key

    async def _public_key_of(self, user_id: str) -> str | None:
        try:
            profile = await self._store.get_profile(user_id)
        except NetworkError:
            cached = self._public_keys.get(user_id)
            if cached is None:
                raise
            return cached
        if profile is None:
            raise NotFoundError(f"Profile {user_id} not found")
        if profile.public_key:
            self._public_keys[user_id] = profile.public_key
        return profile.public_key

    async def _private_key(self) -> str | None:
        return await asyncio.to_thread(self._crypto.get_private_key, self.current_user_id)

    # --- threads -------------------------------------------------------------

    async def create_thread(self, recipient_id: str) -> ThreadRecord:
        """Return the active thread with ``recipient_id``, creating it if needed."""
        if not recipient_id:
            raise ValidationError("Recipient is required")
        if recipient_id == self.current_user_id:
            raise ValidationError("Cannot start a conversation with yourself")
        if await self._store.get_profile(recipient_id) is None:
            raise NotFoundError(f"Profile {recipient_id} not found")

        thread = await self._store.find_active_thread(self.current_user_id, recipient_id)
        if thread is None:
            thread = await self._store.insert_thread(self.current_user_id, recipient_id)
            logger.info("Opened thread %s with %s", thread.id, recipient_id)
        self._threads[thread.id] = thread
        return thread

    async def _require_thread(self, thread_id: str) -> ThreadRecord:
        try:
            thread = await self._store.get_thread(thread_id)
        except NetworkError:
            thread = self._threads.get(thread_id)
            if thread is None:
                raise
        if thread is None:
            raise NotFoundError(f"Thread {thread_id} not found")
        if not thread.has_participant(self.current_user_id):
            raise PermissionDeniedError(f"Not a participant of thread {thread_id}")
        self._threads[thread.id] = thread
        return thread

    async def _is_member(self, thread_id: str, user_id: str) -> bool:
        try:
            thread = await self._store.get_thread(thread_id)
        except NetworkError:
            thread = self._threads.get(thread_id)
        return thread is not None and thread.has_participant(user_id)

    async def get_threads(self) -> list[DmThreadView]:
        """List the user's active threads with a decrypted preview and unread count."""
        threads = await self._store.list_threads(self.current_user_id)
        private_key = await self._private_key()

        async def _summarise(thread: ThreadRecord) -> DmThreadView:
            self._threads[thread.id] = thread
            last = await self._store.last_message(thread.id)
            unread = await self._store.count_unread(thread.id, self.current_user_id)
            preview = (
                await asyncio.to_thread(self._present, last, private_key) if last else None
            )
            return DmThreadView(
                id=thread.id,
                participant_ids=thread.participant_ids,
                created_at=thread.created_at,
                last_message=preview,
                unread_count=unread,
            )

        views = await asyncio.gather(*(_summarise(thread) for thread in threads))
        return sorted(
            views,
            key=lambda view: view.last_message.created_at if view.last_message else view.created_at,
            reverse=True,
        )

    # --- messages ------------------------------------------------------------

    async def send_message(
        self,
        thread_id: str,
        content: str,
        attachments: list[Attachment] | None = None,
        encrypted: bool = True,
    ) -> DmMessage:
        """Seal and store a message, then broadcast it to the thread.

        Raises:
            ValidationError: For empty messages or more than one attachment.
            CryptoError: If encryption was requested and cannot be performed;
                nothing is written in that case.
            NetworkError: If the store is unreachable and no outbox is configured.
        """
        attachments = list(attachments or [])
        if not content.strip() and not attachments:
            raise ValidationError("Message must have content or an attachment")
        if len(attachments) > 1:
            raise ValidationError("Only one attachment per message is supported")

        thread = await self._require_thread(thread_id)
        message_type: MessageType = attachments[0].kind if attachments else "text"
        media_url = attachments[0].url if attachments else None

        draft = await self._seal(thread, content, message_type, media_url, encrypted)
        try:
            record = await self._store.insert_message(draft)
        except NetworkError:
            if self._outbox is None:
                raise
            media_bytes = sum(attachment.size_bytes for attachment in attachments)
            entry = await self._outbox.save(draft.model_dump(mode="json"), media_bytes=media_bytes)
            logger.info("Store unreachable; queued message %s for thread %s", entry.local_id, thread_id)
            return DmMessage(
                id=entry.local_id,
                thread_id=thread_id,
                sender_id=self.current_user_id,
                message_type=message_type,
                content=content,
                media_url=media_url,
                created_at=entry.created_at,
                encrypted=draft.is_encrypted,
                pending=True,
            )

        await self._broadcast(record, thread)
        return self._as_view(record, content)

    async def _seal(
        self,
        thread: ThreadRecord,
        content: str,
        message_type: MessageType,
        media_url: str | None,
        encrypted: bool,
    ) -> MessageDraft:
        draft = MessageDraft(
            thread_id=thread.id,
            sender_id=self.current_user_id,
            message_type=message_type,
            media_url=media_url,
        )
        if not encrypted:
            return draft.model_copy(update={"cipher_content": content})

        recipient_key = await self._public_key_of(thread.peer_of(self.current_user_id))
        if not recipient_key:
            raise CryptoError("Recipient has not set up encryption")
        sender_key = self._public_keys.get(self.current_user_id) or await self._public_key_of(
            self.current_user_id
        )
        if not sender_key:
            logger.warning("Sending without a sender copy; %s has no public key", self.current_user_id)

        sealed = await asyncio.to_thread(
            self._crypto.encrypt_message, content, recipient_key, sender_key
        )
        return draft.model_copy(
            update={
                "cipher_content": sealed.encrypted_content,
                "encrypted_key": sealed.encrypted_key,
                "sender_encrypted_key": sealed.sender_encrypted_key,
                "iv": sealed.iv,
                "is_encrypted": True,
            }
        )

    async def replay_outbox_entry(self, payload: dict[str, Any]) -> MessageRecord:
        """Write a queued draft to the store and broadcast it."""
        draft = MessageDraft.model_validate(payload)
        if draft.sender_id != self.current_user_id:
            raise PermissionDeniedError("Queued message belongs to another user")
        thread = await self._require_thread(draft.thread_id)
        record = await self._store.insert_message(draft)
        await self._broadcast(record, thread)
        return record

    async def _broadcast(self, record: MessageRecord, thread: ThreadRecord) -> None:
        try:
            await self._gateway.broadcast_message(record, thread.participant_ids)
        except Exception:
            # The row is stored; peers will pick it up on their next fetch.
            logger.warning("Broadcast of message %s failed", record.id, exc_info=True)

    def _open(self, record: MessageRecord, private_key: str | None) -> str:
        if not record.is_encrypted:
            return record.cipher_content
        if not private_key:
            raise CryptoError("No local private key to decrypt with")
        sealed = EncryptedMessage(
            encrypted_content=record.cipher_content,
            encrypted_key=record.encrypted_key or "",
            iv=record.iv or "",
            sender_encrypted_key=record.sender_encrypted_key,
        )
        return self._crypto.decrypt_message(
            sealed, private_key, as_sender=record.sender_id == self.current_user_id
        )

    def _present(self, record: MessageRecord, private_key: str | None) -> DmMessage:
        try:
            content = self._open(record, private_key)
        except CryptoError as err:
            logger.warning("Could not decrypt message %s: %s", record.id, err)
            return self._as_view(record, None, decrypt_error=str(err))
        return self._as_view(record, content)

    @staticmethod
    def _as_view(
        record: MessageRecord,
        content: str | None,
        decrypt_error: str | None = None,
    ) -> DmMessage:
        return DmMessage(
            id=record.id,
            thread_id=record.thread_id,
            sender_id=record.sender_id,
            message_type=record.message_type,
            content=content,
            media_url=record.media_url,
            is_read=record.is_read,
            created_at=record.created_at,
            encrypted=record.is_encrypted,
            decrypt_error=decrypt_error,
        )

    async def get_messages(
        self,
        thread_id: str,
        since: datetime | None = None,
        limit: int | None = None,
        *,
        strict: bool = False,
    ) -> list[DmMessage]:
        """Fetch and decrypt a thread's messages, oldest first.

        A message that cannot be decrypted is returned with ``content=None``
        and ``decrypt_error`` set, unless ``strict`` is true, in which case
        the first such message raises :class:`CryptoError`.
        """
        if limit is not None and limit <= 0:
            raise ValidationError("limit must be positive")
        await self._require_thread(thread_id)
        records = await self._store.list_messages(thread_id, since=since, limit=limit)
        records = sorted(records, key=lambda record: (record.created_at, record.id))
        private_key = await self._private_key()

        messages = await asyncio.gather(
            *(asyncio.to_thread(self._present, record, private_key) for record in records)
        )
        if strict:
            for message in messages:
                if message.decrypt_error is not None:
                    raise CryptoError(
                        f"Message {message.id} could not be decrypted: {message.decrypt_error}"
                    )
        return list(messages)

    async def mark_thread_as_read(self, thread_id: str) -> MarkReadResult:
        """Mark every unread peer message in the thread as read."""
        await self._require_thread(thread_id)
        flipped = await self._store.mark_read(thread_id, self.current_user_id)
        await self._announce_read(thread_id, flipped)
        return MarkReadResult(updated_count=len(flipped))

    async def mark_read_up_to(self, thread_id: str, message_id: str) -> MarkReadResult:
        """Mark peer messages up to and including ``message_id`` as read."""
        await self._require_thread(thread_id)
        message = await self._store.get_message(message_id)
        if message is None or message.thread_id != thread_id:
            raise NotFoundError(f"Message {message_id} not found in thread {thread_id}")
        flipped = await self._store.mark_read(
            thread_id, self.current_user_id, up_to=message.created_at
        )
        await self._announce_read(thread_id, flipped)
        return MarkReadResult(updated_count=len(flipped))

    async def _announce_read(self, thread_id: str, message_ids: list[str]) -> None:
        if not message_ids:
            return
        try:
            await self._gateway.broadcast_read(thread_id, message_ids, self.current_user_id)
        except Exception:
            logger.warning("Read receipt broadcast for %s failed", thread_id, exc_info=True)

    # --- realtime ------------------------------------------------------------

    async def subscribe_to_thread(self, thread_id: str, handlers: DmThreadHandlers) -> None:
        """Go live on a thread. Replaces any earlier subscription to it."""
        await self._require_thread(thread_id)
        self._close_delivery(thread_id)
        private_key = await self._private_key()

        delivery: OrderedDelivery[DmMessage] = OrderedDelivery(handlers.on_new_message)
        self._deliveries[thread_id] = delivery

        def _on_record(record: MessageRecord) -> None:
            delivery.submit(asyncio.to_thread(self._present, record, private_key))

        await self._gateway.subscribe_to_thread(
            thread_id,
            self.current_user_id,
            ThreadHandlers(
                on_new_message=_on_record,
                on_message_read=handlers.on_message_read,
                on_typing=handlers.on_typing,
                on_presence_change=handlers.on_presence_change,
            ),
        )

    async def unsubscribe_from_thread(self, thread_id: str) -> None:
        self._close_delivery(thread_id)
        await self._gateway.unsubscribe_from_thread(thread_id)

    def _close_delivery(self, thread_id: str) -> None:
        delivery = self._deliveries.pop(thread_id, None)
        if delivery is not None:
            delivery.close()

    async def send_typing_indicator(self, thread_id: str, is_typing: bool) -> None:
        await self._gateway.send_typing_indicator(thread_id, self.current_user_id, is_typing)

    async def update_presence(self, thread_id: str, status: PresenceStatus) -> None:
        await self._gateway.update_presence(thread_id, self.current_user_id, status)

    def get_presence_state(self, user_id: str) -> PresenceState | None:
        return self._gateway.get_presence_state(user_id)

    async def subscribe_to_notifications(self, on_new_message: Callable[[DmMessage], Any]) -> None:
        """Receive new messages from all of the user's threads."""
        if self._notifications is not None:
            self._notifications.close()
        private_key = await self._private_key()
        delivery: OrderedDelivery[DmMessage] = OrderedDelivery(on_new_message)
        self._notifications = delivery

        def _on_record(record: MessageRecord) -> None:
            delivery.submit(asyncio.to_thread(self._present, record, private_key))

        await self._gateway.subscribe_to_user_notifications(
            self.current_user_id, _on_record, self._is_member
        )

    async def drain(self) -> None:
        """Wait for every live message received so far to reach its handler."""
        await self._gateway.drain()
        pending = list(self._deliveries.values())
        if self._notifications is not None:
            pending.append(self._notifications)
        for delivery in pending:
            await delivery.drain()

    async def close(self) -> None:
        """Tear down all live subscriptions."""
        for thread_id in list(self._deliveries):
            self._close_delivery(thread_id)
        if self._notifications is not None:
            self._notifications.close()
            self._notifications = None
        await self._gateway.cleanup()
