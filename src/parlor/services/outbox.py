"""Durable on-device queue for writes made while offline.

Entries are stored in a local SQLite database with sensitive fields sealed
by :class:`~parlor.services.vault.LocalVault`. :meth:`OfflineOutbox.sync`
replays them in insertion order through handlers registered per entry kind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Final

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from parlor.core.errors import CorruptedDataError, StorageFullError
from parlor.core.settings import settings
from parlor.db.local import create_local_engine, local_session_factory
from parlor.db.time import as_utc, utcnow
from parlor.models.outbox import OUTBOX_FAILED, OUTBOX_PENDING, OUTBOX_SYNCING, OutboxRecord
from parlor.services.connectivity import ConnectivityMonitor
from parlor.services.vault import LocalVault

logger = logging.getLogger(__name__)

KIND_DM_MESSAGE: Final[str] = "dm_message"

ReplayHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class OutboxEntry:
    """Decoded view of a queued write."""

    local_id: str
    kind: str
    payload: dict[str, Any]
    size_bytes: int
    status: str
    attempts: int
    last_error: str | None
    created_at: datetime


@dataclass(frozen=True)
class SyncResult:
    synced_count: int
    failed_count: int
    # True when another sync was already running and this call did nothing.
    skipped: bool = False


@dataclass(frozen=True)
class CleanupResult:
    deleted_count: int


@dataclass(frozen=True)
class OutboxStats:
    count: int
    total_bytes: int


class OfflineOutbox:
    """Bounded FIFO of pending writes with single-flight replay."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        vault: LocalVault | None = None,
        max_entries: int | None = None,
        max_bytes: int | None = None,
        retention_days: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if session_factory is None:
            session_factory = local_session_factory(create_local_engine(settings.outbox_database_url))
        self._session_factory = session_factory
        self._vault = vault or LocalVault()
        self._max_entries = max_entries if max_entries is not None else settings.outbox_max_entries
        self._max_bytes = max_bytes if max_bytes is not None else settings.outbox_max_bytes
        self._retention = timedelta(
            days=retention_days if retention_days is not None else settings.outbox_retention_days
        )
        self._clock = clock
        self._handlers: dict[str, ReplayHandler] = {}
        self._write_lock = threading.Lock()
        self._sync_lock = asyncio.Lock()
        self._detach: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def register_handler(self, kind: str, handler: ReplayHandler) -> None:
        """Route entries of ``kind`` to ``handler`` during :meth:`sync`."""
        self._handlers[kind] = handler

    async def save(
        self,
        payload: Mapping[str, Any],
        *,
        kind: str = KIND_DM_MESSAGE,
        media_bytes: int = 0,
    ) -> OutboxEntry:
        """Queue ``payload`` for later replay.

        Args:
            payload: JSON-compatible document passed back to the handler.
            kind: Handler key.
            media_bytes: Size of media referenced by the payload, counted
                against the storage bound.

        Raises:
            StorageFullError: If the entry would exceed the count or byte bound.
        """
        sealed = self._vault.seal_fields(payload)
        blob = json.dumps(sealed, sort_keys=True).encode()
        size = len(blob) + max(media_bytes, 0)
        return await asyncio.to_thread(self._insert, kind, blob, size, dict(payload))

    def _insert(self, kind: str, blob: bytes, size: int, payload: dict[str, Any]) -> OutboxEntry:
        with self._write_lock, self._session_factory() as db:
            count, total = db.execute(
                select(func.count(OutboxRecord.seq), func.coalesce(func.sum(OutboxRecord.size_bytes), 0))
            ).one()
            if count >= self._max_entries:
                raise StorageFullError(f"Outbox is full ({count} entries)")
            if total + size > self._max_bytes:
                raise StorageFullError(
                    f"Outbox would exceed {self._max_bytes} bytes ({total} used, {size} requested)"
                )
            record = OutboxRecord(kind=kind, payload=blob, size_bytes=size, created_at=self._clock())
            db.add(record)
            db.commit()
            logger.info("Queued %s entry %s (%d bytes)", kind, record.local_id, size)
            return self._view(record, payload)

    async def sync(self) -> SyncResult:
        """Replay queued entries oldest first.

        A failing entry stays queued with its error recorded; later entries
        are still attempted. Concurrent calls return immediately with
        ``skipped=True`` while a sync is in flight.
        """
        if self._sync_lock.locked():
            logger.debug("Outbox sync already running")
            return SyncResult(synced_count=0, failed_count=0, skipped=True)

        async with self._sync_lock:
            records = await asyncio.to_thread(self._queued)
            logger.debug("Found %d queued outbox entries", len(records))
            synced = failed = 0

            for local_id, kind, blob in records:
                try:
                    payload = self._decode(blob)
                except CorruptedDataError as err:
                    logger.error("Outbox entry %s is corrupted: %s", local_id, err)
                    await asyncio.to_thread(self._mark_failed, local_id, str(err))
                    failed += 1
                    continue

                handler = self._handlers.get(kind)
                if handler is None:
                    logger.warning("No replay handler for outbox entry %s (%s)", local_id, kind)
                    await asyncio.to_thread(self._mark_failed, local_id, f"no handler for {kind}")
                    failed += 1
                    continue

                await asyncio.to_thread(self._mark_syncing, local_id)
                try:
                    await handler(payload)
                except Exception as exc:
                    logger.warning("Replay of outbox entry %s failed: %s", local_id, exc)
                    await asyncio.to_thread(self._mark_failed, local_id, str(exc) or type(exc).__name__)
                    failed += 1
                    continue

                await asyncio.to_thread(self._remove, local_id)
                synced += 1

            if records:
                logger.info("Outbox sync finished: %d synced, %d failed", synced, failed)
            return SyncResult(synced_count=synced, failed_count=failed)

    def _queued(self) -> list[tuple[str, str, bytes]]:
        with self._session_factory() as db:
            rows = db.execute(
                select(OutboxRecord.local_id, OutboxRecord.kind, OutboxRecord.payload)
                .where(OutboxRecord.status.in_((OUTBOX_PENDING, OUTBOX_FAILED, OUTBOX_SYNCING)))
                .order_by(OutboxRecord.seq)
            ).all()
            return [(row.local_id, row.kind, row.payload) for row in rows]

    def _mark_syncing(self, local_id: str) -> None:
        with self._session_factory() as db:
            record = db.scalar(select(OutboxRecord).where(OutboxRecord.local_id == local_id))
            if record is not None:
                record.status = OUTBOX_SYNCING
                record.attempts += 1
                db.commit()

    def _mark_failed(self, local_id: str, error: str) -> None:
        with self._session_factory() as db:
            record = db.scalar(select(OutboxRecord).where(OutboxRecord.local_id == local_id))
            if record is not None:
                record.status = OUTBOX_FAILED
                record.last_error = error
                db.commit()

    def _remove(self, local_id: str) -> None:
        with self._write_lock, self._session_factory() as db:
            db.execute(delete(OutboxRecord).where(OutboxRecord.local_id == local_id))
            db.commit()

    async def cleanup(self, now: datetime | None = None) -> CleanupResult:
        """Drop entries past retention, then trim the oldest until within bounds."""
        cutoff = as_utc(now or self._clock()) - self._retention
        deleted = await asyncio.to_thread(self._cleanup, cutoff)
        if deleted:
            logger.info("Outbox cleanup removed %d entries", deleted)
        return CleanupResult(deleted_count=deleted)

    def _cleanup(self, cutoff: datetime) -> int:
        with self._write_lock, self._session_factory() as db:
            rows = db.execute(
                select(OutboxRecord.seq, OutboxRecord.size_bytes, OutboxRecord.created_at)
                .order_by(OutboxRecord.seq.desc())
            ).all()

            doomed: list[int] = []
            kept_count = kept_bytes = 0
            for row in rows:
                expired = as_utc(row.created_at) < cutoff
                over_bound = (
                    kept_count + 1 > self._max_entries or kept_bytes + row.size_bytes > self._max_bytes
                )
                if expired or over_bound:
                    doomed.append(row.seq)
                else:
                    kept_count += 1
                    kept_bytes += row.size_bytes

            if doomed:
                db.execute(delete(OutboxRecord).where(OutboxRecord.seq.in_(doomed)))
                db.commit()
            return len(doomed)

    async def entries(self) -> list[OutboxEntry]:
        """Return decodable entries oldest first; corrupted ones are logged and skipped."""
        return await asyncio.to_thread(self._entries)

    def _entries(self) -> list[OutboxEntry]:
        with self._session_factory() as db:
            records = db.scalars(select(OutboxRecord).order_by(OutboxRecord.seq)).all()
            views: list[OutboxEntry] = []
            for record in records:
                try:
                    payload = self._decode(record.payload)
                except CorruptedDataError as err:
                    logger.warning("Skipping corrupted outbox entry %s: %s", record.local_id, err)
                    continue
                views.append(self._view(record, payload))
            return views

    async def stats(self) -> OutboxStats:
        return await asyncio.to_thread(self._stats)

    def _stats(self) -> OutboxStats:
        with self._session_factory() as db:
            count, total = db.execute(
                select(func.count(OutboxRecord.seq), func.coalesce(func.sum(OutboxRecord.size_bytes), 0))
            ).one()
            return OutboxStats(count=int(count), total_bytes=int(total))

    def attach(self, monitor: ConnectivityMonitor) -> None:
        """Start a sync whenever ``monitor`` reports the network coming back."""
        self.detach()
        self._detach = monitor.subscribe(self._on_connectivity)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def _on_connectivity(self, connected: bool) -> None:
        if not connected:
            return
        task = asyncio.get_running_loop().create_task(self.sync())
        self._tasks.add(task)
        task.add_done_callback(self._sync_finished)

    def _sync_finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background outbox sync failed", exc_info=task.exception())

    async def wait_idle(self) -> None:
        """Wait for syncs started by connectivity changes to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _decode(self, blob: bytes) -> dict[str, Any]:
        try:
            document = json.loads(blob)
        except (json.JSONDecodeError, UnicodeDecodeError) as err:
            raise CorruptedDataError("Outbox payload is not valid JSON") from err
        if not isinstance(document, dict):
            raise CorruptedDataError("Outbox payload is not an object")
        return self._vault.open_fields(document)

    @staticmethod
    def _view(record: OutboxRecord, payload: dict[str, Any]) -> OutboxEntry:
        return OutboxEntry(
            local_id=record.local_id,
            kind=record.kind,
            payload=payload,
            size_bytes=record.size_bytes,
            status=record.status,
            attempts=record.attempts,
            last_error=record.last_error,
            created_at=as_utc(record.created_at),
        )
