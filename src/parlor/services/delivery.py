"""Order-preserving delivery of asynchronously prepared results."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrderedDelivery(Generic[T]):
    """Prepare items concurrently, hand them to ``deliver`` in submission order.

    Used for live messages: decrypting one message may take longer than the
    next, but the UI must still see them in the order they arrived.
    """

    def __init__(self, deliver: Callable[[T], Any]) -> None:
        self._deliver = deliver
        self._pending: asyncio.Queue[asyncio.Future[T]] = asyncio.Queue()
        self._runner: asyncio.Task[None] | None = None
        self._closed = False

    def submit(self, work: Awaitable[T]) -> None:
        if self._closed:
            if inspect.iscoroutine(work):
                work.close()
            return
        self._pending.put_nowait(asyncio.ensure_future(work))
        if self._runner is None:
            self._runner = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            future = await self._pending.get()
            try:
                item = await future
                result = self._deliver(item)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Live delivery failed")
            finally:
                self._pending.task_done()

    async def drain(self) -> None:
        """Wait until everything submitted so far has been delivered."""
        await self._pending.join()

    def close(self) -> None:
        self._closed = True
        if self._runner is not None:
            self._runner.cancel()
            self._runner = None
        while not self._pending.empty():
            self._pending.get_nowait().cancel()
            self._pending.task_done()
