"""Cooperative cancellation shared by all sub-operations of one dispatch."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised inside a sub-operation when its dispatch was cancelled."""


class CancellationToken:
    """A one-shot signal observed by every operation of a dispatch.

    The token is bound to the running event loop; :meth:`cancel_threadsafe`
    may be called from a signal handler or another thread.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def cancel_threadsafe(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._event.set)
        else:
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first.

        The pending awaitable is cancelled when the token wins, and
        :class:`OperationCancelled` is raised.
        """

        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            # The result of an abandoned operation is irrelevant.
            pass
        raise OperationCancelled()
