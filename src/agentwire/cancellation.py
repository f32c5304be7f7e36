"""Cooperative cancellation shared by every suspension point of a request."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterable, AsyncIterator, Awaitable
from typing import TypeVar

from agentwire.errors import RequestAborted

T = TypeVar("T")


class CancellationToken:
    """A one-shot cancellation signal threaded through a request.

    Transport reads, tool awaits and delays all go through the token so
    that cancelling it unwinds the request at whichever point it is
    suspended.  Observing cancellation raises :class:`RequestAborted`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestAborted()

    async def wait(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first.

        The losing side is cancelled, so an aborted transport read or tool
        call does not keep running in the background.
        """
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RequestAborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        raise RequestAborted()

    async def iterate(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Yield from *source*, checking the token before every item."""
        iterator = source.__aiter__()
        while True:
            try:
                item = await self.wait(iterator.__anext__())
            except StopAsyncIteration:
                return
            yield item

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        await self.wait(asyncio.sleep(seconds))
