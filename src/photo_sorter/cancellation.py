"""Cooperative cancellation shared by a job and its tasks."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class JobCanceled(Exception):
    """Raised at a check point once cancellation has been requested."""


class CancellationToken:
    """A one-shot cancellation signal for asyncio code.

    ``cancel`` may be called from any thread. Check points either call
    :meth:`raise_if_cancelled` or wrap an awaitable with :meth:`race`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that owns the event so other threads can signal it."""

        self._loop = loop

    def cancel(self) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._event.set)
                return
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCanceled("canceled")

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancellation arrives first.

        When both finish in the same step cancellation wins, and the pending
        work is cancelled before :class:`JobCanceled` is raised.
        """

        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise JobCanceled("canceled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if self._event.is_set():
            if not work.done():
                work.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await work
            raise JobCanceled("canceled")
        return work.result()


__all__ = ["CancellationToken", "JobCanceled"]
