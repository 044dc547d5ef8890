"""Per-run abort signal shared by every suspension point of a run."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class ExecutionAborted(Exception):
    """Raised when a run is aborted while suspended."""

    def __init__(self, message: str = "Execution aborted") -> None:
        super().__init__(message)


class AbortSignal:
    """One-shot abort flag awaited alongside run I/O."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "Execution aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise ExecutionAborted(self.reason or "Execution aborted")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first.

        On abort the pending awaitable is cancelled and ``ExecutionAborted``
        is raised. A coroutine handed in after the abort is closed unstarted.
        """

        if self.aborted and asyncio.iscoroutine(awaitable):
            awaitable.close()
        self.raise_if_aborted()
        work = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            stopper.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise ExecutionAborted(self.reason or "Execution aborted")


async def sleep(seconds: float, signal: AbortSignal | None = None) -> None:
    """Cancellable backoff sleep."""

    if signal is None:
        await asyncio.sleep(seconds)
        return
    await signal.guard(asyncio.sleep(seconds))
