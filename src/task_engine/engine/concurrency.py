"""Process-wide admission control for backend executions."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING

from task_engine.config import MAX_CONCURRENT_TASKS, MIN_CONCURRENT_TASKS
from task_engine.engine.cancellation import AbortSignal

if TYPE_CHECKING:
    from task_engine.engine.repository import EngineRepository

logger = logging.getLogger(__name__)

MAX_CONCURRENT_TASKS_SETTING = "max_concurrent_tasks"


class ConcurrencyLimiter:
    """Counting limiter with a FIFO wait queue.

    ``release`` hands the slot straight to the oldest waiter instead of
    decrementing, so a newcomer cannot take a freed slot ahead of the queue.
    """

    def __init__(self) -> None:
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self, max_slots: int, signal: AbortSignal | None = None) -> None:
        """Take a slot, queueing while ``max_slots`` are active.

        Raises ``ExecutionAborted`` when ``signal`` fires while queued; the
        queue entry is dropped and no slot is held.
        """

        if self._active < max_slots:
            self._active += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            if signal is not None:
                await signal.guard(waiter)
            else:
                await waiter
        except BaseException:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            elif waiter.done() and not waiter.cancelled():
                # slot was transferred to us before the abort landed
                self.release()
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._active > 0:
            self._active -= 1
        else:
            logger.warning("Concurrency slot released with no active slots")


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENT_TASKS, min(MAX_CONCURRENT_TASKS, value))


def resolve_max_concurrent_tasks(
    repository: EngineRepository,
    room_id: int | None,
    *,
    default: int,
) -> int:
    """Room limit when the task has a room, else the global setting."""

    if room_id is not None:
        room = repository.get_room(room_id)
        if room is not None:
            return clamp_concurrency(room.max_concurrent_tasks)

    raw = repository.get_setting(MAX_CONCURRENT_TASKS_SETTING)
    if raw is None:
        return clamp_concurrency(default)
    try:
        parsed = int(raw.strip())
    except ValueError:
        return MIN_CONCURRENT_TASKS
    return clamp_concurrency(parsed)
