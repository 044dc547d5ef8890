"""Batched, sequence-numbered console log for one run."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError

from task_engine.engine.models import ConsoleEntryType, ConsoleLogWrite

logger = logging.getLogger(__name__)

LiveCallback = Callable[[ConsoleLogWrite], None]


class ConsoleLogBuffer:
    """Collect console entries and write them in batches.

    The live callback fires for every entry as it is appended; persistence
    happens when ``flush_interval`` has elapsed since the last flush, or on an
    explicit ``flush()``.
    """

    def __init__(
        self,
        *,
        run_id: int,
        writer: Callable[[list[ConsoleLogWrite]], None],
        flush_interval: float = 1.0,
        on_entry: LiveCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.run_id = run_id
        self._writer = writer
        self._flush_interval = flush_interval
        self._on_entry = on_entry
        self._clock = clock
        self._pending: list[ConsoleLogWrite] = []
        self._seq = 0
        self._last_flush = clock()

    @property
    def last_seq(self) -> int:
        return self._seq

    def append(self, entry_type: ConsoleEntryType, content: str) -> ConsoleLogWrite:
        self._seq += 1
        entry = ConsoleLogWrite(
            run_id=self.run_id,
            seq=self._seq,
            entry_type=entry_type,
            content=content,
        )
        self._pending.append(entry)
        if self._on_entry is not None:
            try:
                self._on_entry(entry)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Console live callback failed for run %s",
                    self.run_id,
                    exc_info=True,
                )
        if self._clock() - self._last_flush >= self._flush_interval:
            self.flush()
        return entry

    def flush(self) -> None:
        """Persist pending entries; failures are logged and the batch is dropped."""

        self._last_flush = self._clock()
        if not self._pending:
            return
        batch = self._pending
        self._pending = []
        try:
            self._writer(batch)
        except (SQLAlchemyError, OSError):
            logger.warning(
                "Failed to flush %d console entries for run %s",
                len(batch),
                self.run_id,
                exc_info=True,
            )
