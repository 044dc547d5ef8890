from __future__ import annotations

import allure
from sqlalchemy.exc import OperationalError

from task_engine.engine.console_log import ConsoleLogBuffer
from task_engine.engine.models import ConsoleEntryType, ConsoleLogWrite

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Console Log"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_are_batched_until_interval_elapses() -> None:
    batches: list[list[ConsoleLogWrite]] = []
    clock = _Clock()
    buffer = ConsoleLogBuffer(run_id=7, writer=batches.append, flush_interval=1.0, clock=clock)

    buffer.append(ConsoleEntryType.ASSISTANT_TEXT, "one")
    buffer.append(ConsoleEntryType.TOOL_CALL, "two")
    assert batches == []

    clock.now = 1.5
    buffer.append(ConsoleEntryType.RESULT, "three")

    assert len(batches) == 1
    assert [(entry.seq, entry.content) for entry in batches[0]] == [
        (1, "one"),
        (2, "two"),
        (3, "three"),
    ]
    assert buffer.last_seq == 3


def test_explicit_flush_persists_pending_entries_once() -> None:
    batches: list[list[ConsoleLogWrite]] = []
    buffer = ConsoleLogBuffer(run_id=1, writer=batches.append, flush_interval=60.0)

    buffer.append(ConsoleEntryType.ERROR, "boom")
    buffer.flush()
    buffer.flush()

    assert len(batches) == 1
    assert batches[0][0].entry_type is ConsoleEntryType.ERROR


def test_live_callback_sees_every_entry_and_its_failures_are_contained() -> None:
    seen: list[int] = []

    def on_entry(entry: ConsoleLogWrite) -> None:
        seen.append(entry.seq)
        if entry.seq == 1:
            raise RuntimeError("subscriber went away")

    buffer = ConsoleLogBuffer(
        run_id=1,
        writer=lambda batch: None,
        flush_interval=60.0,
        on_entry=on_entry,
    )
    buffer.append(ConsoleEntryType.ASSISTANT_TEXT, "a")
    buffer.append(ConsoleEntryType.ASSISTANT_TEXT, "b")

    assert seen == [1, 2]


def test_failed_flush_drops_the_batch_and_keeps_numbering() -> None:
    calls = 0

    def failing_writer(batch: list[ConsoleLogWrite]) -> None:
        nonlocal calls
        calls += 1
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    buffer = ConsoleLogBuffer(run_id=1, writer=failing_writer, flush_interval=60.0)
    buffer.append(ConsoleEntryType.RESULT, "lost")
    buffer.flush()
    buffer.flush()
    entry = buffer.append(ConsoleEntryType.RESULT, "next")

    assert calls == 1
    assert entry.seq == 2
