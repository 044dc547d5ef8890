"""Execution events emitted by backends and consumed by the run observer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Protocol

from task_engine.engine.models import ConsoleEntryType


@dataclass(slots=True, frozen=True)
class ToolCall:
    entry_type: ClassVar[ConsoleEntryType] = ConsoleEntryType.TOOL_CALL

    content: str


@dataclass(slots=True, frozen=True)
class AssistantText:
    entry_type: ClassVar[ConsoleEntryType] = ConsoleEntryType.ASSISTANT_TEXT

    content: str


@dataclass(slots=True, frozen=True)
class ToolResult:
    entry_type: ClassVar[ConsoleEntryType] = ConsoleEntryType.TOOL_RESULT

    content: str


@dataclass(slots=True, frozen=True)
class ResultEvent:
    entry_type: ClassVar[ConsoleEntryType] = ConsoleEntryType.RESULT

    content: str


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    entry_type: ClassVar[ConsoleEntryType] = ConsoleEntryType.ERROR

    content: str


ExecutionEvent = ToolCall | AssistantText | ToolResult | ResultEvent | ErrorEvent


@dataclass(slots=True, frozen=True)
class ProgressUpdate:
    """Mid-flight progress; ``fraction`` is None when the total is unknown."""

    fraction: float | None
    message: str


class ExecutionObserver(Protocol):
    """Sink for streamed events and progress of one execution."""

    def on_event(self, event: ExecutionEvent) -> None: ...

    def on_progress(self, update: ProgressUpdate) -> None: ...


class NullObserver:
    """Observer that drops everything."""

    def on_event(self, event: ExecutionEvent) -> None:
        return None

    def on_progress(self, update: ProgressUpdate) -> None:
        return None


class RecordingObserver:
    """Observer that keeps every event and progress update in memory."""

    def __init__(self) -> None:
        self.events: list[ExecutionEvent] = []
        self.progress: list[ProgressUpdate] = []

    def on_event(self, event: ExecutionEvent) -> None:
        self.events.append(event)

    def on_progress(self, update: ProgressUpdate) -> None:
        self.progress.append(update)
