"""Domain models for tasks, runs and execution outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class TriggerType(str, Enum):
    """How a task gets scheduled."""

    MANUAL = "manual"
    CRON = "cron"
    ONCE = "once"


class RunStatus(str, Enum):
    """Task run lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ConsoleEntryType(str, Enum):
    """Console log entry kinds shown in live tails."""

    TOOL_CALL = "tool_call"
    ASSISTANT_TEXT = "assistant_text"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    ERROR = "error"


class FailureClass(str, Enum):
    """Normalized failure classes used by the auto-pause policy."""

    EXECUTABLE_MISSING = "executable_missing"
    CREDENTIAL_MISSING = "credential_missing"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"


TERMINAL_FAILURE_CLASSES: frozenset[FailureClass] = frozenset(
    {
        FailureClass.EXECUTABLE_MISSING,
        FailureClass.CREDENTIAL_MISSING,
        FailureClass.MODEL_NOT_AVAILABLE,
    },
)


@dataclass(slots=True)
class WorkerCreate:
    """Input payload for creating a worker persona."""

    name: str
    system_prompt: str
    model: str | None = None
    is_default: bool = False
    room_id: int | None = None


@dataclass(slots=True, frozen=True)
class WorkerView:
    """Worker persona: system prompt plus preferred model."""

    id: int
    name: str
    system_prompt: str
    model: str | None
    is_default: bool
    room_id: int | None
    created_at: datetime


@dataclass(slots=True)
class RoomCreate:
    """Input payload for creating a room."""

    name: str
    max_concurrent_tasks: int = 3
    worker_model: str | None = None
    queen_worker_id: int | None = None


@dataclass(slots=True, frozen=True)
class RoomView:
    """Room configuration relevant to execution."""

    id: int
    name: str
    status: str
    max_concurrent_tasks: int
    worker_model: str | None
    queen_worker_id: int | None
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    name: str
    prompt: str
    description: str | None = None
    trigger_type: TriggerType = TriggerType.MANUAL
    cron_expression: str | None = None
    worker_id: int | None = None
    room_id: int | None = None
    session_continuity: bool = False
    max_runs: int | None = None
    timeout_minutes: int | None = None
    max_turns: int | None = None
    allowed_tools: str | None = None
    disallowed_tools: str | None = None


@dataclass(slots=True, frozen=True)
class TaskView:
    """Readable task view for the engine and CLI."""

    id: int
    name: str
    description: str | None
    prompt: str
    trigger_type: TriggerType
    cron_expression: str | None
    status: TaskStatus
    worker_id: int | None
    room_id: int | None
    session_continuity: bool
    session_id: str | None
    learned_context: str | None
    run_count: int
    max_runs: int | None
    timeout_minutes: int | None
    max_turns: int | None
    allowed_tools: str | None
    disallowed_tools: str | None
    last_run: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class TaskRunView:
    """One execution attempt of a task."""

    id: int
    task_id: int
    started_at: datetime
    finished_at: datetime | None
    status: RunStatus
    result: str | None
    result_file: str | None
    error_message: str | None
    duration_ms: int | None
    progress: float | None
    progress_message: str | None
    session_id: str | None


@dataclass(slots=True, frozen=True)
class ConsoleLogWrite:
    """Console entry pending a batched insert."""

    run_id: int
    seq: int
    entry_type: ConsoleEntryType
    content: str


@dataclass(slots=True, frozen=True)
class ConsoleLogView:
    """Persisted console entry."""

    id: int
    run_id: int
    seq: int
    entry_type: ConsoleEntryType
    content: str
    created_at: datetime


@dataclass(slots=True, frozen=True)
class MemoryObservation:
    """Stored outcome of a past run used to build memory context."""

    id: int
    task_id: int
    room_id: int | None
    success: bool
    content: str
    created_at: datetime


@dataclass(slots=True, frozen=True)
class AgentSessionView:
    """Persisted multi-turn message history for one worker."""

    worker_id: int
    model: str
    session_id: str | None
    messages_json: str | None
    updated_at: datetime


@dataclass(slots=True)
class TaskExecutionResult:
    """Outcome of one ``execute_task`` call."""

    success: bool
    output: str
    duration_ms: int
    error_message: str | None = None
    result_artifact_path: str | None = None
    run_id: int | None = None
