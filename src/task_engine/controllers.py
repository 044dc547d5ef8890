"""Controllers for task engine CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from task_engine.config import Settings
from task_engine.engine.executor import TaskExecutionEngine
from task_engine.engine.models import (
    ConsoleLogWrite,
    RoomCreate,
    RunStatus,
    TaskCreate,
    TaskStatus,
    TriggerType,
    WorkerCreate,
)
from task_engine.engine.repository import EngineRepository


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    db_path: Path | None
    name: str
    prompt: str
    trigger_type: str
    worker_id: int | None
    room_id: int | None
    session_continuity: bool
    max_runs: int | None
    timeout_minutes: int | None
    max_turns: int | None
    allowed_tools: str | None
    disallowed_tools: str | None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class TaskStatusCommand:
    """CLI input for pause/resume."""

    db_path: Path | None
    task_id: int
    status: TaskStatus


@dataclass(slots=True)
class WorkerAddCommand:
    """CLI input for worker creation."""

    db_path: Path | None
    name: str
    system_prompt: str
    model: str | None
    is_default: bool
    room_id: int | None


@dataclass(slots=True)
class RoomAddCommand:
    """CLI input for room creation."""

    db_path: Path | None
    name: str
    max_concurrent_tasks: int
    worker_model: str | None


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for executing one task now."""

    db_path: Path | None
    task_id: int
    follow: bool = False


@dataclass(slots=True)
class RunListCommand:
    """CLI input for run history."""

    db_path: Path | None
    task_id: int
    limit: int
    status: str | None = None


@dataclass(slots=True)
class RunLogsCommand:
    """CLI input for console log inspection."""

    db_path: Path | None
    run_id: int
    after_seq: int = 0


@dataclass(slots=True)
class RunResult:
    """Lines to print plus the overall outcome."""

    lines: list[str]
    success: bool


class TaskEngineCliController:
    """Coordinates task, worker and run CLI operations."""

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    name=command.name,
                    prompt=command.prompt,
                    trigger_type=TriggerType(command.trigger_type),
                    worker_id=command.worker_id,
                    room_id=command.room_id,
                    session_continuity=command.session_continuity,
                    max_runs=command.max_runs,
                    timeout_minutes=command.timeout_minutes,
                    max_turns=command.max_turns,
                    allowed_tools=command.allowed_tools,
                    disallowed_tools=command.disallowed_tools,
                ),
            )
        return [f"Task created: task_id={task.id} name={task.name} status={task.status.value}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status)
        if not tasks:
            return ["No tasks."]
        lines = []
        for task in tasks:
            max_runs = task.max_runs if task.max_runs is not None else "-"
            lines.append(
                f"{task.id}\t{task.status.value}\t{task.trigger_type.value}\t"
                f"runs={task.run_count}/{max_runs}\t{task.name}",
            )
        return lines

    def set_task_status(self, command: TaskStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if repository.get_task(command.task_id) is None:
                return [f"Task {command.task_id} not found."]
            repository.update_task(command.task_id, status=command.status)
        return [f"Task {command.task_id} is now {command.status.value}."]

    def add_worker(self, command: WorkerAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            worker = repository.create_worker(
                WorkerCreate(
                    name=command.name,
                    system_prompt=command.system_prompt,
                    model=command.model,
                    is_default=command.is_default,
                    room_id=command.room_id,
                ),
            )
        default = " (default)" if worker.is_default else ""
        return [f"Worker created: worker_id={worker.id} model={worker.model or 'claude'}{default}"]

    def add_room(self, command: RoomAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            room = repository.create_room(
                RoomCreate(
                    name=command.name,
                    max_concurrent_tasks=command.max_concurrent_tasks,
                    worker_model=command.worker_model,
                ),
            )
        return [
            f"Room created: room_id={room.id} name={room.name} "
            f"max_concurrent_tasks={room.max_concurrent_tasks}",
        ]

    def run_task(
        self,
        command: RunTaskCommand,
        *,
        on_entry: Callable[[ConsoleLogWrite], None] | None = None,
    ) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            engine = TaskExecutionEngine(
                repository=repository,
                settings=settings,
                on_console_entry=on_entry if command.follow else None,
            )
            outcome = asyncio.run(_execute_and_drain(engine, command.task_id))

        lines = []
        if outcome.run_id is not None:
            lines.append(f"Run: run_id={outcome.run_id} duration_ms={outcome.duration_ms}")
        if outcome.success:
            lines.append("Status: success")
        else:
            lines.append(f"Status: failed: {outcome.error_message}")
        if outcome.result_artifact_path:
            lines.append(f"Result file: {outcome.result_artifact_path}")
        if outcome.output:
            lines.append(outcome.output)
        return RunResult(lines=lines, success=outcome.success)

    def list_runs(self, command: RunListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = RunStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            runs = repository.list_task_runs(command.task_id, limit=command.limit, status=status)
        if not runs:
            return [f"No runs for task {command.task_id}."]
        lines = []
        for run in runs:
            duration = f"{run.duration_ms}ms" if run.duration_ms is not None else "-"
            line = (
                f"{run.id}\t{run.status.value}\t{run.started_at.isoformat(timespec='seconds')}"
                f"\t{duration}"
            )
            if run.error_message:
                line += f"\t{run.error_message[:120]}"
            elif run.progress_message:
                line += f"\t{run.progress_message}"
            lines.append(line)
        return lines

    def show_logs(self, command: RunLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            entries = repository.list_console_logs(command.run_id, after_seq=command.after_seq)
        if not entries:
            return [f"No console entries for run {command.run_id}."]
        return [
            format_console_entry(entry.seq, entry.entry_type.value, entry.content)
            for entry in entries
        ]


def format_console_entry(seq: int, entry_type: str, content: str) -> str:
    return f"[{seq:>4}] {entry_type:<14} {content}"


async def _execute_and_drain(engine: TaskExecutionEngine, task_id: int):
    outcome = await engine.execute_task(task_id)
    await engine.drain_background()
    return outcome


@contextmanager
def _repository(settings: Settings) -> Iterator[EngineRepository]:
    repository = EngineRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
