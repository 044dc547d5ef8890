"""Task execution engine: the lifecycle of one task run."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from task_engine.config import Settings
from task_engine.engine.artifacts import save_result_artifact
from task_engine.engine.backend.base import (
    BackendRequest,
    ExecutionResult,
    ToolDefinition,
    ToolHandler,
    elapsed_ms,
)
from task_engine.engine.backend.dispatcher import BackendDispatcher
from task_engine.engine.backend.routing import parse_model_identifier
from task_engine.engine.cancellation import AbortSignal, ExecutionAborted, sleep
from task_engine.engine.concurrency import ConcurrencyLimiter, resolve_max_concurrent_tasks
from task_engine.engine.console_log import ConsoleLogBuffer, LiveCallback
from task_engine.engine.events import ExecutionEvent, ProgressUpdate
from task_engine.engine.failure_classifier import classify_failure
from task_engine.engine.learned_context import distill_learned_context, should_distill
from task_engine.engine.memory import MemoryContextSupplier, RepositoryMemory
from task_engine.engine.models import (
    ConsoleEntryType,
    RunStatus,
    TaskExecutionResult,
    TaskStatus,
    TaskView,
)
from task_engine.engine.prompts import assemble_prompt
from task_engine.engine.rate_limit import RateLimitInfo, Sleeper, run_with_rate_limit_retry
from task_engine.engine.repository import EngineRepository, RunAlreadyActiveError
from task_engine.engine.session import MessageSessionStore, SessionContinuityPolicy

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude"
ABORTED_MESSAGE = "Execution aborted"
NO_OUTPUT = "(no output)"


@dataclass(slots=True, frozen=True)
class ResolvedWorker:
    """Persona and model a run executes with."""

    system_prompt: str | None
    model: str
    worker_id: int | None


class RunObserver:
    """Route backend events into the run's console log and progress columns.

    Progress writes are throttled; explicit status notes bypass the throttle.
    """

    def __init__(
        self,
        *,
        repository: EngineRepository,
        console: ConsoleLogBuffer,
        run_id: int,
        throttle_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.console = console
        self.run_id = run_id
        self.throttle_seconds = throttle_seconds
        self.clock = clock
        self._last_progress: float | None = None

    def on_event(self, event: ExecutionEvent) -> None:
        self.console.append(event.entry_type, event.content)

    def on_progress(self, update: ProgressUpdate) -> None:
        now = self.clock()
        if self._last_progress is not None and now - self._last_progress < self.throttle_seconds:
            return
        self._last_progress = now
        self._write_progress(update.fraction, update.message)

    def note(self, message: str) -> None:
        self._write_progress(None, message)

    def reset_throttle(self) -> None:
        self._last_progress = None

    def _write_progress(self, fraction: float | None, message: str) -> None:
        try:
            self.repository.update_task_run_progress(
                self.run_id,
                progress=fraction,
                message=message,
            )
        except SQLAlchemyError as error:
            logger.warning("Run %s: progress update failed: %s", self.run_id, error)


class TaskExecutionEngine:
    """Execute tasks end to end against the configured backends.

    One engine per process: it owns the in-process running set, the abort
    signal of every running task, the concurrency limiter and the
    background distillation jobs.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EngineRepository,
        settings: Settings,
        dispatcher: BackendDispatcher | None = None,
        limiter: ConcurrencyLimiter | None = None,
        memory: MemoryContextSupplier | None = None,
        on_console_entry: LiveCallback | None = None,
        tools: list[ToolDefinition] | None = None,
        tool_handler: ToolHandler | None = None,
        sleeper: Sleeper = sleep,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.dispatcher = dispatcher or BackendDispatcher(settings)
        self.limiter = limiter or ConcurrencyLimiter()
        self.memory = memory or RepositoryMemory(repository)
        self.on_console_entry = on_console_entry
        self.tools = list(tools or [])
        self.tool_handler = tool_handler
        self.sleeper = sleeper
        self.session_policy = SessionContinuityPolicy(settings.session)
        self.sessions = MessageSessionStore(
            repository,
            settings.session,
            compactor=self.dispatcher.compact_session,
        )
        self._running: dict[int, AbortSignal] = {}
        self._background: set[asyncio.Task[str | None]] = set()

    def is_task_running(self, task_id: int) -> bool:
        return task_id in self._running

    def cancel_running_tasks_for_room(self, room_id: int) -> int:
        """Abort every running task of ``room_id``; returns how many were aborted."""

        cancelled = 0
        for task_id, signal in list(self._running.items()):
            task = self.repository.get_task(task_id)
            if task is None or task.room_id != room_id or signal.aborted:
                continue
            signal.abort(ABORTED_MESSAGE)
            cancelled += 1
        return cancelled

    async def drain_background(self) -> None:
        """Wait for pending distillation jobs."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def execute_task(self, task_id: int) -> TaskExecutionResult:
        """Run one task to completion; never raises for backend failures."""

        if task_id in self._running:
            return _rejected("Task is already running")
        latest = self.repository.get_latest_task_run(task_id)
        if latest is not None and latest.status is RunStatus.RUNNING:
            return _rejected("Task has a running execution in another process")
        task = self.repository.get_task(task_id)
        if task is None:
            return _rejected(f"Task {task_id} not found")
        if task.status is not TaskStatus.ACTIVE:
            return _rejected(f"Task {task_id} is {task.status.value}, not active")

        started = time.monotonic()
        signal = AbortSignal()
        self._running[task_id] = signal
        try:
            worker = self._resolve_worker(task)
            max_slots = resolve_max_concurrent_tasks(
                self.repository,
                task.room_id,
                default=self.settings.execution.default_max_concurrent_tasks,
            )
            try:
                await self.limiter.acquire(max_slots, signal)
            except ExecutionAborted:
                return _rejected(ABORTED_MESSAGE, duration_ms=elapsed_ms(started))
            try:
                return await self._run_admitted(task, worker, signal, started)
            finally:
                self.limiter.release()
        finally:
            self._running.pop(task_id, None)

    def _resolve_worker(self, task: TaskView) -> ResolvedWorker:
        """Assigned worker, then the default worker, then the room's model."""

        system_prompt: str | None = None
        model: str | None = None
        worker_id: int | None = None
        try:
            if task.worker_id is not None:
                worker = self.repository.get_worker(task.worker_id)
                if worker is not None:
                    system_prompt = worker.system_prompt
                    model = worker.model
                    worker_id = worker.id
            if not system_prompt:
                default_worker = self.repository.get_default_worker()
                if default_worker is not None:
                    system_prompt = default_worker.system_prompt
                    model = model or default_worker.model
                    worker_id = worker_id if worker_id is not None else default_worker.id
            if not model and task.room_id is not None:
                model = self._room_model(task.room_id)
        except SQLAlchemyError as error:
            logger.warning("Task %s: worker resolution failed: %s", task.id, error)
        return ResolvedWorker(
            system_prompt=system_prompt or None,
            model=model or DEFAULT_MODEL,
            worker_id=worker_id,
        )

    def _room_model(self, room_id: int) -> str | None:
        room = self.repository.get_room(room_id)
        if room is None or not room.worker_model or room.worker_model == DEFAULT_MODEL:
            return None
        if room.worker_model == "queen":
            queen = (
                self.repository.get_worker(room.queen_worker_id)
                if room.queen_worker_id is not None
                else None
            )
            return (queen.model if queen is not None else None) or DEFAULT_MODEL
        return room.worker_model

    async def _run_admitted(
        self,
        task: TaskView,
        worker: ResolvedWorker,
        signal: AbortSignal,
        started: float,
    ) -> TaskExecutionResult:
        try:
            run = self.repository.create_task_run(task.id)
        except RunAlreadyActiveError:
            return _rejected(
                "Task has a running execution in another process",
                duration_ms=elapsed_ms(started),
            )

        console = ConsoleLogBuffer(
            run_id=run.id,
            writer=self.repository.insert_console_logs,
            flush_interval=self.settings.execution.console_flush_interval_seconds,
            on_entry=self.on_console_entry,
        )
        observer = RunObserver(
            repository=self.repository,
            console=console,
            run_id=run.id,
            throttle_seconds=self.settings.execution.progress_throttle_seconds,
        )
        try:
            return await self._execute_run(task, worker, run.id, observer, signal)
        except ExecutionAborted:
            console.flush()
            return self._fail_run(task, run.id, ABORTED_MESSAGE, started=started)
        except asyncio.CancelledError:
            console.flush()
            self._fail_run(task, run.id, ABORTED_MESSAGE, started=started)
            raise
        except Exception as error:  # noqa: BLE001
            console.flush()
            logger.exception("Task %s: run %s crashed", task.id, run.id)
            message = ABORTED_MESSAGE if signal.aborted else str(error) or type(error).__name__
            return self._fail_run(task, run.id, message, started=started)

    async def _execute_run(
        self,
        task: TaskView,
        worker: ResolvedWorker,
        run_id: int,
        observer: RunObserver,
        signal: AbortSignal,
    ) -> TaskExecutionResult:
        try:
            resume_session_id = self.session_policy.resume_session_id(task, self.repository)
        except SQLAlchemyError as error:
            logger.warning("Task %s: session run count check failed: %s", task.id, error)
            resume_session_id = None

        request = BackendRequest(
            prompt=assemble_prompt(
                task,
                repository=self.repository,
                memory=self.memory,
                resuming_session=resume_session_id is not None,
            ),
            model=worker.model,
            system_prompt=worker.system_prompt,
            resume_session_id=resume_session_id,
            timeout_seconds=task.timeout_minutes * 60 if task.timeout_minutes is not None else None,
            max_turns=task.max_turns,
            allowed_tools=task.allowed_tools,
            disallowed_tools=task.disallowed_tools,
            observer=observer,
            signal=signal,
            stream=self.settings.execution.ollama_stream,
        )
        request = await self._attach_message_session(task, worker, request)

        result = await self._call_with_retry(task, request, observer, signal)
        observer.console.flush()
        if signal.aborted:
            return self._fail_run(
                task,
                run_id,
                ABORTED_MESSAGE,
                output=result.stdout,
                duration_ms=result.duration_ms,
            )

        if result.exit_code != 0 and resume_session_id is not None:
            logger.info(
                "Task %s: resume of session %s failed, starting fresh",
                task.id,
                resume_session_id,
            )
            try:
                self.repository.clear_task_session(task.id)
            except SQLAlchemyError as error:
                logger.warning("Task %s: clear session failed: %s", task.id, error)
            fresh = replace(
                request,
                prompt=assemble_prompt(
                    task,
                    repository=self.repository,
                    memory=self.memory,
                    resuming_session=False,
                ),
                resume_session_id=None,
            )
            observer.reset_throttle()
            result = await self._call_with_retry(task, fresh, observer, signal)
            observer.console.flush()
            if signal.aborted:
                return self._fail_run(
                    task,
                    run_id,
                    ABORTED_MESSAGE,
                    output=result.stdout,
                    duration_ms=result.duration_ms,
                )

        return self._finish_run(task, run_id, result)

    async def _attach_message_session(
        self,
        task: TaskView,
        worker: ResolvedWorker,
        request: BackendRequest,
    ) -> BackendRequest:
        """Give multi-turn HTTP backends the worker's persisted history."""

        if not self.tools or self.tool_handler is None:
            return request
        request = replace(request, tools=list(self.tools), on_tool_call=self.tool_handler)
        try:
            route = parse_model_identifier(worker.model)
        except ValueError:
            return request
        if route.kind.is_cli or worker.worker_id is None or not task.session_continuity:
            return request
        try:
            loaded = await self.sessions.load(worker.worker_id, worker.model)
        except SQLAlchemyError as error:
            logger.warning("Task %s: message session unavailable: %s", task.id, error)
            return request
        return replace(
            request,
            previous_messages=loaded.messages,
            on_session_update=self.sessions.update_hook(worker.worker_id, worker.model),
        )

    async def _call_with_retry(
        self,
        task: TaskView,
        request: BackendRequest,
        observer: RunObserver,
        signal: AbortSignal,
    ) -> ExecutionResult:
        def on_wait(info: RateLimitInfo, retry_label: str) -> None:
            wait_seconds = round(info.wait_seconds)
            reset = (
                info.reset_at.strftime("%H:%M:%S")
                if info.reset_at is not None
                else f"~{round(wait_seconds / 60)}min"
            )
            observer.note(f"Rate limited. Retrying at {reset} {retry_label}")
            observer.console.append(
                ConsoleEntryType.ERROR,
                f"Rate limit reached. Waiting {wait_seconds}s until reset {retry_label}",
            )
            observer.console.flush()

        def on_retry(retry_label: str) -> None:
            observer.note(f"Retrying after rate limit {retry_label}")
            observer.reset_throttle()

        return await run_with_rate_limit_retry(
            lambda: self.dispatcher.execute(request),
            settings=self.settings.rate_limit,
            signal=signal,
            on_wait=on_wait,
            on_retry=on_retry,
            sleeper=self.sleeper,
            label=f"Task {task.id}",
        )

    def _finish_run(
        self,
        task: TaskView,
        run_id: int,
        result: ExecutionResult,
    ) -> TaskExecutionResult:
        output = result.stdout or result.stderr or NO_OUTPUT
        artifact_path = self._save_artifact(task, run_id, output, result)

        if result.session_id:
            try:
                self.repository.update_task_run_session_id(run_id, result.session_id)
                if task.session_continuity:
                    self.repository.update_task(task.id, session_id=result.session_id)
            except SQLAlchemyError as error:
                logger.warning("Task %s: session id storage failed: %s", task.id, error)

        if result.succeeded:
            self.repository.complete_task_run(
                run_id,
                status=RunStatus.COMPLETED,
                result=output,
                error_message=None,
                duration_ms=result.duration_ms,
                result_file=artifact_path,
            )
            self._store_memory(task, output, success=True)
            updated = self.repository.increment_run_count(task.id)
            self._schedule_distillation(updated)
            return TaskExecutionResult(
                success=True,
                output=output,
                duration_ms=result.duration_ms,
                result_artifact_path=artifact_path,
                run_id=run_id,
            )

        if result.timed_out:
            error_message = f"Timed out after {result.duration_ms}ms"
        else:
            error_message = f"Exit code {result.exit_code}: {result.stderr or '(no stderr)'}"
        self.repository.complete_task_run(
            run_id,
            status=RunStatus.FAILED,
            result=output,
            error_message=error_message,
            duration_ms=result.duration_ms,
            result_file=artifact_path,
        )
        self._store_memory(task, output, success=False)

        classification = classify_failure(
            output=output,
            error_message=error_message,
            timed_out=result.timed_out,
        )
        if classification.terminal:
            try:
                self.repository.update_task(task.id, status=TaskStatus.PAUSED)
                logger.info(
                    "Task %s auto-paused: terminal error (%s): %s",
                    task.id,
                    classification.failure_class.value,
                    error_message[:100],
                )
            except SQLAlchemyError as error:
                logger.warning("Task %s: auto-pause failed: %s", task.id, error)

        return TaskExecutionResult(
            success=False,
            output=output,
            duration_ms=result.duration_ms,
            error_message=error_message,
            result_artifact_path=artifact_path,
            run_id=run_id,
        )

    def _fail_run(
        self,
        task: TaskView,
        run_id: int,
        message: str,
        *,
        output: str = "",
        started: float | None = None,
        duration_ms: int | None = None,
    ) -> TaskExecutionResult:
        if duration_ms is None:
            duration_ms = elapsed_ms(started) if started is not None else 0
        try:
            self.repository.complete_task_run(
                run_id,
                status=RunStatus.FAILED,
                result=output,
                error_message=message,
                duration_ms=duration_ms,
            )
        except SQLAlchemyError as error:
            logger.warning("Task %s: could not finalize run %s: %s", task.id, run_id, error)
        return TaskExecutionResult(
            success=False,
            output=output,
            duration_ms=duration_ms,
            error_message=message,
            run_id=run_id,
        )

    def _save_artifact(
        self,
        task: TaskView,
        run_id: int,
        output: str,
        result: ExecutionResult,
    ) -> str | None:
        try:
            path = save_result_artifact(
                Path(self.settings.results_dir),
                task_name=task.name,
                output=output,
                result=result,
                run_id=run_id,
            )
        except OSError as error:
            logger.warning("Task %s: result artifact not written: %s", task.id, error)
            return None
        return str(path)

    def _store_memory(self, task: TaskView, output: str, *, success: bool) -> None:
        try:
            self.memory.store_task_result(task, output, success)
        except Exception as error:  # noqa: BLE001
            logger.warning("Task %s: memory storage failed: %s", task.id, error)

    def _schedule_distillation(self, task: TaskView) -> None:
        if not should_distill(task):
            return
        job = asyncio.create_task(
            distill_learned_context(self.repository, self.dispatcher, task.id),
            name=f"distill-task-{task.id}",
        )
        self._background.add(job)
        job.add_done_callback(self._on_background_done)

    def _on_background_done(self, job: asyncio.Task[str | None]) -> None:
        self._background.discard(job)
        if job.cancelled():
            return
        error = job.exception()
        if error is not None:
            logger.warning("Learned context distillation failed: %s", error)


def _rejected(message: str, *, duration_ms: int = 0) -> TaskExecutionResult:
    return TaskExecutionResult(
        success=False,
        output="",
        duration_ms=duration_ms,
        error_message=message,
    )
