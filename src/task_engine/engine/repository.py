"""Persistence facade for tasks, runs, console logs and memory."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from task_engine.engine.models import (
    AgentSessionView,
    ConsoleEntryType,
    ConsoleLogView,
    ConsoleLogWrite,
    MemoryObservation,
    RoomCreate,
    RoomView,
    RunStatus,
    TaskCreate,
    TaskRunView,
    TaskStatus,
    TaskView,
    TriggerType,
    WorkerCreate,
    WorkerView,
)
from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.sqlmodel_models import (
    AgentSessionRow,
    ConsoleLogRow,
    EngineSetting,
    RoomRow,
    TaskMemoryRow,
    TaskRow,
    TaskRunRow,
    WorkerRow,
)


class RunAlreadyActiveError(RuntimeError):
    """Raised when a task already has a running run row."""

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task {task_id} already has a running execution")
        self.task_id = task_id


class _Unset:
    pass


_UNSET = _Unset()


class EngineRepository:
    """Persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # settings

    def get_setting(self, key: str) -> str | None:
        with Session(self.engine) as session:
            row = session.get(EngineSetting, key)
            return row.value if row is not None else None

    def set_setting(self, key: str, value: str | None) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(EngineSetting, key)
            if row is None:
                session.add(EngineSetting(key=key, value=value, updated_at=now))
            else:
                row.value = value
                row.updated_at = now
                session.add(row)
            session.commit()

    # workers and rooms

    def create_worker(self, payload: WorkerCreate) -> WorkerView:
        with Session(self.engine) as session:
            if payload.is_default:
                session.exec(
                    sa_update(WorkerRow)
                    .where(col(WorkerRow.is_default).is_(True))
                    .values(is_default=False),
                )
            row = WorkerRow(
                name=payload.name,
                system_prompt=payload.system_prompt,
                model=payload.model,
                is_default=payload.is_default,
                room_id=payload.room_id,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row)

    def get_worker(self, worker_id: int) -> WorkerView | None:
        with Session(self.engine) as session:
            row = session.get(WorkerRow, worker_id)
            return _to_worker_view(row) if row is not None else None

    def get_default_worker(self) -> WorkerView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkerRow)
                .where(col(WorkerRow.is_default).is_(True))
                .order_by(col(WorkerRow.id).asc())
                .limit(1),
            ).one_or_none()
            return _to_worker_view(row) if row is not None else None

    def create_room(self, payload: RoomCreate) -> RoomView:
        with Session(self.engine) as session:
            row = RoomRow(
                name=payload.name,
                status="active",
                max_concurrent_tasks=payload.max_concurrent_tasks,
                worker_model=payload.worker_model,
                queen_worker_id=payload.queen_worker_id,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_room_view(row)

    def get_room(self, room_id: int) -> RoomView | None:
        with Session(self.engine) as session:
            row = session.get(RoomRow, room_id)
            return _to_room_view(row) if row is not None else None

    # tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        now = utc_now()
        with Session(self.engine) as session:
            row = TaskRow(
                name=payload.name,
                description=payload.description,
                prompt=payload.prompt,
                trigger_type=payload.trigger_type.value,
                cron_expression=payload.cron_expression,
                status=TaskStatus.ACTIVE.value,
                worker_id=payload.worker_id,
                room_id=payload.room_id,
                session_continuity=payload.session_continuity,
                max_runs=payload.max_runs,
                timeout_minutes=payload.timeout_minutes,
                max_turns=payload.max_turns,
                allowed_tools=payload.allowed_tools,
                disallowed_tools=payload.disallowed_tools,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[TaskView]:
        with Session(self.engine) as session:
            query = select(TaskRow)
            if status is not None:
                query = query.where(TaskRow.status == status.value)
            rows = session.exec(query.order_by(col(TaskRow.id).asc())).all()
            return [_to_task_view(row) for row in rows]

    def update_task(
        self,
        task_id: int,
        *,
        status: TaskStatus | _Unset = _UNSET,
        session_id: str | None | _Unset = _UNSET,
        learned_context: str | None | _Unset = _UNSET,
    ) -> None:
        """Update mutable task fields; omitted arguments stay untouched."""

        values: dict[str, object] = {"updated_at": to_db_datetime(utc_now())}
        if not isinstance(status, _Unset):
            values["status"] = status.value
        if not isinstance(session_id, _Unset):
            values["session_id"] = session_id
        if not isinstance(learned_context, _Unset):
            values["learned_context"] = learned_context
        with Session(self.engine) as session:
            session.exec(sa_update(TaskRow).where(col(TaskRow.id) == task_id).values(**values))
            session.commit()

    def clear_task_session(self, task_id: int) -> None:
        self.update_task(task_id, session_id=None)

    def increment_run_count(self, task_id: int) -> TaskView:
        """Bump ``run_count``; a task reaching ``max_runs`` becomes completed."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise KeyError(f"Task {task_id} not found")
            row.run_count += 1
            row.last_run = now
            row.updated_at = now
            if row.max_runs is not None and row.run_count >= row.max_runs:
                row.status = TaskStatus.COMPLETED.value
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    # runs

    def create_task_run(self, task_id: int, *, session_id: str | None = None) -> TaskRunView:
        """Insert a running run row, guarded by the partial unique index."""

        with Session(self.engine) as session:
            row = TaskRunRow(
                task_id=task_id,
                started_at=utc_now(),
                status=RunStatus.RUNNING.value,
                session_id=session_id,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise RunAlreadyActiveError(task_id) from exc
            session.refresh(row)
            return _to_run_view(row)

    def get_task_run(self, run_id: int) -> TaskRunView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRunRow, run_id)
            return _to_run_view(row) if row is not None else None

    def get_latest_task_run(self, task_id: int) -> TaskRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRunRow)
                .where(TaskRunRow.task_id == task_id)
                .order_by(col(TaskRunRow.started_at).desc(), col(TaskRunRow.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_run_view(row) if row is not None else None

    def list_task_runs(
        self,
        task_id: int,
        *,
        limit: int = 20,
        status: RunStatus | None = None,
    ) -> list[TaskRunView]:
        with Session(self.engine) as session:
            query = select(TaskRunRow).where(TaskRunRow.task_id == task_id)
            if status is not None:
                query = query.where(TaskRunRow.status == status.value)
            rows = session.exec(
                query.order_by(col(TaskRunRow.started_at).desc(), col(TaskRunRow.id).desc())
                .limit(limit),
            ).all()
            return [_to_run_view(row) for row in rows]

    def update_task_run_progress(
        self,
        run_id: int,
        *,
        progress: float | None,
        message: str,
    ) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(TaskRunRow)
                .where(
                    col(TaskRunRow.id) == run_id,
                    col(TaskRunRow.status) == RunStatus.RUNNING.value,
                )
                .values(progress=progress, progress_message=message),
            )
            session.commit()

    def update_task_run_session_id(self, run_id: int, session_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(TaskRunRow)
                .where(col(TaskRunRow.id) == run_id)
                .values(session_id=session_id),
            )
            session.commit()

    def complete_task_run(  # noqa: PLR0913
        self,
        run_id: int,
        *,
        status: RunStatus,
        result: str | None,
        error_message: str | None,
        duration_ms: int,
        result_file: str | None = None,
    ) -> None:
        """Finalize a running run; a second call for the same run is a no-op."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(TaskRunRow)
                .where(
                    col(TaskRunRow.id) == run_id,
                    col(TaskRunRow.status) == RunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    result=result,
                    error_message=error_message,
                    duration_ms=duration_ms,
                    result_file=result_file,
                    finished_at=to_db_datetime(utc_now()),
                    progress=1.0 if status == RunStatus.COMPLETED else None,
                ),
            )
            session.commit()

    def get_session_run_count(self, task_id: int, session_id: str) -> int:
        """Number of runs of ``task_id`` that used ``session_id``."""

        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(TaskRunRow)
                .where(TaskRunRow.task_id == task_id, TaskRunRow.session_id == session_id),
            ).one()
            return int(count)

    # console logs

    def insert_console_logs(self, entries: list[ConsoleLogWrite]) -> None:
        if not entries:
            return
        now = utc_now()
        with Session(self.engine) as session:
            for entry in entries:
                session.add(
                    ConsoleLogRow(
                        run_id=entry.run_id,
                        seq=entry.seq,
                        entry_type=entry.entry_type.value,
                        content=entry.content,
                        created_at=now,
                    ),
                )
            session.commit()

    def list_console_logs(
        self,
        run_id: int,
        *,
        after_seq: int = 0,
        entry_type: ConsoleEntryType | None = None,
    ) -> list[ConsoleLogView]:
        with Session(self.engine) as session:
            query = select(ConsoleLogRow).where(
                ConsoleLogRow.run_id == run_id,
                ConsoleLogRow.seq > after_seq,
            )
            if entry_type is not None:
                query = query.where(ConsoleLogRow.entry_type == entry_type.value)
            rows = session.exec(query.order_by(col(ConsoleLogRow.seq).asc())).all()
            return [_to_console_view(row) for row in rows]

    # memory

    def add_task_memory(
        self,
        *,
        task_id: int,
        room_id: int | None,
        content: str,
        success: bool,
        keep_latest: int,
    ) -> None:
        """Append an observation and prune the task's history to ``keep_latest``."""

        with Session(self.engine) as session:
            session.add(
                TaskMemoryRow(
                    task_id=task_id,
                    room_id=room_id,
                    content=content,
                    success=success,
                    created_at=utc_now(),
                ),
            )
            session.flush()
            stale_ids = session.exec(
                select(TaskMemoryRow.id)
                .where(TaskMemoryRow.task_id == task_id)
                .order_by(col(TaskMemoryRow.created_at).desc(), col(TaskMemoryRow.id).desc())
                .offset(keep_latest),
            ).all()
            for stale_id in stale_ids:
                stale = session.get(TaskMemoryRow, stale_id)
                if stale is not None:
                    session.delete(stale)
            session.commit()

    def list_task_memory(self, task_id: int, *, limit: int) -> list[MemoryObservation]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskMemoryRow)
                .where(TaskMemoryRow.task_id == task_id)
                .order_by(col(TaskMemoryRow.created_at).desc(), col(TaskMemoryRow.id).desc())
                .limit(limit),
            ).all()
            return [_to_memory_view(row) for row in rows]

    def list_room_memory(
        self,
        room_id: int,
        *,
        exclude_task_id: int,
        limit: int,
    ) -> list[MemoryObservation]:
        """Recent successful observations of other tasks in the same room."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskMemoryRow)
                .where(
                    TaskMemoryRow.room_id == room_id,
                    TaskMemoryRow.task_id != exclude_task_id,
                    col(TaskMemoryRow.success).is_(True),
                )
                .order_by(col(TaskMemoryRow.created_at).desc(), col(TaskMemoryRow.id).desc())
                .limit(limit),
            ).all()
            return [_to_memory_view(row) for row in rows]

    # agent sessions

    def get_agent_session(self, worker_id: int) -> AgentSessionView | None:
        with Session(self.engine) as session:
            row = session.get(AgentSessionRow, worker_id)
            return _to_agent_session_view(row) if row is not None else None

    def save_agent_session(
        self,
        worker_id: int,
        *,
        model: str,
        messages_json: str | None,
        session_id: str | None = None,
    ) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(AgentSessionRow, worker_id)
            if row is None:
                row = AgentSessionRow(worker_id=worker_id, model=model, updated_at=now)
            row.model = model
            row.messages_json = messages_json
            row.session_id = session_id
            row.updated_at = now
            session.add(row)
            session.commit()

    def delete_agent_session(self, worker_id: int) -> None:
        with Session(self.engine) as session:
            row = session.get(AgentSessionRow, worker_id)
            if row is not None:
                session.delete(row)
                session.commit()


def _aware_or_none(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_worker_view(row: WorkerRow) -> WorkerView:
    assert row.id is not None
    return WorkerView(
        id=row.id,
        name=row.name,
        system_prompt=row.system_prompt,
        model=row.model,
        is_default=row.is_default,
        room_id=row.room_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_room_view(row: RoomRow) -> RoomView:
    assert row.id is not None
    return RoomView(
        id=row.id,
        name=row.name,
        status=row.status,
        max_concurrent_tasks=row.max_concurrent_tasks,
        worker_model=row.worker_model,
        queen_worker_id=row.queen_worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: TaskRow) -> TaskView:
    assert row.id is not None
    return TaskView(
        id=row.id,
        name=row.name,
        description=row.description,
        prompt=row.prompt,
        trigger_type=TriggerType(row.trigger_type),
        cron_expression=row.cron_expression,
        status=TaskStatus(row.status),
        worker_id=row.worker_id,
        room_id=row.room_id,
        session_continuity=row.session_continuity,
        session_id=row.session_id,
        learned_context=row.learned_context,
        run_count=row.run_count,
        max_runs=row.max_runs,
        timeout_minutes=row.timeout_minutes,
        max_turns=row.max_turns,
        allowed_tools=row.allowed_tools,
        disallowed_tools=row.disallowed_tools,
        last_run=_aware_or_none(row.last_run),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_run_view(row: TaskRunRow) -> TaskRunView:
    assert row.id is not None
    return TaskRunView(
        id=row.id,
        task_id=row.task_id,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=_aware_or_none(row.finished_at),
        status=RunStatus(row.status),
        result=row.result,
        result_file=row.result_file,
        error_message=row.error_message,
        duration_ms=row.duration_ms,
        progress=row.progress,
        progress_message=row.progress_message,
        session_id=row.session_id,
    )


def _to_console_view(row: ConsoleLogRow) -> ConsoleLogView:
    assert row.id is not None
    return ConsoleLogView(
        id=row.id,
        run_id=row.run_id,
        seq=row.seq,
        entry_type=ConsoleEntryType(row.entry_type),
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_memory_view(row: TaskMemoryRow) -> MemoryObservation:
    assert row.id is not None
    return MemoryObservation(
        id=row.id,
        task_id=row.task_id,
        room_id=row.room_id,
        success=row.success,
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_agent_session_view(row: AgentSessionRow) -> AgentSessionView:
    return AgentSessionView(
        worker_id=row.worker_id,
        model=row.model,
        session_id=row.session_id,
        messages_json=row.messages_json,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
