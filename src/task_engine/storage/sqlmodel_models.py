"""SQLModel ORM tables for engine storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, text
from sqlmodel import Field, SQLModel


class EngineSetting(SQLModel, table=True):
    __tablename__ = "settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkerRow(SQLModel, table=True):
    __tablename__ = "workers"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    system_prompt: str = Field(sa_column=Column(Text, nullable=False))
    model: str | None = None
    is_default: bool = Field(default=False)
    room_id: int | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RoomRow(SQLModel, table=True):
    __tablename__ = "rooms"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str
    status: str = Field(default="active", index=True)
    max_concurrent_tasks: int = Field(default=3)
    worker_model: str | None = None
    queen_worker_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("workers.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str
    description: str | None = None
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    trigger_type: str = Field(default="manual", index=True)
    cron_expression: str | None = None
    status: str = Field(default="active", index=True)
    worker_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("workers.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    room_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("rooms.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    session_continuity: bool = Field(default=False)
    session_id: str | None = None
    learned_context: str | None = Field(default=None, sa_column=Column(Text))
    run_count: int = Field(default=0)
    max_runs: int | None = None
    timeout_minutes: int | None = None
    max_turns: int | None = None
    allowed_tools: str | None = None
    disallowed_tools: str | None = None
    last_run: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRunRow(SQLModel, table=True):
    __tablename__ = "task_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_task_runs_task_running",
            "task_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
        Index("idx_task_runs_task_session", "task_id", "session_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    status: str = Field(default="running", index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    result_file: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    duration_ms: int | None = None
    progress: float | None = None
    progress_message: str | None = None
    session_id: str | None = None


class ConsoleLogRow(SQLModel, table=True):
    __tablename__ = "console_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_console_logs_run_seq", "run_id", "seq"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("task_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    seq: int
    entry_type: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskMemoryRow(SQLModel, table=True):
    __tablename__ = "task_memory"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_memory_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    room_id: int | None = Field(default=None, index=True)
    success: bool = Field(default=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentSessionRow(SQLModel, table=True):
    __tablename__ = "agent_sessions"  # type: ignore[bad-override]

    worker_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("workers.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    model: str
    session_id: str | None = None
    messages_json: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
