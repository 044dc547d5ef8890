"""CLI entrypoint for the task engine."""

import logging
from pathlib import Path

import rich_click as click

from task_engine import __version__
from task_engine.controllers import (
    RoomAddCommand,
    RunListCommand,
    RunLogsCommand,
    RunTaskCommand,
    TaskAddCommand,
    TaskEngineCliController,
    TaskListCommand,
    TaskStatusCommand,
    WorkerAddCommand,
    format_console_entry,
)
from task_engine.engine.models import ConsoleLogWrite, RunStatus, TaskStatus, TriggerType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskEngineCliController()

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="task-engine")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def task_engine(log_level: str) -> None:
    """Run worker prompts on Claude, Codex, OpenAI, Anthropic, Ollama or a station."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_engine.group()
def task() -> None:
    """Task definition commands."""


@task.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--name", required=True, help="Task name.")
@click.option("--prompt", required=True, help="Prompt sent to the worker.")
@click.option(
    "--trigger",
    "trigger_type",
    type=click.Choice([item.value for item in TriggerType]),
    default=TriggerType.MANUAL.value,
    show_default=True,
    help="How the task gets scheduled.",
)
@click.option("--worker-id", type=int, default=None, help="Worker that runs the task.")
@click.option("--room-id", type=int, default=None, help="Room the task belongs to.")
@click.option(
    "--session-continuity/--no-session-continuity",
    default=False,
    show_default=True,
    help="Resume the previous CLI session between runs.",
)
@click.option(
    "--max-runs",
    type=click.IntRange(min=1),
    default=None,
    help="Complete the task after this many successful runs.",
)
@click.option(
    "--timeout-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Per-run timeout.",
)
@click.option("--max-turns", type=click.IntRange(min=1), default=None, help="CLI turn cap.")
@click.option("--allowed-tools", default=None, help="Comma-separated CLI tool allowlist.")
@click.option("--disallowed-tools", default=None, help="Comma-separated CLI tool denylist.")
def task_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    prompt: str,
    trigger_type: str,
    worker_id: int | None,
    room_id: int | None,
    session_continuity: bool,
    max_runs: int | None,
    timeout_minutes: int | None,
    max_turns: int | None,
    allowed_tools: str | None,
    disallowed_tools: str | None,
) -> None:
    """Create a new active task."""

    _emit_lines(
        CONTROLLER.add_task(
            TaskAddCommand(
                db_path=db_path,
                name=name,
                prompt=prompt,
                trigger_type=trigger_type,
                worker_id=worker_id,
                room_id=room_id,
                session_continuity=session_continuity,
                max_runs=max_runs,
                timeout_minutes=timeout_minutes,
                max_turns=max_turns,
                allowed_tools=allowed_tools,
                disallowed_tools=disallowed_tools,
            ),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Only show tasks in this state.",
)
def task_list(db_path: Path | None, status: str | None) -> None:
    """List tasks."""

    _emit_lines(CONTROLLER.list_tasks(TaskListCommand(db_path=db_path, status=status)))


@task.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id", type=int)
def task_pause(db_path: Path | None, task_id: int) -> None:
    """Pause a task so it is not executed."""

    _emit_lines(
        CONTROLLER.set_task_status(
            TaskStatusCommand(db_path=db_path, task_id=task_id, status=TaskStatus.PAUSED),
        ),
    )


@task.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id", type=int)
def task_resume(db_path: Path | None, task_id: int) -> None:
    """Reactivate a paused task."""

    _emit_lines(
        CONTROLLER.set_task_status(
            TaskStatusCommand(db_path=db_path, task_id=task_id, status=TaskStatus.ACTIVE),
        ),
    )


@task_engine.group()
def worker() -> None:
    """Worker commands."""


@worker.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--name", required=True, help="Worker name.")
@click.option("--system-prompt", default="", help="System prompt for every run.")
@click.option(
    "--model",
    default=None,
    help="Model identifier, for example `claude`, `openai:gpt-4o-mini` or `ollama:llama3`.",
)
@click.option("--default", "is_default", is_flag=True, help="Use for tasks without a worker.")
@click.option("--room-id", type=int, default=None, help="Room the worker belongs to.")
def worker_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    system_prompt: str,
    model: str | None,
    is_default: bool,
    room_id: int | None,
) -> None:
    """Create a worker."""

    _emit_lines(
        CONTROLLER.add_worker(
            WorkerAddCommand(
                db_path=db_path,
                name=name,
                system_prompt=system_prompt,
                model=model,
                is_default=is_default,
                room_id=room_id,
            ),
        ),
    )


@task_engine.group()
def room() -> None:
    """Room commands."""


@room.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--name", required=True, help="Room name.")
@click.option(
    "--max-concurrent-tasks",
    type=click.IntRange(min=1, max=10),
    default=3,
    show_default=True,
    help="Concurrent task slots for this room.",
)
@click.option("--worker-model", default=None, help="Model used by the room's workers.")
def room_add(
    db_path: Path | None,
    name: str,
    max_concurrent_tasks: int,
    worker_model: str | None,
) -> None:
    """Create a room."""

    _emit_lines(
        CONTROLLER.add_room(
            RoomAddCommand(
                db_path=db_path,
                name=name,
                max_concurrent_tasks=max_concurrent_tasks,
                worker_model=worker_model,
            ),
        ),
    )


@task_engine.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--follow", is_flag=True, help="Stream console entries while the run executes.")
@click.argument("task_id", type=int)
def run(db_path: Path | None, follow: bool, task_id: int) -> None:
    """Execute one task now and report the outcome."""

    result = CONTROLLER.run_task(
        RunTaskCommand(db_path=db_path, task_id=task_id, follow=follow),
        on_entry=_echo_entry,
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Task run failed.")


@task_engine.command("runs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=20,
    show_default=True,
    help="How many latest runs to display.",
)
@click.option(
    "--status",
    type=click.Choice([item.value for item in RunStatus]),
    default=None,
    help="Only show runs in this state.",
)
@click.argument("task_id", type=int)
def runs(db_path: Path | None, limit: int, status: str | None, task_id: int) -> None:
    """Show run history for a task."""

    _emit_lines(
        CONTROLLER.list_runs(
            RunListCommand(db_path=db_path, task_id=task_id, limit=limit, status=status),
        ),
    )


@task_engine.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--after-seq",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only show entries after this sequence number.",
)
@click.argument("run_id", type=int)
def logs(db_path: Path | None, after_seq: int, run_id: int) -> None:
    """Show the console log of a run."""

    _emit_lines(
        CONTROLLER.show_logs(RunLogsCommand(db_path=db_path, run_id=run_id, after_seq=after_seq)),
    )


def _echo_entry(entry: ConsoleLogWrite) -> None:
    click.echo(format_console_entry(entry.seq, entry.entry_type.value, entry.content))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_engine()
