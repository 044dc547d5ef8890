"""Human-readable result artifact per run."""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

from task_engine.engine.backend.base import ExecutionResult

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def artifact_status(result: ExecutionResult) -> str:
    if result.timed_out:
        return "Timed Out"
    if result.exit_code == 0:
        return "Success"
    return f"Failed (exit {result.exit_code})"


def artifact_filename(task_name: str, *, now: datetime, run_id: int | None = None) -> str:
    safe_name = _UNSAFE_CHARS.sub("_", task_name)[:50]
    timestamp = now.isoformat(timespec="milliseconds").replace(":", "-").replace(".", "-")
    suffix = f"-run{run_id}" if run_id is not None else ""
    return f"{safe_name}-{timestamp}{suffix}.md"


def save_result_artifact(
    results_dir: Path,
    *,
    task_name: str,
    output: str,
    result: ExecutionResult,
    run_id: int | None = None,
    now: datetime | None = None,
) -> Path:
    """Write the run artifact and return its path."""

    now = now or datetime.now().astimezone()
    results_dir.mkdir(parents=True, exist_ok=True)
    path = results_dir / artifact_filename(task_name, now=now, run_id=run_id)
    text = (
        f"# Task: {task_name}\n\n"
        f"**Date:** {now.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"**Duration:** {result.duration_ms / 1000:.1f}s\n"
        f"**Status:** {artifact_status(result)}\n\n"
        "---\n\n"
        f"{output}\n"
    )
    path.write_text(text, encoding="utf-8")
    return path
