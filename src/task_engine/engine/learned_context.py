"""Distill a reusable methodology memo from a task's run history."""

from __future__ import annotations

import logging
from typing import Protocol

from task_engine.engine.backend.base import BackendRequest, ExecutionResult
from task_engine.engine.models import ConsoleEntryType, RunStatus, TaskView, TriggerType
from task_engine.engine.repository import EngineRepository

logger = logging.getLogger(__name__)

DISTILL_AFTER_RUNS = 3
DISTILL_EVERY_N_RUNS = 3
DISTILL_TIMEOUT_SECONDS = 60.0
DISTILL_MODEL = "claude"
MAX_LEARNED_CONTEXT_LENGTH = 1500
MAX_RESULT_CHARS_PER_RUN = 1000
MAX_TOOL_CALL_CHARS = 1500
NO_TOOL_LOGS = "(no tool logs available)"

_DISTILLATION_PROMPT = """You are analyzing a recurring automated task to extract its methodology.

Task name: "{name}"
Task prompt: "{prompt}"

Recent successful results (most recent first):
{runs}

Tool usage from latest run:
{tool_calls}

Based on this history, write a concise "methodology memo" (max 5 bullet points) that captures:
1. The specific approach/tools/APIs/URLs that work for this task
2. Any key parameters, endpoints, or search queries that produce good results
3. Pitfalls to avoid (if apparent from the history)

Write ONLY the memo as a bulleted list. No preamble, no explanation. Be specific and actionable."""


class BackendRunner(Protocol):
    async def execute(self, request: BackendRequest) -> ExecutionResult: ...


def should_distill(task: TaskView) -> bool:
    """Recurring task with enough history, due for a first or periodic memo."""

    if task.trigger_type is TriggerType.ONCE:
        return False
    if task.max_runs is not None and task.max_runs <= 1:
        return False
    if task.run_count < DISTILL_AFTER_RUNS:
        return False
    if not task.learned_context:
        return True
    return task.run_count % DISTILL_EVERY_N_RUNS == 0


def build_distillation_prompt(repository: EngineRepository, task: TaskView) -> str | None:
    runs = repository.list_task_runs(task.id, limit=10)
    successful = [run for run in runs if run.status is RunStatus.COMPLETED and run.result]
    if len(successful) < 2:
        return None

    summaries = "\n\n".join(
        f"--- Run {index} ({run.started_at.isoformat(timespec='seconds')}) ---\n"
        f"{(run.result or '')[:MAX_RESULT_CHARS_PER_RUN]}"
        for index, run in enumerate(successful[:3], start=1)
    )
    tool_lines = [
        entry.content
        for entry in repository.list_console_logs(
            successful[0].id,
            entry_type=ConsoleEntryType.TOOL_CALL,
        )[:50]
    ]
    tool_calls = "\n".join(tool_lines)[:MAX_TOOL_CALL_CHARS] if tool_lines else NO_TOOL_LOGS
    return _DISTILLATION_PROMPT.format(
        name=task.name,
        prompt=task.prompt[:500],
        runs=summaries,
        tool_calls=tool_calls,
    )


async def distill_learned_context(
    repository: EngineRepository,
    runner: BackendRunner,
    task_id: int,
) -> str | None:
    """Ask the default CLI backend for a memo and store it on the task.

    Returns the stored memo, or None when there is too little history or
    the backend produced nothing usable.
    """

    task = repository.get_task(task_id)
    if task is None:
        return None
    prompt = build_distillation_prompt(repository, task)
    if prompt is None:
        return None

    result = await runner.execute(
        BackendRequest(
            prompt=prompt,
            model=DISTILL_MODEL,
            max_turns=1,
            timeout_seconds=DISTILL_TIMEOUT_SECONDS,
        ),
    )
    if result.exit_code != 0 or not result.stdout:
        logger.info("Task %s: distillation produced no memo", task_id)
        return None
    context = result.stdout.strip()[:MAX_LEARNED_CONTEXT_LENGTH]
    if not context:
        return None
    repository.update_task(task_id, learned_context=context)
    return context
