from __future__ import annotations

from datetime import datetime
from pathlib import Path

import allure
import pytest

from task_engine.engine.artifacts import artifact_filename, artifact_status, save_result_artifact
from task_engine.engine.backend.base import BackendRequest, ExecutionResult
from task_engine.engine.learned_context import (
    build_distillation_prompt,
    distill_learned_context,
    should_distill,
)
from task_engine.engine.memory import MAX_MEMORY_LENGTH, RepositoryMemory, format_observation
from task_engine.engine.models import (
    ConsoleEntryType,
    ConsoleLogWrite,
    RoomCreate,
    RunStatus,
    TaskCreate,
    TaskView,
    TriggerType,
)
from task_engine.engine.prompts import SECTION_SEPARATOR, assemble_prompt
from task_engine.engine.repository import EngineRepository

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Prompt Context"),
]


def _complete(repository: EngineRepository, task_id: int, result: str) -> int:
    run = repository.create_task_run(task_id)
    repository.complete_task_run(
        run.id,
        status=RunStatus.COMPLETED,
        result=result,
        error_message=None,
        duration_ms=1,
    )
    return run.id


class _Runner:
    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        self.requests: list[BackendRequest] = []

    async def execute(self, request: BackendRequest) -> ExecutionResult:
        self.requests.append(request)
        return self.result


def test_format_observation_marks_outcome_and_truncates() -> None:
    assert format_observation("fine", success=True) == "[SUCCESS] fine"
    long = format_observation("x" * (MAX_MEMORY_LENGTH + 5), success=False)
    assert long.startswith("[FAILED] ")
    assert long.endswith("\n[...truncated]")


def test_task_memory_includes_own_and_related_results(repository: EngineRepository) -> None:
    room = repository.create_room(RoomCreate(name="lab"))
    mine = repository.create_task(TaskCreate(name="mine", prompt="p", room_id=room.id))
    other = repository.create_task(TaskCreate(name="scout", prompt="p", room_id=room.id))
    memory = RepositoryMemory(repository)

    memory.store_task_result(mine, "first result", True)
    memory.store_task_result(other, "found a lead", True)
    memory.store_task_result(other, "dead end", False)

    context = memory.task_memory_context(mine)

    assert context is not None
    assert context.startswith("## Your previous results:\n[")
    assert "[SUCCESS] first result" in context
    assert (
        "## Related knowledge:\n**Task: scout** (task_result):\n[SUCCESS] found a lead"
        in context
    )
    assert "dead end" not in context


def test_memory_is_empty_for_new_task_without_room(repository: EngineRepository) -> None:
    task = repository.create_task(TaskCreate(name="solo", prompt="p"))

    memory = RepositoryMemory(repository)

    assert memory.task_memory_context(task) is None
    assert memory.cross_task_memory_context(task) is None


def test_prompt_sections_are_ordered_outermost_first(repository: EngineRepository) -> None:
    task = repository.create_task(TaskCreate(name="digest", prompt="Write the digest"))
    repository.update_task(task.id, learned_context="- use the RSS endpoint")
    repository.set_setting("keeper_referral_code", "abc 1")
    memory = RepositoryMemory(repository)
    memory.store_task_result(task, "yesterday's digest", True)
    stored = repository.get_task(task.id)
    assert stored is not None

    prompt = assemble_prompt(stored, repository=repository, memory=memory, resuming_session=False)
    sections = prompt.split(SECTION_SEPARATOR)

    assert sections[0].startswith("## Your previous results:")
    assert sections[1] == "## Approach (learned from previous runs):\n- use the RSS endpoint"
    assert sections[2].startswith("## Keeper Referral\n- Keeper code: abc 1")
    assert "https://quoroom.io/invite/abc%201" in sections[2]
    assert sections[3] == "Write the digest"


def test_resumed_session_only_gets_cross_task_memory(repository: EngineRepository) -> None:
    task = repository.create_task(TaskCreate(name="digest", prompt="Write the digest"))
    memory = RepositoryMemory(repository)
    memory.store_task_result(task, "own history", True)

    prompt = assemble_prompt(task, repository=repository, memory=memory, resuming_session=True)

    assert prompt == "Write the digest"


def test_failing_memory_supplier_is_skipped(repository: EngineRepository) -> None:
    task = repository.create_task(TaskCreate(name="digest", prompt="Write the digest"))

    class BrokenMemory(RepositoryMemory):
        def task_memory_context(self, task: TaskView) -> str | None:
            raise RuntimeError("vector store down")

    prompt = assemble_prompt(
        task,
        repository=repository,
        memory=BrokenMemory(repository),
        resuming_session=False,
    )

    assert prompt == "Write the digest"


@pytest.mark.parametrize(
    ("run_count", "max_runs", "trigger", "learned", "expected"),
    [
        (2, None, TriggerType.CRON, None, False),
        (3, None, TriggerType.CRON, None, True),
        (4, None, TriggerType.CRON, "memo", False),
        (6, None, TriggerType.CRON, "memo", True),
        (3, 1, TriggerType.MANUAL, None, False),
        (3, None, TriggerType.ONCE, None, False),
    ],
)
def test_should_distill(
    repository: EngineRepository,
    run_count: int,
    max_runs: int | None,
    trigger: TriggerType,
    learned: str | None,
    expected: bool,
) -> None:
    task = repository.create_task(
        TaskCreate(name="t", prompt="p", trigger_type=trigger, max_runs=max_runs),
    )
    repository.update_task(task.id, learned_context=learned)
    for _ in range(run_count):
        repository.increment_run_count(task.id)
    stored = repository.get_task(task.id)
    assert stored is not None

    assert should_distill(stored) is expected


def test_distillation_prompt_needs_two_successful_runs(repository: EngineRepository) -> None:
    task = repository.create_task(TaskCreate(name="digest", prompt="Write the digest"))
    first = _complete(repository, task.id, "result one")
    assert build_distillation_prompt(repository, task) is None

    latest = _complete(repository, task.id, "result two")
    repository.insert_console_logs(
        [ConsoleLogWrite(latest, 1, ConsoleEntryType.TOOL_CALL, "Step 1: Using WebFetch")],
    )
    prompt = build_distillation_prompt(repository, task)

    assert first != latest
    assert prompt is not None
    assert 'Task name: "digest"' in prompt
    assert "result one" in prompt
    assert "Step 1: Using WebFetch" in prompt


@pytest.mark.asyncio
async def test_distill_stores_truncated_memo(repository: EngineRepository) -> None:
    task = repository.create_task(TaskCreate(name="digest", prompt="Write the digest"))
    _complete(repository, task.id, "a")
    _complete(repository, task.id, "b")
    runner = _Runner(
        ExecutionResult(stdout="- " + "m" * 2000, stderr="", exit_code=0, duration_ms=1),
    )

    memo = await distill_learned_context(repository, runner, task.id)

    stored = repository.get_task(task.id)
    assert memo is not None
    assert len(memo) == 1500
    assert stored is not None
    assert stored.learned_context == memo
    assert runner.requests[0].model == "claude"
    assert runner.requests[0].max_turns == 1


@pytest.mark.asyncio
async def test_failed_distillation_keeps_previous_memo(repository: EngineRepository) -> None:
    task = repository.create_task(TaskCreate(name="digest", prompt="Write the digest"))
    repository.update_task(task.id, learned_context="old memo")
    _complete(repository, task.id, "a")
    _complete(repository, task.id, "b")
    runner = _Runner(ExecutionResult(stdout="", stderr="boom", exit_code=1, duration_ms=1))

    assert await distill_learned_context(repository, runner, task.id) is None
    stored = repository.get_task(task.id)
    assert stored is not None
    assert stored.learned_context == "old memo"


def test_result_artifact_layout(tmp_path: Path) -> None:
    now = datetime(2026, 3, 1, 9, 30, 15, 123000)
    result = ExecutionResult(stdout="out", stderr="", exit_code=0, duration_ms=2500)

    path = save_result_artifact(
        tmp_path / "results",
        task_name="Daily: digest/news",
        output="The output",
        result=result,
        now=now,
    )

    assert path.name == "Daily__digest_news-2026-03-01T09-30-15-123.md"
    text = path.read_text(encoding="utf-8")
    assert text.startswith("# Task: Daily: digest/news\n\n**Date:** 2026-03-01 09:30:15\n")
    assert "**Duration:** 2.5s\n**Status:** Success\n\n---\n\nThe output\n" in text


def test_artifact_status_and_filename_truncation() -> None:
    timed_out = ExecutionResult(stdout="", stderr="", exit_code=1, duration_ms=1, timed_out=True)
    failed = ExecutionResult(stdout="", stderr="", exit_code=2, duration_ms=1)

    assert artifact_status(timed_out) == "Timed Out"
    assert artifact_status(failed) == "Failed (exit 2)"
    name = artifact_filename("n" * 80, now=datetime(2026, 1, 1))
    assert name.startswith("n" * 50 + "-2026")


def test_runs_in_the_same_millisecond_keep_separate_artifacts(tmp_path: Path) -> None:
    now = datetime(2026, 3, 1, 9, 30, 15, 123000)
    result = ExecutionResult(stdout="", stderr="", exit_code=0, duration_ms=1)

    first = save_result_artifact(
        tmp_path, task_name="digest", output="one", result=result, run_id=7, now=now
    )
    second = save_result_artifact(
        tmp_path, task_name="digest", output="two", result=result, run_id=8, now=now
    )

    assert first.name == "digest-2026-03-01T09-30-15-123-run7.md"
    assert first != second
    assert first.read_text(encoding="utf-8").endswith("one\n")
