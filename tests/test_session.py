from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

import allure
import pytest

from task_engine.config import SessionSettings
from task_engine.engine.models import RunStatus, TaskCreate, WorkerCreate
from task_engine.engine.repository import EngineRepository
from task_engine.engine.session import (
    MessageSessionStore,
    SessionContinuityPolicy,
    hard_trim,
)
from task_engine.storage.common import utc_now

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Session Continuity"),
]


def _messages(count: int) -> list[dict[str, Any]]:
    return [
        {"role": "user" if index % 2 == 0 else "assistant", "content": f"m{index}"}
        for index in range(count)
    ]


@pytest.mark.parametrize(
    ("continuity", "session_id", "runs", "expected"),
    [
        (True, "s-1", 0, True),
        (True, "s-1", 19, True),
        (True, "s-1", 20, False),
        (True, None, 0, False),
        (False, "s-1", 0, False),
    ],
)
def test_should_resume_rotates_after_max_runs(
    continuity: bool,
    session_id: str | None,
    runs: int,
    expected: bool,
) -> None:
    policy = SessionContinuityPolicy(SessionSettings(max_runs_per_session=20))

    assert (
        policy.should_resume(
            session_continuity=continuity,
            session_id=session_id,
            session_runs=runs,
        )
        is expected
    )


def test_resume_session_id_uses_run_history(repository: EngineRepository) -> None:
    task = repository.create_task(
        TaskCreate(name="t", prompt="p", session_continuity=True),
    )
    repository.update_task(task.id, session_id="s-1")
    for _ in range(2):
        run = repository.create_task_run(task.id, session_id="s-1")
        repository.complete_task_run(
            run.id,
            status=RunStatus.COMPLETED,
            result="ok",
            error_message=None,
            duration_ms=1,
        )
    stored = repository.get_task(task.id)
    assert stored is not None

    assert SessionContinuityPolicy(SessionSettings()).resume_session_id(stored, repository) == "s-1"
    rotating = SessionContinuityPolicy(SessionSettings(max_runs_per_session=2))
    assert rotating.resume_session_id(stored, repository) is None


def test_hard_trim_keeps_latest_messages() -> None:
    messages = _messages(5)

    assert hard_trim(messages, 2) == messages[-2:]
    assert hard_trim(messages, 10) == messages


@pytest.mark.asyncio
async def test_load_returns_empty_history_without_stored_session(
    repository: EngineRepository,
) -> None:
    worker = repository.create_worker(WorkerCreate(name="w", system_prompt="s"))
    store = MessageSessionStore(repository, SessionSettings())

    loaded = await store.load(worker.id, "openai:gpt-4o")

    assert loaded.messages == []
    assert not loaded.compacted


@pytest.mark.asyncio
async def test_model_change_discards_history(repository: EngineRepository) -> None:
    worker = repository.create_worker(WorkerCreate(name="w", system_prompt="s"))
    store = MessageSessionStore(repository, SessionSettings())
    store.save(worker.id, "openai:gpt-4o", _messages(4))

    loaded = await store.load(worker.id, "anthropic:claude-3-haiku")

    assert loaded.messages == []
    assert repository.get_agent_session(worker.id) is None


@pytest.mark.asyncio
async def test_stale_history_is_discarded(repository: EngineRepository) -> None:
    worker = repository.create_worker(WorkerCreate(name="w", system_prompt="s"))
    settings = SessionSettings(stale_after_days=7)
    MessageSessionStore(repository, settings).save(worker.id, "ollama:llama3", _messages(4))
    later = MessageSessionStore(
        repository,
        settings,
        clock=lambda: utc_now() + timedelta(days=8),
    )

    loaded = await later.load(worker.id, "ollama:llama3")

    assert loaded.messages == []


@pytest.mark.asyncio
async def test_history_below_threshold_is_returned_as_is(repository: EngineRepository) -> None:
    worker = repository.create_worker(WorkerCreate(name="w", system_prompt="s"))
    store = MessageSessionStore(repository, SessionSettings(compress_threshold_messages=10))
    store.save(worker.id, "openai:gpt-4o", _messages(4))

    loaded = await store.load(worker.id, "openai:gpt-4o")

    assert loaded.messages == _messages(4)


@pytest.mark.asyncio
async def test_long_history_is_compacted_into_one_message(repository: EngineRepository) -> None:
    worker = repository.create_worker(WorkerCreate(name="w", system_prompt="s"))
    seen: list[int] = []

    async def compactor(model: str, history: list[dict[str, Any]]) -> str | None:
        seen.append(len(history))
        return '{"session_summary": "built two workers"}'

    store = MessageSessionStore(
        repository,
        SessionSettings(compress_threshold_messages=6, max_history_messages=40),
        compactor=compactor,
    )
    store.save(worker.id, "openai:gpt-4o", _messages(8))

    loaded = await store.load(worker.id, "openai:gpt-4o")

    assert seen == [8]
    assert loaded.compacted
    assert loaded.messages == [
        {
            "role": "user",
            "content": "Your compressed session memory from previous cycles: "
            '{"session_summary": "built two workers"}',
        },
    ]
    stored = repository.get_agent_session(worker.id)
    assert stored is not None
    assert json.loads(stored.messages_json or "[]") == loaded.messages


@pytest.mark.asyncio
async def test_failed_compaction_falls_back_to_hard_trim(repository: EngineRepository) -> None:
    worker = repository.create_worker(WorkerCreate(name="w", system_prompt="s"))

    async def compactor(model: str, history: list[dict[str, Any]]) -> str | None:
        return None

    store = MessageSessionStore(
        repository,
        SessionSettings(compress_threshold_messages=6, max_history_messages=40),
        compactor=compactor,
    )
    store.save(worker.id, "openai:gpt-4o", _messages(8))
    store.settings = SessionSettings(compress_threshold_messages=6, max_history_messages=5)

    loaded = await store.load(worker.id, "openai:gpt-4o")

    assert not loaded.compacted
    assert loaded.messages == _messages(8)[-5:]


def test_update_hook_persists_trimmed_history(repository: EngineRepository) -> None:
    worker = repository.create_worker(WorkerCreate(name="w", system_prompt="s"))
    store = MessageSessionStore(repository, SessionSettings(max_history_messages=3))

    store.update_hook(worker.id, "ollama:llama3")(_messages(6))

    stored = repository.get_agent_session(worker.id)
    assert stored is not None
    assert stored.model == "ollama:llama3"
    assert json.loads(stored.messages_json or "[]") == _messages(6)[-3:]
