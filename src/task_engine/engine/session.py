"""Session continuity: CLI resume rotation and persisted message histories."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from task_engine.config import SessionSettings
from task_engine.engine.backend.base import SessionUpdateHook
from task_engine.engine.models import TaskView
from task_engine.engine.repository import EngineRepository
from task_engine.storage.common import utc_now

logger = logging.getLogger(__name__)

Compactor = Callable[[str, list[dict[str, Any]]], Awaitable[str | None]]


class SessionContinuityPolicy:
    """Decide whether a task resumes its stored CLI session.

    A session that already served ``max_runs_per_session`` runs is rotated:
    the next run starts fresh so context cannot grow without bound.
    """

    def __init__(self, settings: SessionSettings) -> None:
        self.settings = settings

    def should_resume(
        self,
        *,
        session_continuity: bool,
        session_id: str | None,
        session_runs: int,
    ) -> bool:
        if not session_continuity or not session_id:
            return False
        return session_runs < self.settings.max_runs_per_session

    def resume_session_id(self, task: TaskView, repository: EngineRepository) -> str | None:
        if not task.session_continuity or not task.session_id:
            return None
        session_runs = repository.get_session_run_count(task.id, task.session_id)
        if self.should_resume(
            session_continuity=task.session_continuity,
            session_id=task.session_id,
            session_runs=session_runs,
        ):
            return task.session_id
        logger.info(
            "Task %s: session %s used by %d runs, starting fresh",
            task.id,
            task.session_id,
            session_runs,
        )
        return None


@dataclass(slots=True)
class LoadedSession:
    """History handed to a multi-turn backend plus its persistence hook."""

    messages: list[dict[str, Any]] = field(default_factory=list)
    compacted: bool = False


def hard_trim(messages: list[dict[str, Any]], limit: int) -> list[dict[str, Any]]:
    return messages[-limit:] if len(messages) > limit else list(messages)


class MessageSessionStore:
    """Per-worker message history for HTTP and daemon backends."""

    def __init__(
        self,
        repository: EngineRepository,
        settings: SessionSettings,
        *,
        compactor: Compactor | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.compactor = compactor
        self.clock = clock

    async def load(self, worker_id: int, model: str) -> LoadedSession:
        """Load history, dropping stale or foreign-model sessions.

        Histories at the compaction threshold are summarized into a single
        message; when summarizing fails they are hard-trimmed instead.
        """

        stored = self.repository.get_agent_session(worker_id)
        if stored is None:
            return LoadedSession()

        stale_before = self.clock() - timedelta(days=self.settings.stale_after_days)
        if stored.updated_at < stale_before or stored.model != model:
            logger.info("Worker %s: discarding stale or model-changed session", worker_id)
            self.repository.delete_agent_session(worker_id)
            return LoadedSession()

        messages = _decode_messages(stored.messages_json)
        if len(messages) < self.settings.compress_threshold_messages:
            return LoadedSession(messages=messages)

        summary = await self.compactor(model, messages) if self.compactor is not None else None
        if not summary:
            return LoadedSession(messages=hard_trim(messages, self.settings.max_history_messages))

        compacted = [
            {
                "role": "user",
                "content": f"Your compressed session memory from previous cycles: {summary}",
            },
        ]
        self.save(worker_id, model, compacted)
        logger.info("Worker %s: session of %d messages compacted", worker_id, len(messages))
        return LoadedSession(messages=compacted, compacted=True)

    def save(self, worker_id: int, model: str, messages: list[dict[str, Any]]) -> None:
        trimmed = hard_trim(messages, self.settings.max_history_messages)
        self.repository.save_agent_session(
            worker_id,
            model=model,
            messages_json=json.dumps(trimmed),
        )

    def update_hook(self, worker_id: int, model: str) -> SessionUpdateHook:
        """Hook persisting history after every tool exchange."""

        def _persist(messages: list[dict[str, Any]]) -> None:
            self.save(worker_id, model, messages)

        return _persist


def _decode_messages(raw: str | None) -> list[dict[str, Any]]:
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Corrupt agent session history ignored")
        return []
    if not isinstance(decoded, list):
        return []
    return [message for message in decoded if isinstance(message, dict)]
