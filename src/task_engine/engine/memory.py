"""Cross-run memory of task outcomes used to enrich prompts."""

from __future__ import annotations

import logging
from typing import Protocol

from task_engine.engine.models import MemoryObservation, TaskView
from task_engine.engine.repository import EngineRepository

logger = logging.getLogger(__name__)

MAX_OWN_OBSERVATIONS = 5
MAX_RELATED_OBSERVATIONS = 3
MAX_RELATED_TASKS = 5
MAX_MEMORY_LENGTH = 2000
MAX_OBSERVATIONS_PER_TASK = 10


class MemoryContextSupplier(Protocol):
    """Opaque supplier of memory context strings."""

    def task_memory_context(self, task: TaskView) -> str | None: ...

    def cross_task_memory_context(self, task: TaskView) -> str | None: ...

    def store_task_result(self, task: TaskView, output: str, success: bool) -> None: ...


def format_observation(output: str, *, success: bool) -> str:
    truncated = output
    if len(output) > MAX_MEMORY_LENGTH:
        truncated = output[:MAX_MEMORY_LENGTH] + "\n[...truncated]"
    return f"[{'SUCCESS' if success else 'FAILED'}] {truncated}"


class RepositoryMemory:
    """Memory kept in the ``task_memory`` table.

    Own history is the latest observations of the task itself; related
    knowledge is recent successes of other tasks in the same room.
    """

    def __init__(self, repository: EngineRepository) -> None:
        self.repository = repository

    def task_memory_context(self, task: TaskView) -> str | None:
        sections: list[str] = []
        own = self.repository.list_task_memory(task.id, limit=MAX_OWN_OBSERVATIONS)
        if own:
            lines = "\n\n".join(
                f"[{observation.created_at.isoformat(timespec='seconds')}] {observation.content}"
                for observation in own
            )
            sections.append(f"## Your previous results:\n{lines}")
        related = self.cross_task_memory_context(task)
        if related:
            sections.append(related)
        return "\n\n".join(sections) if sections else None

    def cross_task_memory_context(self, task: TaskView) -> str | None:
        if task.room_id is None:
            return None
        observations = self.repository.list_room_memory(
            task.room_id,
            exclude_task_id=task.id,
            limit=MAX_RELATED_TASKS * MAX_RELATED_OBSERVATIONS * 2,
        )
        grouped: dict[int, list[MemoryObservation]] = {}
        for observation in observations:
            bucket = grouped.get(observation.task_id)
            if bucket is None:
                if len(grouped) >= MAX_RELATED_TASKS:
                    continue
                bucket = grouped.setdefault(observation.task_id, [])
            if len(bucket) < MAX_RELATED_OBSERVATIONS:
                bucket.append(observation)

        parts: list[str] = []
        for task_id, bucket in grouped.items():
            related_task = self.repository.get_task(task_id)
            name = related_task.name if related_task is not None else f"#{task_id}"
            body = "\n".join(observation.content for observation in bucket)
            parts.append(f"**Task: {name}** (task_result):\n{body}")
        if not parts:
            return None
        return "## Related knowledge:\n" + "\n\n".join(parts)

    def store_task_result(self, task: TaskView, output: str, success: bool) -> None:
        self.repository.add_task_memory(
            task_id=task.id,
            room_id=task.room_id,
            content=format_observation(output, success=success),
            success=success,
            keep_latest=MAX_OBSERVATIONS_PER_TASK,
        )
