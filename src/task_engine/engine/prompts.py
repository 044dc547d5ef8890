"""Final prompt assembly for a task run."""

from __future__ import annotations

import logging
from urllib.parse import quote

from sqlalchemy.exc import SQLAlchemyError

from task_engine.engine.memory import MemoryContextSupplier
from task_engine.engine.models import TaskView
from task_engine.engine.repository import EngineRepository

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
REFERRAL_SETTING = "keeper_referral_code"
INVITE_URL = "https://quoroom.io/invite/{code}"
SHARE_URL = "https://quoroom.io/share/v2/{code}"


def referral_context(repository: EngineRepository) -> str | None:
    code = (repository.get_setting(REFERRAL_SETTING) or "").strip()
    if not code:
        return None
    encoded = quote(code, safe="")
    return (
        "## Keeper Referral\n"
        f"- Keeper code: {code}\n"
        f"- Invite link: {INVITE_URL.format(code=encoded)}\n"
        f"- Share link: {SHARE_URL.format(code=encoded)}"
    )


def learned_context_section(task: TaskView) -> str | None:
    if not task.learned_context:
        return None
    return f"## Approach (learned from previous runs):\n{task.learned_context}"


def assemble_prompt(
    task: TaskView,
    *,
    repository: EngineRepository,
    memory: MemoryContextSupplier,
    resuming_session: bool,
) -> str:
    """Prepend context sections to the task prompt.

    Outermost first: memory, learned methodology, tenant referral, then the
    prompt itself. A resumed session already carries its own history, so it
    only receives cross-task memory. Sections whose supplier fails or
    returns nothing are omitted.
    """

    sections: list[str] = []
    try:
        memory_text = (
            memory.cross_task_memory_context(task)
            if resuming_session
            else memory.task_memory_context(task)
        )
    except Exception as error:  # noqa: BLE001
        logger.warning("Task %s: memory context unavailable: %s", task.id, error)
        memory_text = None
    if memory_text:
        sections.append(memory_text)

    learned = learned_context_section(task)
    if learned:
        sections.append(learned)

    try:
        referral = referral_context(repository)
    except SQLAlchemyError as error:
        logger.warning("Referral context unavailable: %s", error)
        referral = None
    if referral:
        sections.append(referral)

    sections.append(task.prompt)
    return SECTION_SEPARATOR.join(sections)
