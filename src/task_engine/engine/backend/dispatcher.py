"""Route a request to the executor its model identifier names."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from task_engine.config import Settings
from task_engine.engine.backend.base import (
    BackendContext,
    BackendRequest,
    BackendRunError,
    ExecutionResult,
    failure_result,
)
from task_engine.engine.backend.cli_backend import ClaudeCliExecutor, CodexCliExecutor
from task_engine.engine.backend.http_backends import AnthropicExecutor, OpenAiExecutor
from task_engine.engine.backend.ollama_backend import OllamaExecutor
from task_engine.engine.backend.routing import BackendKind, ModelRoute, parse_model_identifier
from task_engine.engine.backend.station import StationExecutor

logger = logging.getLogger(__name__)

COMPACTION_TIMEOUT_SECONDS = 60.0
COMPACTION_MESSAGE_LIMIT = 2000

_COMPACTION_PROMPT = """You are summarizing your own previous session history as the queen of an AI collective room.
Compress the history below into a concise memory that preserves all important decisions and context.
History:
{history}

Respond ONLY with a JSON object (no markdown, no explanation):
{{
  "session_summary": "...",
  "goals_set": ["..."],
  "workers_created": [{{"name": "...", "role": "..."}}],
  "decisions_approved": ["..."],
  "decisions_rejected": ["..."],
  "last_actions": ["..."],
  "next_intention": "..."
}}"""


def build_compaction_prompt(history: list[dict[str, Any]]) -> str:
    lines = []
    for message in history:
        content = message.get("content")
        text = content if isinstance(content, str) else json.dumps(content)
        lines.append(f"[{message.get('role', 'user')}]: {text[:COMPACTION_MESSAGE_LIMIT]}")
    return _COMPACTION_PROMPT.format(history="\n---\n".join(lines))


class BackendDispatcher:
    """One entry point over every executor kind.

    Executors share the process-wide ``BackendContext`` so resolved
    executables and daemon probes are cached across runs.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        context: BackendContext | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.context = context or BackendContext()
        providers = settings.providers
        execution = settings.execution
        self.claude = ClaudeCliExecutor(
            context=self.context,
            settings=execution,
            executable=providers.claude_executable,
        )
        self.codex = CodexCliExecutor(
            context=self.context,
            settings=execution,
            executable=providers.codex_executable,
        )
        self.openai = OpenAiExecutor(providers=providers, execution=execution, transport=transport)
        self.anthropic = AnthropicExecutor(
            providers=providers,
            execution=execution,
            transport=transport,
        )
        self.ollama = OllamaExecutor(
            context=self.context,
            providers=providers,
            execution=execution,
            transport=transport,
        )
        self.station = StationExecutor(providers=providers, transport=transport)

    @staticmethod
    def route(model: str | None) -> ModelRoute:
        return parse_model_identifier(model)

    async def execute(self, request: BackendRequest) -> ExecutionResult:
        """Run ``request`` on its backend and normalize every failure into a result."""

        try:
            route = self.route(request.model)
        except ValueError as error:
            return failure_result(f"Error: {error}")
        try:
            return await self._dispatch(route, request)
        except BackendRunError as error:
            logger.warning("Backend %s could not run: %s", route.kind.value, error)
            return failure_result(f"Error: {error}")

    async def _dispatch(self, route: ModelRoute, request: BackendRequest) -> ExecutionResult:
        match route.kind:
            case BackendKind.CLAUDE_CLI:
                return await self.claude.run(request, model=route.model)
            case BackendKind.CODEX_CLI:
                return await self.codex.run(request, model=route.model)
            case BackendKind.OPENAI:
                return await self.openai.run(request, model=route.model or "")
            case BackendKind.ANTHROPIC:
                return await self.anthropic.run(request, model=route.model or "")
            case BackendKind.OLLAMA:
                return await self.ollama.run(request, model=route.model or "")
            case BackendKind.STATION:
                return await self.station.run(request, route)
        raise BackendRunError(f"Unsupported backend kind: {route.kind}")

    async def compact_session(
        self,
        model: str,
        history: list[dict[str, Any]],
        *,
        api_key: str | None = None,
    ) -> str | None:
        """Summarize ``history`` through the same backend family.

        Returns the raw summary text, or None when compaction is not
        possible or failed; callers fall back to a hard trim.
        """

        try:
            route = self.route(model)
        except ValueError:
            return None
        if route.kind not in (BackendKind.OPENAI, BackendKind.ANTHROPIC, BackendKind.OLLAMA):
            return None

        request = BackendRequest(
            prompt=build_compaction_prompt(history),
            model=model,
            api_key=api_key,
            timeout_seconds=COMPACTION_TIMEOUT_SECONDS,
        )
        result = await self._dispatch(route, request)
        if not result.succeeded:
            logger.warning("Session compaction failed: %s", result.stderr or result.stdout)
            return None
        return result.stdout.strip() or None
