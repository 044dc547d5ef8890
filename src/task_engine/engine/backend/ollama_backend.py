"""Local model daemon executor (loopback ``/api/chat``)."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from task_engine.config import ExecutionSettings, ProviderSettings
from task_engine.engine.backend.base import (
    BackendContext,
    BackendRequest,
    ExecutionResult,
    TokenUsage,
    elapsed_ms,
    failure_result,
)
from task_engine.engine.backend.http_backends import (
    COMPLETED_WITHOUT_TEXT,
    DEFAULT_MAX_TURNS,
    invoke_tool,
    new_cycle_prompt,
    parse_tool_arguments,
    request_failure,
)
from task_engine.engine.events import ResultEvent, ToolCall, ToolResult

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT_SECONDS = 5.0


class OllamaDaemonError(RuntimeError):
    """Daemon answered with an error status or an error event."""


class OllamaExecutor:
    """Chat with a locally hosted model daemon."""

    def __init__(
        self,
        *,
        context: BackendContext,
        providers: ProviderSettings,
        execution: ExecutionSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.context = context
        self.providers = providers
        self.execution = execution
        self.transport = transport

    @property
    def base_url(self) -> str:
        return self.providers.ollama_base_url.rstrip("/")

    def _client(self, timeout_seconds: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=self.transport,
        )

    async def is_available(self) -> bool:
        """Probe ``/api/tags``; the answer is cached on the backend context."""

        cached = self.context.cached_daemon_availability()
        if cached is not None:
            return cached
        try:
            async with self._client(_PROBE_TIMEOUT_SECONDS) as client:
                response = await client.get("/api/tags")
            available = response.is_success
        except httpx.HTTPError:
            available = False
        self.context.remember_daemon_availability(available)
        return available

    async def run(
        self,
        request: BackendRequest,
        *,
        model: str,
    ) -> ExecutionResult:
        started = time.monotonic()
        if not await self.is_available():
            return failure_result(
                f"Error: Ollama is not running at {self.base_url}",
                started=started,
            )
        if request.wants_tools:
            return await self._run_tool_loop(request, model=model)
        if request.stream:
            return await self._run_streaming(request, model=model)
        return await self._run_single(request, model=model)

    def _messages(self, request: BackendRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return messages

    async def chat(
        self,
        payload: dict[str, Any],
        *,
        timeout_seconds: float,
        request: BackendRequest,
    ) -> Any:
        """POST ``/api/chat`` (non-streaming) and decode the reply."""

        async with self._client(timeout_seconds) as client:
            call = client.post("/api/chat", json=payload)
            response = await (request.signal.guard(call) if request.signal is not None else call)
            if not response.is_success:
                raise OllamaDaemonError(
                    f"Ollama HTTP {response.status_code}: {response.text[:500]}",
                )
            return response.json()

    async def _run_single(self, request: BackendRequest, *, model: str) -> ExecutionResult:
        started = time.monotonic()
        try:
            payload = await self.chat(
                {"model": model, "messages": self._messages(request), "stream": False},
                timeout_seconds=request.timeout_seconds or self.execution.tool_loop_timeout_seconds,
                request=request,
            )
        except (httpx.HTTPError, OllamaDaemonError, ValueError) as error:
            return request_failure(error, started=started)
        output = _message_content(payload)
        request.observer.on_event(ResultEvent(output[:2000]))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
            usage=_usage(payload),
        )

    async def _run_streaming(self, request: BackendRequest, *, model: str) -> ExecutionResult:
        """Accumulate NDJSON ``message.content`` fragments until ``done``.

        Closing the stream early stops inference on the daemon side.
        """

        started = time.monotonic()
        body = {"model": model, "messages": self._messages(request), "stream": True}

        async def consume() -> str:
            parts: list[str] = []
            async with self._client(
                request.timeout_seconds or self.execution.tool_loop_timeout_seconds,
            ) as client, client.stream("POST", "/api/chat", json=body) as response:
                if not response.is_success:
                    raise OllamaDaemonError(f"Ollama HTTP {response.status_code}")
                async for line in response.aiter_lines():
                    stripped = line.strip()
                    if not stripped:
                        continue
                    try:
                        event = json.loads(stripped)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(event, dict):
                        continue
                    if event.get("error"):
                        raise OllamaDaemonError(str(event["error"]))
                    fragment = _message_content(event)
                    if fragment:
                        parts.append(fragment)
                    if event.get("done"):
                        break
            return "".join(parts)

        try:
            if request.signal is not None:
                output = await request.signal.guard(consume())
            else:
                output = await consume()
        except (httpx.HTTPError, OllamaDaemonError) as error:
            return request_failure(error, started=started)
        request.observer.on_event(ResultEvent(output[:2000]))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
        )

    async def _run_tool_loop(self, request: BackendRequest, *, model: str) -> ExecutionResult:
        started = time.monotonic()
        previous = list(request.previous_messages)
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(previous)
        messages.append(
            {
                "role": "user",
                "content": new_cycle_prompt(request.prompt) if previous else request.prompt,
            },
        )
        tools = [tool.to_openai() for tool in request.tools]
        usage = TokenUsage()
        final_output = ""
        step = 0

        for _turn in range(request.max_turns or DEFAULT_MAX_TURNS):
            try:
                payload = await self.chat(
                    {"model": model, "messages": messages, "tools": tools, "stream": False},
                    timeout_seconds=request.timeout_seconds
                    or self.execution.tool_loop_timeout_seconds,
                    request=request,
                )
            except (httpx.HTTPError, OllamaDaemonError, ValueError) as error:
                return request_failure(error, started=started)

            step_usage = _usage(payload)
            usage.add(input_tokens=step_usage.input_tokens, output_tokens=step_usage.output_tokens)
            message = payload.get("message") if isinstance(payload, dict) else None
            if not isinstance(message, dict):
                break
            tool_calls = message.get("tool_calls") or []
            if not tool_calls:
                final_output = str(message.get("content") or "")
                break

            messages.append(
                {
                    "role": "assistant",
                    "content": message.get("content") or "",
                    "tool_calls": tool_calls,
                },
            )
            for call in tool_calls:
                function = call.get("function") if isinstance(call, dict) else None
                function = function or {}
                name = str(function.get("name") or "tool")
                step += 1
                request.observer.on_event(ToolCall(f"Step {step}: Using {name}"))
                arguments = parse_tool_arguments(function.get("arguments"))
                result = await invoke_tool(request, name, arguments)
                request.observer.on_event(ToolResult(result[:500]))
                messages.append({"role": "tool", "content": result})

            if request.on_session_update is not None:
                request.on_session_update([m for m in messages if m.get("role") != "system"])

        output = final_output or COMPLETED_WITHOUT_TEXT
        request.observer.on_event(ResultEvent(output[:2000]))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
            usage=usage,
        )


def _message_content(payload: Any) -> str:
    message = payload.get("message") if isinstance(payload, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else ""


def _usage(payload: Any) -> TokenUsage:
    usage = TokenUsage()
    if isinstance(payload, dict):
        usage.add(
            input_tokens=payload.get("prompt_eval_count"),
            output_tokens=payload.get("eval_count"),
        )
    return usage
