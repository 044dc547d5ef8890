"""Chat-completion HTTP executors: single turn and tool-calling loops."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import httpx

from task_engine.config import ExecutionSettings, ProviderSettings
from task_engine.engine.backend.base import (
    BackendRequest,
    ExecutionResult,
    TokenUsage,
    elapsed_ms,
    failure_result,
)
from task_engine.engine.cancellation import ExecutionAborted
from task_engine.engine.events import ResultEvent, ToolCall, ToolResult

logger = logging.getLogger(__name__)

ANTHROPIC_SINGLE_TURN_MAX_TOKENS = 2048
ANTHROPIC_TOOL_LOOP_MAX_TOKENS = 4096
DEFAULT_MAX_TURNS = 10
ERROR_DETAIL_LIMIT = 500
COMPLETED_WITHOUT_TEXT = "Actions completed."


def new_cycle_prompt(prompt: str) -> str:
    """Continuation turn appended to a resumed message history."""

    return f"NEW CYCLE. Updated room state:\n{prompt}\n\nContinue working toward the goal."


def request_failure(error: Exception, *, started: float) -> ExecutionResult:
    """Result for a call that failed before any remote response."""

    message = str(error) or error.__class__.__name__
    lowered = message.lower()
    timed_out = (
        isinstance(error, httpx.TimeoutException) or "timeout" in lowered or "aborted" in lowered
    )
    return failure_result(f"Error: {message}", started=started, timed_out=timed_out)


def extract_api_error(payload: Any) -> str:
    if isinstance(payload, str):
        return payload[:ERROR_DETAIL_LIMIT]
    if not isinstance(payload, dict):
        return json.dumps(payload)[:ERROR_DETAIL_LIMIT]
    error = payload.get("error")
    if error is None:
        detail = json.dumps(payload)
    elif isinstance(error, dict) and isinstance(error.get("message"), str):
        detail = error["message"]
    elif isinstance(error, str):
        detail = error
    else:
        detail = json.dumps(error)
    return detail[:ERROR_DETAIL_LIMIT]


def extract_openai_text(payload: Any) -> str:
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            text = "\n".join(
                block["text"]
                for block in content
                if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"]
            ).strip()
            if text:
                return text
    return json.dumps(payload)


def extract_anthropic_text(payload: Any) -> str:
    content = payload.get("content") if isinstance(payload, dict) else None
    if isinstance(content, list):
        text = "\n".join(
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
            and block["text"]
        ).strip()
        if text:
            return text
    return json.dumps(payload)


async def invoke_tool(request: BackendRequest, name: str, arguments: dict[str, Any]) -> str:
    """Run one tool invocation through the caller's handler."""

    if request.on_tool_call is None:
        return f"Tool {name} unavailable"
    try:
        return await request.on_tool_call(name, arguments)
    except (ExecutionAborted, asyncio.CancelledError):
        raise
    except Exception as error:  # noqa: BLE001
        logger.warning("Tool %s failed: %s", name, error)
        return f"Error: {error}"


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class ChatApiExecutor:
    """Shared transport plumbing of the HTTP chat-completion families."""

    family = ""

    def __init__(
        self,
        *,
        providers: ProviderSettings,
        execution: ExecutionSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.providers = providers
        self.execution = execution
        self.transport = transport

    async def post_json(
        self,
        url: str,
        *,
        headers: dict[str, str],
        payload: dict[str, Any],
        timeout_seconds: float,
        request: BackendRequest,
    ) -> tuple[int, Any]:
        """POST ``payload`` and return status plus decoded body.

        Non-success bodies that are not JSON come back as their raw text.
        Raises ``httpx.HTTPError`` or ``ValueError`` when no usable response
        arrived, and ``ExecutionAborted`` when the run signal fires.
        """

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=self.transport,
        ) as client:
            call = client.post(url, headers=headers, json=payload)
            if request.signal is not None:
                response = await request.signal.guard(call)
            else:
                response = await call
            if response.is_success:
                return response.status_code, response.json()
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text[:ERROR_DETAIL_LIMIT] or response.reason_phrase
            return response.status_code, body

    def status_failure(self, status_code: int, payload: Any, *, started: float) -> ExecutionResult:
        """Result for a remote response with a non-success status."""

        return failure_result(
            f"{self.family} API {status_code}: {extract_api_error(payload)}",
            started=started,
        )


class OpenAiExecutor(ChatApiExecutor):
    """OpenAI-compatible ``/chat/completions`` executor."""

    family = "OpenAI"

    def _api_key(self, request: BackendRequest) -> str:
        return (request.api_key or self.providers.openai_api_key or "").strip()

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    @property
    def _url(self) -> str:
        return f"{self.providers.openai_base_url.rstrip('/')}/chat/completions"

    async def run(self, request: BackendRequest, *, model: str) -> ExecutionResult:
        api_key = self._api_key(request)
        if not api_key:
            return failure_result(
                'Error: Missing OpenAI API key. Set room credential "openai_api_key" '
                "or OPENAI_API_KEY.",
            )
        if request.wants_tools:
            return await self._run_tool_loop(request, model=model, api_key=api_key)
        return await self._run_single(request, model=model, api_key=api_key)

    async def _run_single(
        self,
        request: BackendRequest,
        *,
        model: str,
        api_key: str,
    ) -> ExecutionResult:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        started = time.monotonic()
        try:
            status, payload = await self.post_json(
                self._url,
                headers=self._headers(api_key),
                payload={"model": model, "messages": messages},
                timeout_seconds=request.timeout_seconds or self.execution.http_timeout_seconds,
                request=request,
            )
        except (httpx.HTTPError, ValueError) as error:
            return request_failure(error, started=started)
        if not 200 <= status < 300:
            return self.status_failure(status, payload, started=started)

        usage = TokenUsage()
        _add_openai_usage(usage, payload)
        output = extract_openai_text(payload)
        request.observer.on_event(ResultEvent(_truncate(output, 2000)))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
            usage=usage,
        )

    async def _run_tool_loop(
        self,
        request: BackendRequest,
        *,
        model: str,
        api_key: str,
    ) -> ExecutionResult:
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
        started = time.monotonic()

        for _turn in range(request.max_turns or DEFAULT_MAX_TURNS):
            try:
                status, payload = await self.post_json(
                    self._url,
                    headers=self._headers(api_key),
                    payload={"model": model, "messages": messages, "tools": tools},
                    timeout_seconds=request.timeout_seconds
                    or self.execution.tool_loop_timeout_seconds,
                    request=request,
                )
            except (httpx.HTTPError, ValueError) as error:
                return request_failure(error, started=started)
            if not 200 <= status < 300:
                return self.status_failure(status, payload, started=started)

            _add_openai_usage(usage, payload)
            choices = payload.get("choices") if isinstance(payload, dict) else None
            message = choices[0].get("message") if isinstance(choices, list) and choices else None
            if not isinstance(message, dict):
                break
            tool_calls = message.get("tool_calls") or []
            if not tool_calls:
                content = message.get("content")
                final_output = content if isinstance(content, str) else ""
                break

            messages.append(
                {"role": "assistant", "content": message.get("content"), "tool_calls": tool_calls},
            )
            for call in tool_calls:
                function = call.get("function") or {}
                name = str(function.get("name") or "tool")
                step += 1
                request.observer.on_event(ToolCall(f"Step {step}: Using {name}"))
                arguments = parse_tool_arguments(function.get("arguments"))
                result = await invoke_tool(request, name, arguments)
                request.observer.on_event(ToolResult(_truncate(result, 500)))
                messages.append({"role": "tool", "tool_call_id": call.get("id"), "content": result})

            if request.on_session_update is not None:
                request.on_session_update([m for m in messages if m.get("role") != "system"])

        output = final_output or COMPLETED_WITHOUT_TEXT
        request.observer.on_event(ResultEvent(_truncate(output, 2000)))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
            usage=usage,
        )


class AnthropicExecutor(ChatApiExecutor):
    """Anthropic ``/messages`` executor."""

    family = "Anthropic"

    def _api_key(self, request: BackendRequest) -> str:
        return (request.api_key or self.providers.anthropic_api_key or "").strip()

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.providers.anthropic_version,
            "content-type": "application/json",
        }

    @property
    def _url(self) -> str:
        return f"{self.providers.anthropic_base_url.rstrip('/')}/messages"

    async def run(self, request: BackendRequest, *, model: str) -> ExecutionResult:
        api_key = self._api_key(request)
        if not api_key:
            return failure_result(
                'Error: Missing Anthropic API key. Set room credential "anthropic_api_key" '
                "or ANTHROPIC_API_KEY.",
            )
        if request.wants_tools:
            return await self._run_tool_loop(request, model=model, api_key=api_key)
        return await self._run_single(request, model=model, api_key=api_key)

    def _body(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str | None,
        **extra: Any,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"model": model, "max_tokens": max_tokens}
        if system:
            body["system"] = system
        body.update(extra)
        return body

    async def _run_single(
        self,
        request: BackendRequest,
        *,
        model: str,
        api_key: str,
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            status, payload = await self.post_json(
                self._url,
                headers=self._headers(api_key),
                payload=self._body(
                    model=model,
                    max_tokens=ANTHROPIC_SINGLE_TURN_MAX_TOKENS,
                    system=request.system_prompt,
                    messages=[{"role": "user", "content": request.prompt}],
                ),
                timeout_seconds=request.timeout_seconds or self.execution.http_timeout_seconds,
                request=request,
            )
        except (httpx.HTTPError, ValueError) as error:
            return request_failure(error, started=started)
        if not 200 <= status < 300:
            return self.status_failure(status, payload, started=started)

        usage = TokenUsage()
        _add_anthropic_usage(usage, payload)
        output = extract_anthropic_text(payload)
        request.observer.on_event(ResultEvent(_truncate(output, 2000)))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
            usage=usage,
        )

    async def _run_tool_loop(
        self,
        request: BackendRequest,
        *,
        model: str,
        api_key: str,
    ) -> ExecutionResult:
        previous = list(request.previous_messages)
        messages: list[dict[str, Any]] = [
            *previous,
            {
                "role": "user",
                "content": new_cycle_prompt(request.prompt) if previous else request.prompt,
            },
        ]
        tools = [tool.to_anthropic() for tool in request.tools]
        usage = TokenUsage()
        final_output = ""
        step = 0
        started = time.monotonic()

        for _turn in range(request.max_turns or DEFAULT_MAX_TURNS):
            try:
                status, payload = await self.post_json(
                    self._url,
                    headers=self._headers(api_key),
                    payload=self._body(
                        model=model,
                        max_tokens=ANTHROPIC_TOOL_LOOP_MAX_TOKENS,
                        system=request.system_prompt,
                        tools=tools,
                        messages=messages,
                    ),
                    timeout_seconds=request.timeout_seconds
                    or self.execution.tool_loop_timeout_seconds,
                    request=request,
                )
            except (httpx.HTTPError, ValueError) as error:
                return request_failure(error, started=started)
            if not 200 <= status < 300:
                return self.status_failure(status, payload, started=started)

            _add_anthropic_usage(usage, payload)
            content = payload.get("content") if isinstance(payload, dict) else None
            blocks = [block for block in content or [] if isinstance(block, dict)]
            tool_uses = [block for block in blocks if block.get("type") == "tool_use"]
            if not tool_uses or payload.get("stop_reason") != "tool_use":
                final_output = "\n".join(
                    str(block.get("text") or "") for block in blocks if block.get("type") == "text"
                ).strip()
                break

            messages.append({"role": "assistant", "content": blocks})
            results: list[dict[str, Any]] = []
            for block in tool_uses:
                name = str(block.get("name") or "")
                step += 1
                request.observer.on_event(ToolCall(f"Step {step}: Using {name or 'tool'}"))
                result = await invoke_tool(request, name, parse_tool_arguments(block.get("input")))
                request.observer.on_event(ToolResult(_truncate(result, 500)))
                results.append(
                    {"type": "tool_result", "tool_use_id": block.get("id"), "content": result},
                )
            messages.append({"role": "user", "content": results})

            if request.on_session_update is not None:
                request.on_session_update(list(messages))

        output = final_output or COMPLETED_WITHOUT_TEXT
        request.observer.on_event(ResultEvent(_truncate(output, 2000)))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
            usage=usage,
        )


def _add_openai_usage(usage: TokenUsage, payload: Any) -> None:
    raw = payload.get("usage") if isinstance(payload, dict) else None
    if isinstance(raw, dict):
        usage.add(
            input_tokens=raw.get("prompt_tokens"),
            output_tokens=raw.get("completion_tokens"),
        )


def _add_anthropic_usage(usage: TokenUsage, payload: Any) -> None:
    raw = payload.get("usage") if isinstance(payload, dict) else None
    if isinstance(raw, dict):
        usage.add(input_tokens=raw.get("input_tokens"), output_tokens=raw.get("output_tokens"))
