"""Remote compute station indirection.

The inner request is serialized as JSON, base64-encoded and replayed on the
station with ``curl`` through the station exec API, so prompts never need
shell escaping.
"""

from __future__ import annotations

import base64
import json
import logging
import shlex
import time
from dataclasses import dataclass
from typing import Any

import httpx

from task_engine.config import ProviderSettings
from task_engine.engine.backend.base import (
    BackendRequest,
    ExecutionResult,
    elapsed_ms,
    failure_result,
)
from task_engine.engine.backend.http_backends import (
    ANTHROPIC_SINGLE_TURN_MAX_TOKENS,
    extract_anthropic_text,
    extract_api_error,
    extract_openai_text,
)
from task_engine.engine.backend.routing import BackendKind, ModelRoute
from task_engine.engine.events import ResultEvent

logger = logging.getLogger(__name__)

CURL_MAX_TIME_SECONDS = 300
STATION_EXEC_TIMEOUT_SECONDS = 360.0
STATION_OLLAMA_URL = "http://localhost:11434/api/chat"
OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"


@dataclass(slots=True, frozen=True)
class StationExecOutput:
    stdout: str
    stderr: str
    exit_code: int


def encode_payload(payload: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def build_ollama_command(payload: dict[str, Any]) -> str:
    return (
        f"echo {shlex.quote(encode_payload(payload))} | base64 -d | "
        f"curl -s --max-time {CURL_MAX_TIME_SECONDS} {STATION_OLLAMA_URL} -d @-"
    )


def build_api_command(*, url: str, headers: dict[str, str], payload: dict[str, Any]) -> str:
    header_flags = " ".join(
        f"-H {shlex.quote(f'{key}: {value}')}" for key, value in headers.items()
    )
    return (
        f"echo {shlex.quote(encode_payload(payload))} | base64 -d | "
        f"curl -s --max-time {CURL_MAX_TIME_SECONDS} {header_flags} -d @- {shlex.quote(url)}"
    )


def _chat_messages(request: BackendRequest) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    messages.append({"role": "user", "content": request.prompt})
    return messages


class StationExecutor:
    """Run daemon or HTTP-family inference on a remote station."""

    def __init__(
        self,
        *,
        providers: ProviderSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.providers = providers
        self.transport = transport

    async def exec_command(
        self,
        station_id: int,
        command: str,
        *,
        request: BackendRequest,
        timeout_seconds: float = STATION_EXEC_TIMEOUT_SECONDS,
    ) -> StationExecOutput | None:
        """Execute ``command`` on the station; None when it is unreachable."""

        url = f"{self.providers.station_api_url.rstrip('/')}/stations/{station_id}/exec"
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_seconds, connect=10.0),
                transport=self.transport,
            ) as client:
                call = client.post(url, json={"command": command, "timeout": int(timeout_seconds)})
                if request.signal is not None:
                    response = await request.signal.guard(call)
                else:
                    response = await call
            if not response.is_success:
                logger.warning("Station %s exec returned HTTP %s", station_id, response.status_code)
                return None
            payload = response.json()
        except (httpx.HTTPError, ValueError) as error:
            logger.warning("Station %s exec failed: %s", station_id, error)
            return None
        if not isinstance(payload, dict):
            return None
        try:
            exit_code = int(payload.get("exitCode", 1))
        except (TypeError, ValueError):
            exit_code = 1
        return StationExecOutput(
            stdout=str(payload.get("stdout") or ""),
            stderr=str(payload.get("stderr") or ""),
            exit_code=exit_code,
        )

    async def run(self, request: BackendRequest, route: ModelRoute) -> ExecutionResult:
        inner = route.inner
        if route.station_id is None or inner is None:
            return failure_result(f"Error: Invalid model identifier {route.identifier!r}")
        if inner.kind is BackendKind.OLLAMA:
            return await self._run_ollama(request, route.station_id, model=inner.model or "")
        if inner.kind in (BackendKind.OPENAI, BackendKind.ANTHROPIC):
            return await self._run_api(request, route.station_id, inner)
        return failure_result(
            f"Error: Invalid model identifier {route.identifier!r}: "
            f"{inner.kind.value} cannot run on a station",
        )

    async def _run_ollama(
        self,
        request: BackendRequest,
        station_id: int,
        *,
        model: str,
    ) -> ExecutionResult:
        started = time.monotonic()
        command = build_ollama_command(
            {"model": model, "messages": _chat_messages(request), "stream": False},
        )
        result = await self.exec_command(station_id, command, request=request)
        if result is None:
            return failure_result(
                "Error: station execution failed (station unreachable or Ollama not running)",
                started=started,
            )
        if result.exit_code != 0:
            return _exec_failure(result, started=started)
        try:
            parsed = json.loads(result.stdout)
        except json.JSONDecodeError:
            return _unparsed(result.stdout or "(no output from Ollama)", started=started)
        if _has_error(parsed):
            return _api_failure("Ollama", parsed, started=started)
        message = parsed.get("message") if isinstance(parsed, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        output = content if isinstance(content, str) else ""
        request.observer.on_event(ResultEvent(output[:2000]))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
        )

    async def _run_api(
        self,
        request: BackendRequest,
        station_id: int,
        inner: ModelRoute,
    ) -> ExecutionResult:
        started = time.monotonic()
        is_openai = inner.kind is BackendKind.OPENAI
        api_key = request.api_key or (
            self.providers.openai_api_key if is_openai else self.providers.anthropic_api_key
        )
        if not api_key:
            return failure_result("Missing API key for station execution.", started=started)

        if is_openai:
            url = OPENAI_CHAT_URL
            headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
            payload: dict[str, Any] = {"model": inner.model, "messages": _chat_messages(request)}
        else:
            url = ANTHROPIC_MESSAGES_URL
            headers = {
                "x-api-key": api_key,
                "anthropic-version": self.providers.anthropic_version,
                "content-type": "application/json",
            }
            payload = {
                "model": inner.model,
                "max_tokens": ANTHROPIC_SINGLE_TURN_MAX_TOKENS,
                "messages": [{"role": "user", "content": request.prompt}],
            }
            if request.system_prompt:
                payload["system"] = request.system_prompt

        command = build_api_command(url=url, headers=headers, payload=payload)
        result = await self.exec_command(station_id, command, request=request)
        if result is None:
            return failure_result(
                "Error: station execution failed (station unreachable)",
                started=started,
            )
        if result.exit_code != 0:
            return _exec_failure(result, started=started)
        try:
            parsed = json.loads(result.stdout)
        except json.JSONDecodeError:
            return _unparsed(result.stdout or "(no output from API)", started=started)
        if _has_error(parsed):
            return _api_failure("OpenAI" if is_openai else "Anthropic", parsed, started=started)
        output = extract_openai_text(parsed) if is_openai else extract_anthropic_text(parsed)
        request.observer.on_event(ResultEvent(output[:2000]))
        return ExecutionResult(
            stdout=output,
            stderr="",
            exit_code=0,
            duration_ms=elapsed_ms(started),
        )


def _exec_failure(result: StationExecOutput, *, started: float) -> ExecutionResult:
    message = (
        result.stderr or result.stdout or f"Station exec failed with exit code {result.exit_code}"
    )
    return ExecutionResult(
        stdout="",
        stderr=message,
        exit_code=result.exit_code,
        duration_ms=elapsed_ms(started),
    )


def _unparsed(text: str, *, started: float) -> ExecutionResult:
    return ExecutionResult(stdout=text, stderr="", exit_code=1, duration_ms=elapsed_ms(started))


def _has_error(parsed: Any) -> bool:
    return isinstance(parsed, dict) and parsed.get("error") is not None


def _api_failure(family: str, parsed: Any, *, started: float) -> ExecutionResult:
    """Failure for a provider error body relayed by a ``curl -s`` that exited 0."""

    return ExecutionResult(
        stdout="",
        stderr=f"{family} API: {extract_api_error(parsed)}",
        exit_code=1,
        duration_ms=elapsed_ms(started),
    )
