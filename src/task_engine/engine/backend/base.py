"""Backend contracts shared by every executor."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from task_engine.engine.cancellation import AbortSignal
from task_engine.engine.events import ExecutionObserver, NullObserver

ToolHandler = Callable[[str, dict[str, Any]], Awaitable[str]]
SessionUpdateHook = Callable[[list[dict[str, Any]]], None]


class BackendRunError(RuntimeError):
    """Raised when a backend cannot be set up for a run."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class TokenUsage:
    """Token counters accumulated across turns."""

    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, *, input_tokens: int | None, output_tokens: int | None) -> None:
        self.input_tokens += int(input_tokens or 0)
        self.output_tokens += int(output_tokens or 0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class ExecutionResult:
    """Normalized output of any backend executor.

    ``stdout`` carries the useful text; ``stderr`` carries diagnostics and,
    for HTTP and daemon backends, the failure message.
    """

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False
    session_id: str | None = None
    usage: TokenUsage | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return self.stdout or self.stderr


def failure_result(
    message: str,
    *,
    started: float | None = None,
    timed_out: bool = False,
) -> ExecutionResult:
    """Failed result with ``message`` as diagnostics."""

    return ExecutionResult(
        stdout="",
        stderr=message,
        exit_code=1,
        duration_ms=elapsed_ms(started) if started is not None else 0,
        timed_out=timed_out,
    )


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """Function tool offered to tool-calling backends."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass(slots=True)
class BackendRequest:
    """Everything an executor needs for one call."""

    prompt: str
    model: str = "claude"
    system_prompt: str | None = None
    resume_session_id: str | None = None
    timeout_seconds: float | None = None
    max_turns: int | None = None
    allowed_tools: str | None = None
    disallowed_tools: str | None = None
    api_key: str | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    on_tool_call: ToolHandler | None = None
    previous_messages: list[dict[str, Any]] = field(default_factory=list)
    on_session_update: SessionUpdateHook | None = None
    observer: ExecutionObserver = field(default_factory=NullObserver)
    signal: AbortSignal | None = None
    stream: bool = False

    @property
    def wants_tools(self) -> bool:
        return bool(self.tools) and self.on_tool_call is not None


class BackendContext:
    """Process-wide caches shared by executors.

    Holds resolved executable paths and the local daemon availability probe.
    """

    def __init__(self, *, daemon_probe_ttl_seconds: float = 30.0) -> None:
        self.daemon_probe_ttl_seconds = daemon_probe_ttl_seconds
        self.executables: dict[str, str] = {}
        self._daemon_available: bool | None = None
        self._daemon_checked_at = 0.0

    def cached_daemon_availability(self) -> bool | None:
        if self._daemon_available is None:
            return None
        if time.monotonic() - self._daemon_checked_at > self.daemon_probe_ttl_seconds:
            return None
        return self._daemon_available

    def remember_daemon_availability(self, available: bool) -> None:
        self._daemon_available = available
        self._daemon_checked_at = time.monotonic()

    def reset(self) -> None:
        self.executables.clear()
        self._daemon_available = None
        self._daemon_checked_at = 0.0
