"""Subprocess executors for CLI agents streaming JSON events."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from task_engine.config import ExecutionSettings
from task_engine.engine.backend.base import (
    BackendContext,
    BackendRequest,
    ExecutionResult,
    elapsed_ms,
    failure_result,
)
from task_engine.engine.cancellation import ExecutionAborted
from task_engine.engine.events import (
    AssistantText,
    ExecutionObserver,
    ProgressUpdate,
    ResultEvent,
    ToolCall,
    ToolResult,
)

logger = logging.getLogger(__name__)

CLAUDE_NOT_FOUND_MESSAGE = (
    "Claude CLI not found. Install from https://docs.anthropic.com/en/docs/claude-code"
)
CODEX_NOT_FOUND_MESSAGE = "Codex CLI not found. Install it and make sure `codex` is on PATH."
_STREAM_LINE_LIMIT = 16 * 1024 * 1024
_LOOKUP_TIMEOUT_SECONDS = 5.0


def claude_candidate_paths(*, home: Path | None = None, platform: str | None = None) -> list[Path]:
    """Well-known install locations of the Claude CLI."""

    home = home or Path.home()
    if (platform or sys.platform) == "win32":
        return [
            home / ".claude" / "bin" / "claude.exe",
            home / "AppData" / "Local" / "Programs" / "claude-code" / "claude.exe",
            home / "AppData" / "Local" / "Claude" / "claude.exe",
            home / "AppData" / "Local" / "Microsoft" / "WinGet" / "Links" / "claude.exe",
            Path("C:\\Program Files\\Claude\\claude.exe"),
        ]
    return [
        home / ".local" / "bin" / "claude",
        home / ".claude" / "bin" / "claude",
        Path("/usr/local/bin/claude"),
        Path("/usr/bin/claude"),
        Path("/snap/bin/claude"),
        Path("/opt/homebrew/bin/claude"),
    ]


class ExecutableResolver:
    """Locate CLI executables and cache the first hit on the backend context."""

    def __init__(self, context: BackendContext) -> None:
        self.context = context

    async def resolve(
        self,
        name: str,
        *,
        override: str | None = None,
        candidates: list[Path] | None = None,
    ) -> str | None:
        cached = self.context.executables.get(name)
        if cached:
            return cached
        resolved = await self._lookup(name, override=override, candidates=candidates or [])
        if resolved:
            self.context.executables[name] = resolved
        return resolved

    async def _lookup(
        self,
        name: str,
        *,
        override: str | None,
        candidates: list[Path],
    ) -> str | None:
        if override:
            override_path = Path(override).expanduser()
            if override_path.is_file():
                return str(override_path)
            return shutil.which(override)
        for candidate in candidates:
            if candidate.is_file():
                return str(candidate)
        found = shutil.which(name)
        if found:
            return found
        if sys.platform == "win32":
            return await _first_existing_line(["where", name])
        for shell in ("/bin/zsh", "/bin/bash"):
            if not Path(shell).exists():
                continue
            resolved = await _first_existing_line([shell, "-l", "-c", f"which {name}"])
            if resolved:
                return resolved
        return None


async def _first_existing_line(argv: list[str]) -> str | None:
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return None
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), _LOOKUP_TIMEOUT_SECONDS)
    except TimeoutError:
        await _terminate_process(process, grace_seconds=0.5)
        return None
    if process.returncode != 0:
        return None
    lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
    if not lines:
        return None
    first = lines[0].strip()
    return first if first and Path(first).exists() else None


@dataclass(slots=True)
class ProcessOutcome:
    """Raw outcome of one streamed subprocess."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: int


@dataclass(slots=True)
class _StreamState:
    stdout_chunks: list[str] = field(default_factory=list)
    stderr_chunks: list[str] = field(default_factory=list)


async def run_streaming_process(  # noqa: PLR0913
    argv: list[str],
    *,
    timeout_seconds: float,
    kill_grace_seconds: float,
    on_line: Callable[[str], None],
    request: BackendRequest,
    label: str,
) -> ProcessOutcome | ExecutionResult:
    """Spawn ``argv`` and feed each stdout line to ``on_line``.

    Returns an ``ExecutionResult`` right away for spawn and pipe failures.
    On timeout the process gets SIGTERM, then SIGKILL after the grace window.
    """

    started = time.monotonic()
    env = os.environ.copy()
    env.pop("ELECTRON_RUN_AS_NODE", None)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(Path.home()),
            env=env,
            limit=_STREAM_LINE_LIMIT,
        )
    except FileNotFoundError:
        raise
    except OSError as error:
        return failure_result(f"Failed to spawn {label}: {error}", started=started)

    if process.stdout is None or process.stderr is None:
        await _terminate_process(process, grace_seconds=kill_grace_seconds)
        return failure_result(
            f"Failed to create stdio pipes for {label} (bad file descriptor)",
            started=started,
        )

    state = _StreamState()
    stdout_reader = process.stdout
    stderr_reader = process.stderr

    async def pump_stdout() -> None:
        async for raw in stdout_reader:
            line = raw.decode("utf-8", errors="replace")
            state.stdout_chunks.append(line)
            on_line(line)

    async def pump_stderr() -> None:
        async for raw in stderr_reader:
            state.stderr_chunks.append(raw.decode("utf-8", errors="replace"))

    async def communicate() -> int:
        await asyncio.gather(pump_stdout(), pump_stderr())
        return await process.wait()

    timed_out = False
    try:
        if request.signal is not None:
            await request.signal.guard(asyncio.wait_for(communicate(), timeout_seconds))
        else:
            await asyncio.wait_for(communicate(), timeout_seconds)
    except TimeoutError:
        timed_out = True
        logger.warning("%s timed out after %.0fs; terminating", label, timeout_seconds)
        await _terminate_process(process, grace_seconds=kill_grace_seconds)
    except (ExecutionAborted, asyncio.CancelledError):
        await _terminate_process(process, grace_seconds=kill_grace_seconds)
        raise

    returncode = process.returncode
    return ProcessOutcome(
        exit_code=returncode if returncode is not None and returncode >= 0 else None,
        stdout="".join(state.stdout_chunks),
        stderr="".join(state.stderr_chunks),
        timed_out=timed_out,
        duration_ms=elapsed_ms(started),
    )


async def _terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class ClaudeStreamParser:
    """Translate Claude CLI stream-json lines into execution events."""

    def __init__(self, observer: ExecutionObserver) -> None:
        self.observer = observer
        self.tool_call_count = 0
        self.result_text = ""
        self.session_id: str | None = None

    def feed_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return
        event_type = event.get("type")
        if event_type == "assistant":
            self._on_assistant(event)
        elif event_type == "result":
            self._on_result(event)

    def _on_assistant(self, event: dict[str, Any]) -> None:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and isinstance(block.get("text"), str):
                self.observer.on_event(AssistantText(_truncate(block["text"], 2000)))
            elif block_type == "tool_use":
                self.tool_call_count += 1
                tool_name = block.get("name") or "tool"
                step = f"Step {self.tool_call_count}: Using {tool_name}"
                self.observer.on_event(ToolCall(step))
                self.observer.on_progress(ProgressUpdate(None, f"{step}..."))
            elif block_type == "tool_result":
                raw = block.get("content")
                text = raw if isinstance(raw, str) else json.dumps(raw if raw is not None else "")
                self.observer.on_event(ToolResult(_truncate(text, 500)))

    def _on_result(self, event: dict[str, Any]) -> None:
        result = event.get("result")
        if result:
            self.result_text = str(result)
        session_id = event.get("session_id")
        if session_id:
            self.session_id = str(session_id)
        self.observer.on_event(ResultEvent(_truncate(str(result or ""), 2000)))
        self.observer.on_progress(ProgressUpdate(1.0, "Completed"))


def build_claude_args(request: BackendRequest, *, model: str | None) -> list[str]:
    args = ["-p", request.prompt, "--output-format", "stream-json", "--verbose"]
    if request.resume_session_id:
        args += ["--resume", request.resume_session_id]
    if request.system_prompt:
        args += ["--system-prompt", request.system_prompt]
    if model:
        args += ["--model", model]
    if request.max_turns:
        args += ["--max-turns", str(request.max_turns)]
    if request.allowed_tools:
        args += ["--allowedTools", request.allowed_tools]
    if request.disallowed_tools:
        args += ["--disallowedTools", request.disallowed_tools]
    return args


class ClaudeCliExecutor:
    """Run the Claude CLI in stream-json mode."""

    def __init__(
        self,
        *,
        context: BackendContext,
        settings: ExecutionSettings,
        executable: str | None = None,
    ) -> None:
        self.resolver = ExecutableResolver(context)
        self.settings = settings
        self.executable = executable

    async def run(self, request: BackendRequest, *, model: str | None = None) -> ExecutionResult:
        started = time.monotonic()
        path = await self.resolver.resolve(
            "claude",
            override=self.executable,
            candidates=claude_candidate_paths(),
        )
        if path is None:
            return failure_result(CLAUDE_NOT_FOUND_MESSAGE, started=started)

        parser = ClaudeStreamParser(request.observer)
        try:
            outcome = await run_streaming_process(
                [path, *build_claude_args(request, model=model)],
                timeout_seconds=request.timeout_seconds or self.settings.cli_timeout_seconds,
                kill_grace_seconds=self.settings.kill_grace_seconds,
                on_line=parser.feed_line,
                request=request,
                label="Claude CLI",
            )
        except FileNotFoundError:
            return failure_result(CLAUDE_NOT_FOUND_MESSAGE, started=started)
        if isinstance(outcome, ExecutionResult):
            return outcome

        stdout = parser.result_text.strip() if parser.result_text else outcome.stdout.strip()
        return ExecutionResult(
            stdout=stdout,
            stderr=outcome.stderr.strip(),
            exit_code=outcome.exit_code if outcome.exit_code is not None else 1,
            duration_ms=outcome.duration_ms,
            timed_out=outcome.timed_out,
            session_id=parser.session_id,
        )


def build_codex_prompt(system_prompt: str | None, prompt: str) -> str:
    if not system_prompt:
        return prompt
    return f"System instructions:\n{system_prompt}\n\nUser request:\n{prompt}"


def build_codex_args(request: BackendRequest, *, model: str | None) -> list[str]:
    prompt = build_codex_prompt(request.system_prompt, request.prompt)
    if request.resume_session_id:
        args = [
            "exec",
            "resume",
            "--json",
            "--skip-git-repo-check",
            request.resume_session_id,
            prompt,
        ]
    else:
        args = ["exec", "--json", "--skip-git-repo-check", prompt]
    if model:
        args[2:2] = ["--model", model]
    return args


class CodexStreamParser:
    """Collect thread id and agent messages from ``codex exec --json``."""

    def __init__(self, observer: ExecutionObserver, *, session_id: str | None = None) -> None:
        self.observer = observer
        self.session_id = session_id
        self.parts: list[str] = []

    def feed_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return
        event_type = event.get("type")
        if event_type == "thread.started" and isinstance(event.get("thread_id"), str):
            self.session_id = event["thread_id"]
            return
        if event_type == "item.completed":
            item = event.get("item")
            if (
                isinstance(item, dict)
                and item.get("type") == "agent_message"
                and isinstance(item.get("text"), str)
            ):
                self.parts.append(item["text"])
                self.observer.on_event(AssistantText(_truncate(item["text"], 2000)))


class CodexCliExecutor:
    """Run ``codex exec`` with JSON event output."""

    def __init__(
        self,
        *,
        context: BackendContext,
        settings: ExecutionSettings,
        executable: str | None = None,
        default_timeout_seconds: float = 300.0,
    ) -> None:
        self.resolver = ExecutableResolver(context)
        self.settings = settings
        self.executable = executable
        self.default_timeout_seconds = default_timeout_seconds

    async def run(self, request: BackendRequest, *, model: str | None = None) -> ExecutionResult:
        started = time.monotonic()
        path = await self.resolver.resolve("codex", override=self.executable)
        if path is None:
            return failure_result(CODEX_NOT_FOUND_MESSAGE, started=started)

        parser = CodexStreamParser(request.observer, session_id=request.resume_session_id)
        try:
            outcome = await run_streaming_process(
                [path, *build_codex_args(request, model=model)],
                timeout_seconds=request.timeout_seconds or self.default_timeout_seconds,
                kill_grace_seconds=self.settings.kill_grace_seconds,
                on_line=parser.feed_line,
                request=request,
                label="codex CLI",
            )
        except FileNotFoundError:
            return failure_result(CODEX_NOT_FOUND_MESSAGE, started=started)
        if isinstance(outcome, ExecutionResult):
            return outcome

        output = (
            "\n\n".join(parser.parts).strip() or outcome.stderr.strip() or outcome.stdout.strip()
        )
        if outcome.exit_code is not None:
            exit_code = outcome.exit_code
        else:
            exit_code = 124 if outcome.timed_out else 1
        return ExecutionResult(
            stdout=output,
            stderr=outcome.stderr.strip(),
            exit_code=exit_code,
            duration_ms=outcome.duration_ms,
            timed_out=outcome.timed_out,
            session_id=parser.session_id,
        )
