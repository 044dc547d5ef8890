from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest

from task_engine.config import Settings
from task_engine.engine.backend.base import BackendContext, BackendRequest
from task_engine.engine.backend.cli_backend import (
    CLAUDE_NOT_FOUND_MESSAGE,
    ClaudeCliExecutor,
    ClaudeStreamParser,
    CodexStreamParser,
    build_claude_args,
    build_codex_args,
    build_codex_prompt,
)
from task_engine.engine.cancellation import AbortSignal, ExecutionAborted
from task_engine.engine.events import (
    AssistantText,
    ProgressUpdate,
    RecordingObserver,
    ResultEvent,
    ToolCall,
)

pytestmark = [
    allure.epic("Backends"),
    allure.feature("CLI Agents"),
]


def _claude(settings: Settings, context: BackendContext | None = None) -> ClaudeCliExecutor:
    return ClaudeCliExecutor(
        context=context or BackendContext(),
        settings=settings.execution,
        executable=settings.providers.claude_executable,
    )


def test_build_claude_args_includes_optional_flags() -> None:
    request = BackendRequest(
        prompt="Do it",
        resume_session_id="sess-1",
        system_prompt="You are terse",
        max_turns=3,
        allowed_tools="Read,Write",
        disallowed_tools="Bash",
    )

    assert build_claude_args(request, model="sonnet") == [
        "-p",
        "Do it",
        "--output-format",
        "stream-json",
        "--verbose",
        "--resume",
        "sess-1",
        "--system-prompt",
        "You are terse",
        "--model",
        "sonnet",
        "--max-turns",
        "3",
        "--allowedTools",
        "Read,Write",
        "--disallowedTools",
        "Bash",
    ]


def test_build_codex_args_for_fresh_and_resumed_sessions() -> None:
    fresh = build_codex_args(BackendRequest(prompt="p", system_prompt="s"), model="gpt-5")
    resumed = build_codex_args(BackendRequest(prompt="p", resume_session_id="t-1"), model=None)

    assert fresh == [
        "exec",
        "--json",
        "--model",
        "gpt-5",
        "--skip-git-repo-check",
        build_codex_prompt("s", "p"),
    ]
    assert resumed == ["exec", "resume", "--json", "--skip-git-repo-check", "t-1", "p"]


def test_claude_stream_parser_emits_events_and_ignores_noise() -> None:
    observer = RecordingObserver()
    parser = ClaudeStreamParser(observer)

    for line in [
        "",
        "not json",
        "[1, 2]",
        '{"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"},'
        ' {"type": "tool_use", "name": "WebSearch"}]}}',
        '{"type": "result", "result": "All done", "session_id": "abc"}',
    ]:
        parser.feed_line(line)

    assert observer.events == [
        AssistantText("Hi"),
        ToolCall("Step 1: Using WebSearch"),
        ResultEvent("All done"),
    ]
    assert observer.progress == [
        ProgressUpdate(None, "Step 1: Using WebSearch..."),
        ProgressUpdate(1.0, "Completed"),
    ]
    assert parser.result_text == "All done"
    assert parser.session_id == "abc"


def test_codex_stream_parser_collects_thread_and_messages() -> None:
    observer = RecordingObserver()
    parser = CodexStreamParser(observer)

    parser.feed_line('{"type": "thread.started", "thread_id": "th-9"}')
    parser.feed_line('{"type": "item.completed", "item": {"type": "reasoning", "text": "x"}}')
    parser.feed_line('{"type": "item.completed", "item": {"type": "agent_message", "text": "A"}}')

    assert parser.session_id == "th-9"
    assert parser.parts == ["A"]


@pytest.mark.asyncio
async def test_claude_executor_runs_echo_agent(settings: Settings, echo_claude: Path) -> None:
    observer = RecordingObserver()

    result = await _claude(settings).run(
        BackendRequest(prompt="context\n\nSay hello", observer=observer),
    )

    assert result.succeeded
    assert result.stdout == "echo: Say hello"
    assert result.session_id == "echo-session"
    assert AssistantText("Working on it") in observer.events
    assert ToolCall("Step 1: Using Read") in observer.events


@pytest.mark.asyncio
async def test_claude_executor_reports_exit_code_and_stderr(
    settings: Settings,
    echo_claude: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASK_ENGINE_ECHO_EXIT_CODE", "3")
    monkeypatch.setenv("TASK_ENGINE_ECHO_STDERR", "model overloaded")

    result = await _claude(settings).run(BackendRequest(prompt="hi"))

    assert result.exit_code == 3
    assert result.stderr == "model overloaded"
    assert not result.timed_out


@pytest.mark.asyncio
async def test_claude_executor_times_out_and_kills_process(
    settings: Settings,
    echo_claude: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASK_ENGINE_ECHO_SLEEP", "30")

    result = await _claude(settings).run(BackendRequest(prompt="hi", timeout_seconds=0.5))

    assert result.timed_out
    assert not result.succeeded
    assert result.duration_ms < 20_000


@pytest.mark.asyncio
async def test_claude_executor_abort_terminates_process(
    settings: Settings,
    echo_claude: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TASK_ENGINE_ECHO_SLEEP", "30")
    signal = AbortSignal()

    async def abort_soon() -> None:
        await asyncio.sleep(0.3)
        signal.abort()

    aborter = asyncio.create_task(abort_soon())
    with pytest.raises(ExecutionAborted):
        await _claude(settings).run(BackendRequest(prompt="hi", signal=signal))
    await aborter


@pytest.mark.asyncio
async def test_missing_executable_reports_not_found(settings: Settings, tmp_path: Path) -> None:
    settings.providers.claude_executable = str(tmp_path / "does-not-exist")

    result = await _claude(settings).run(BackendRequest(prompt="hi"))

    assert result.exit_code == 1
    assert result.stderr == CLAUDE_NOT_FOUND_MESSAGE


@pytest.mark.asyncio
async def test_resolved_executable_is_cached_on_context(
    settings: Settings,
    echo_claude: Path,
) -> None:
    context = BackendContext()

    await _claude(settings, context).run(BackendRequest(prompt="hi"))

    assert context.executables["claude"] == str(echo_claude)
