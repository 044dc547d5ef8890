from __future__ import annotations

import json

import allure
import httpx
import pytest

from task_engine.config import Settings
from task_engine.engine.backend.base import BackendRequest
from task_engine.engine.backend.dispatcher import BackendDispatcher, build_compaction_prompt

pytestmark = [
    allure.epic("Backends"),
    allure.feature("Dispatch"),
]


@pytest.mark.asyncio
async def test_unroutable_model_becomes_failed_result(settings: Settings) -> None:
    dispatcher = BackendDispatcher(settings)

    result = await dispatcher.execute(BackendRequest(prompt="hi", model="station:3"))

    assert result.exit_code == 1
    assert result.stderr.startswith("Error: Invalid model identifier 'station:3'")


@pytest.mark.asyncio
async def test_requests_are_routed_by_model_prefix(settings: Settings) -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "api.anthropic.com":
            return httpx.Response(200, json={"content": [{"type": "text", "text": "A"}]})
        return httpx.Response(200, json={"choices": [{"message": {"content": "O"}}]})

    dispatcher = BackendDispatcher(settings, transport=httpx.MockTransport(handler))

    openai = await dispatcher.execute(BackendRequest(prompt="hi", model="openai:gpt-4o"))
    anthropic = await dispatcher.execute(
        BackendRequest(prompt="hi", model="anthropic:claude-3-haiku"),
    )

    assert (openai.stdout, anthropic.stdout) == ("O", "A")
    assert hosts == ["api.openai.com", "api.anthropic.com"]


@pytest.mark.asyncio
async def test_compaction_is_skipped_for_cli_and_invalid_models(settings: Settings) -> None:
    dispatcher = BackendDispatcher(settings)
    history = [{"role": "user", "content": "x"}]

    assert await dispatcher.compact_session("claude", history) is None
    assert await dispatcher.compact_session("codex:gpt-5", history) is None
    assert await dispatcher.compact_session("nonsense:", history) is None


@pytest.mark.asyncio
async def test_compaction_uses_same_backend_family(settings: Settings) -> None:
    prompts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        prompts.append(body["messages"][-1]["content"])
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": ' {"session_summary": "s"} '}}]},
        )

    dispatcher = BackendDispatcher(settings, transport=httpx.MockTransport(handler))

    summary = await dispatcher.compact_session(
        "openai:gpt-4o",
        [{"role": "user", "content": "plan"}, {"role": "assistant", "content": [{"t": 1}]}],
    )

    assert summary == '{"session_summary": "s"}'
    assert "[user]: plan" in prompts[0]
    assert '[assistant]: [{"t": 1}]' in prompts[0]


@pytest.mark.asyncio
async def test_failed_compaction_returns_none(settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "server"}})

    dispatcher = BackendDispatcher(settings, transport=httpx.MockTransport(handler))
    history = [{"role": "user", "content": "x"}]

    assert await dispatcher.compact_session("openai:gpt-4o", history) is None


def test_compaction_prompt_truncates_long_messages() -> None:
    prompt = build_compaction_prompt([{"role": "user", "content": "z" * 5000}])

    assert "z" * 2000 in prompt
    assert "z" * 2001 not in prompt


@pytest.mark.asyncio
async def test_streaming_request_reaches_ollama_ndjson_endpoint(settings: Settings) -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        bodies.append(json.loads(request.content))
        lines = [{"message": {"content": "par"}}, {"message": {"content": "tial"}, "done": True}]
        return httpx.Response(200, content="\n".join(json.dumps(line) for line in lines))

    dispatcher = BackendDispatcher(settings, transport=httpx.MockTransport(handler))

    result = await dispatcher.execute(
        BackendRequest(prompt="hi", model="ollama:llama3", stream=True),
    )

    assert result.stdout == "partial"
    assert bodies[0]["stream"] is True
