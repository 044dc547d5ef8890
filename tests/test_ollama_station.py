from __future__ import annotations

import base64
import json
from typing import Any

import allure
import httpx
import pytest

from task_engine.config import Settings
from task_engine.engine.backend.base import BackendContext, BackendRequest, ToolDefinition
from task_engine.engine.backend.ollama_backend import OllamaExecutor
from task_engine.engine.backend.routing import parse_model_identifier
from task_engine.engine.backend.station import (
    StationExecutor,
    build_api_command,
    build_ollama_command,
)
from task_engine.engine.rate_limit import detect_rate_limit

pytestmark = [
    allure.epic("Backends"),
    allure.feature("Local Daemon and Stations"),
]


def _ollama(settings: Settings, handler, context: BackendContext | None = None) -> OllamaExecutor:
    return OllamaExecutor(
        context=context or BackendContext(),
        providers=settings.providers,
        execution=settings.execution,
        transport=httpx.MockTransport(handler),
    )


def _station(settings: Settings, handler) -> StationExecutor:
    return StationExecutor(providers=settings.providers, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_ollama_unavailable_daemon_fails_fast(settings: Settings) -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    context = BackendContext()
    executor = _ollama(settings, handler, context)
    first = await executor.run(BackendRequest(prompt="hi"), model="llama3")
    second = await executor.run(BackendRequest(prompt="hi"), model="llama3")

    assert first.stderr == "Error: Ollama is not running at http://ollama.test"
    assert second.exit_code == 1
    assert paths == ["/api/tags"]
    assert context.cached_daemon_availability() is False


@pytest.mark.asyncio
async def test_ollama_single_turn(settings: Settings) -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "message": {"role": "assistant", "content": "Local answer"},
                "prompt_eval_count": 9,
                "eval_count": 4,
            },
        )

    result = await _ollama(settings, handler).run(
        BackendRequest(prompt="hi", system_prompt="sys"),
        model="llama3",
    )

    assert result.stdout == "Local answer"
    assert result.usage is not None
    assert result.usage.total_tokens == 13
    assert bodies[0]["stream"] is False
    assert bodies[0]["messages"][0] == {"role": "system", "content": "sys"}


@pytest.mark.asyncio
async def test_ollama_http_error_is_reported(settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        return httpx.Response(404, text='{"error":"model \\"nope\\" not found"}')

    result = await _ollama(settings, handler).run(BackendRequest(prompt="hi"), model="nope")

    assert result.exit_code == 1
    assert result.stderr.startswith("Error: Ollama HTTP 404:")
    assert "not found" in result.stderr


@pytest.mark.asyncio
async def test_ollama_streaming_accumulates_fragments(settings: Settings) -> None:
    lines = [
        {"message": {"content": "Hel"}, "done": False},
        {"message": {"content": "lo"}, "done": False},
        {"message": {"content": ""}, "done": True},
        {"message": {"content": "ignored"}, "done": False},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        body = "\n".join(json.dumps(line) for line in lines) + "\n"
        return httpx.Response(200, content=body.encode("utf-8"))

    result = await _ollama(settings, handler).run(
        BackendRequest(prompt="hi", stream=True),
        model="llama3",
    )

    assert result.stdout == "Hello"


@pytest.mark.asyncio
async def test_ollama_tool_loop_uses_tool_role_messages(settings: Settings) -> None:
    bodies: list[dict[str, Any]] = []
    replies = [
        {
            "message": {
                "content": "",
                "tool_calls": [{"function": {"name": "lookup", "arguments": {"q": "x"}}}],
            },
        },
        {"message": {"content": "Finished"}},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=replies.pop(0))

    async def on_tool_call(name: str, arguments: dict[str, Any]) -> str:
        return f"{name} got {arguments['q']}"

    result = await _ollama(settings, handler).run(
        BackendRequest(
            prompt="go",
            tools=[ToolDefinition(name="lookup", description="d")],
            on_tool_call=on_tool_call,
        ),
        model="llama3",
    )

    assert result.stdout == "Finished"
    assert bodies[1]["messages"][-1] == {"role": "tool", "content": "lookup got x"}


def test_station_commands_carry_base64_payloads() -> None:
    payload = {"model": "llama3", "messages": [{"role": "user", "content": "it's \"quoted\""}]}
    command = build_ollama_command(payload)
    encoded = command.split()[1]

    assert json.loads(base64.b64decode(encoded)) == payload
    assert command.endswith("curl -s --max-time 300 http://localhost:11434/api/chat -d @-")

    api_command = build_api_command(
        url="https://api.openai.com/v1/chat/completions",
        headers={"Authorization": "Bearer sk-1"},
        payload=payload,
    )
    assert "-H 'Authorization: Bearer sk-1'" in api_command
    assert api_command.endswith("-d @- https://api.openai.com/v1/chat/completions")


@pytest.mark.asyncio
async def test_station_ollama_round_trip(settings: Settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        stdout = json.dumps({"message": {"content": "from station"}})
        return httpx.Response(200, json={"stdout": stdout, "stderr": "", "exitCode": 0})

    result = await _station(settings, handler).run(
        BackendRequest(prompt="hi"),
        parse_model_identifier("station:4:ollama:llama3"),
    )

    body = json.loads(seen[0].content)
    assert seen[0].url == "http://station.test/stations/4/exec"
    assert body["timeout"] == 360
    assert "base64 -d" in body["command"]
    assert result.stdout == "from station"
    assert result.succeeded


@pytest.mark.asyncio
async def test_station_unreachable(settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    result = await _station(settings, handler).run(
        BackendRequest(prompt="hi"),
        parse_model_identifier("station:4:ollama:llama3"),
    )

    assert result.exit_code == 1
    assert "station unreachable" in result.stderr


@pytest.mark.asyncio
async def test_station_nonzero_exit_and_unparsable_output(settings: Settings) -> None:
    outputs = [
        {"stdout": "", "stderr": "curl: (7) Failed to connect", "exitCode": 7},
        {"stdout": "<html>oops</html>", "stderr": "", "exitCode": 0},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=outputs.pop(0))

    executor = _station(settings, handler)
    route = parse_model_identifier("station:4:openai:gpt-4o")
    failed = await executor.run(BackendRequest(prompt="hi"), route)
    unparsed = await executor.run(BackendRequest(prompt="hi"), route)

    assert failed.exit_code == 7
    assert failed.stderr == "curl: (7) Failed to connect"
    assert unparsed.exit_code == 1
    assert unparsed.stdout == "<html>oops</html>"


@pytest.mark.asyncio
async def test_station_api_route_requires_key(settings: Settings) -> None:
    settings.providers.anthropic_api_key = ""

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = await _station(settings, handler).run(
        BackendRequest(prompt="hi"),
        parse_model_identifier("station:4:anthropic:claude-3-haiku"),
    )

    assert result.stderr == "Missing API key for station execution."


@pytest.mark.asyncio
async def test_station_relayed_provider_error_is_a_failure(settings: Settings) -> None:
    bodies = [
        {"error": {"message": "Rate limit reached for gpt-4o", "type": "requests"}},
        {"error": "model 'llama3' not found"},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"stdout": json.dumps(bodies.pop(0)), "exitCode": 0})

    executor = _station(settings, handler)
    api = await executor.run(
        BackendRequest(prompt="hi"),
        parse_model_identifier("station:4:openai:gpt-4o"),
    )
    daemon = await executor.run(
        BackendRequest(prompt="hi"),
        parse_model_identifier("station:4:ollama:llama3"),
    )

    assert api.exit_code == 1
    assert api.stdout == ""
    assert api.stderr == "OpenAI API: Rate limit reached for gpt-4o"
    assert detect_rate_limit(api) is not None
    assert daemon.exit_code == 1
    assert daemon.stderr == "Ollama API: model 'llama3' not found"
