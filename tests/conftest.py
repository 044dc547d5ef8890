"""Shared test fixtures."""

from __future__ import annotations

import stat
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

import task_engine
from task_engine.config import ExecutionSettings, ProviderSettings, Settings
from task_engine.engine.cancellation import AbortSignal
from task_engine.engine.repository import EngineRepository

_SRC_DIR = Path(task_engine.__file__).resolve().parents[1]


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with an isolated DB, no console batching and no progress throttle."""

    return Settings(
        db_path=tmp_path / "engine.db",
        results_dir=tmp_path / "results",
        execution=ExecutionSettings(
            console_flush_interval_seconds=0.0,
            progress_throttle_seconds=0.0,
            kill_grace_seconds=1.0,
        ),
        providers=ProviderSettings(
            openai_api_key="sk-test",
            anthropic_api_key="sk-ant-test",
            ollama_base_url="http://ollama.test",
            station_api_url="http://station.test",
        ),
    )


@pytest.fixture()
def repository(settings: Settings) -> Iterator[EngineRepository]:
    repo = EngineRepository(settings.db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def echo_claude(tmp_path: Path, settings: Settings) -> Path:
    """Point the Claude executable at the bundled echo agent."""

    shim = tmp_path / "bin" / "claude"
    shim.parent.mkdir(parents=True, exist_ok=True)
    shim.write_text(
        "#!/bin/sh\n"
        f'PYTHONPATH="{_SRC_DIR}" exec "{sys.executable}" '
        '-m task_engine.engine.backend.echo_agent "$@"\n',
        encoding="utf-8",
    )
    shim.chmod(shim.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    settings.providers.claude_executable = str(shim)
    return shim


class RecordingSleeper:
    """Backoff sleeper that records waits instead of sleeping."""

    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float, signal: AbortSignal | None = None) -> None:
        self.waits.append(seconds)
        if signal is not None:
            signal.raise_if_aborted()


@pytest.fixture()
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()
