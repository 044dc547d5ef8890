from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_engine.config import ExecutionSettings, RateLimitSettings, SessionSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_from_env_reads_engine_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_ENGINE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TASK_ENGINE_RATE_LIMIT_MAX_RETRIES", "5")
    monkeypatch.setenv("TASK_ENGINE_SESSION_MAX_RUNS", "7")
    monkeypatch.setenv("TASK_ENGINE_DEFAULT_MAX_CONCURRENT_TASKS", "4")
    monkeypatch.setenv("TASK_ENGINE_CLAUDE_EXECUTABLE", "/opt/claude")
    monkeypatch.setenv("TASK_ENGINE_OLLAMA_STREAM", "true")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.rate_limit.max_retries == 5
    assert settings.session.max_runs_per_session == 7
    assert settings.execution.default_max_concurrent_tasks == 4
    assert settings.providers.claude_executable == "/opt/claude"
    assert settings.execution.ollama_stream


def test_from_env_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_ENGINE_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_provider_keys_fall_back_to_vendor_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASK_ENGINE_OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-vendor")
    monkeypatch.setenv("TASK_ENGINE_ANTHROPIC_API_KEY", "sk-engine")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ignored")

    providers = Settings.from_env().providers

    assert providers.openai_api_key == "sk-vendor"
    assert providers.anthropic_api_key == "sk-engine"


def test_defaults_validate() -> None:
    Settings().validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(rate_limit=RateLimitSettings(max_retries=-1)), "MAX_RETRIES"),
        (
            Settings(rate_limit=RateLimitSettings(min_wait_seconds=100, max_wait_seconds=10)),
            "must not exceed",
        ),
        (Settings(session=SessionSettings(max_runs_per_session=0)), "SESSION_MAX_RUNS"),
        (
            Settings(execution=ExecutionSettings(default_max_concurrent_tasks=11)),
            "between 1 and 10",
        ),
        (Settings(execution=ExecutionSettings(http_timeout_seconds=0)), "HTTP_TIMEOUT"),
    ],
)
def test_validate_rejects_inconsistent_thresholds(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
