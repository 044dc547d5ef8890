"""Runtime configuration for the task execution engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

MIN_CONCURRENT_TASKS = 1
MAX_CONCURRENT_TASKS = 10


@dataclass(slots=True)
class RateLimitSettings:
    """Backoff policy applied when a backend reports rate limiting."""

    max_retries: int = 3
    default_wait_seconds: float = 300.0
    min_wait_seconds: float = 30.0
    max_wait_seconds: float = 3600.0
    raw_message_limit: int = 500


@dataclass(slots=True)
class SessionSettings:
    """Conversation session rotation and compaction thresholds."""

    max_runs_per_session: int = 20
    compress_threshold_messages: int = 30
    max_history_messages: int = 40
    stale_after_days: int = 7


@dataclass(slots=True)
class ExecutionSettings:
    """Timeouts, concurrency defaults and console-log buffering."""

    default_max_concurrent_tasks: int = 3
    console_flush_interval_seconds: float = 1.0
    progress_throttle_seconds: float = 2.0
    cli_timeout_seconds: float = 1800.0
    http_timeout_seconds: float = 60.0
    tool_loop_timeout_seconds: float = 300.0
    kill_grace_seconds: float = 5.0
    ollama_stream: bool = False


@dataclass(slots=True)
class ProviderSettings:
    """Credentials and endpoints for remote and local model backends."""

    openai_api_key: str = ""
    anthropic_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    anthropic_version: str = "2023-06-01"
    ollama_base_url: str = "http://127.0.0.1:11434"
    station_api_url: str = "http://127.0.0.1:8787"
    claude_executable: str | None = None
    codex_executable: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".task_engine.db")
    results_dir: Path = Path("results")
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_ENGINE_DB_PATH", ".task_engine.db")),
            results_dir=Path(os.getenv("TASK_ENGINE_RESULTS_DIR", "results")),
            rate_limit=RateLimitSettings(
                max_retries=int(os.getenv("TASK_ENGINE_RATE_LIMIT_MAX_RETRIES", "3")),
                default_wait_seconds=float(
                    os.getenv("TASK_ENGINE_RATE_LIMIT_DEFAULT_WAIT_SECONDS", "300"),
                ),
                min_wait_seconds=float(os.getenv("TASK_ENGINE_RATE_LIMIT_MIN_WAIT_SECONDS", "30")),
                max_wait_seconds=float(
                    os.getenv("TASK_ENGINE_RATE_LIMIT_MAX_WAIT_SECONDS", "3600"),
                ),
            ),
            session=SessionSettings(
                max_runs_per_session=int(os.getenv("TASK_ENGINE_SESSION_MAX_RUNS", "20")),
                compress_threshold_messages=int(
                    os.getenv("TASK_ENGINE_SESSION_COMPRESS_THRESHOLD", "30"),
                ),
                max_history_messages=int(os.getenv("TASK_ENGINE_SESSION_MAX_MESSAGES", "40")),
                stale_after_days=int(os.getenv("TASK_ENGINE_SESSION_STALE_AFTER_DAYS", "7")),
            ),
            execution=ExecutionSettings(
                default_max_concurrent_tasks=int(
                    os.getenv("TASK_ENGINE_DEFAULT_MAX_CONCURRENT_TASKS", "3"),
                ),
                console_flush_interval_seconds=float(
                    os.getenv("TASK_ENGINE_CONSOLE_FLUSH_INTERVAL_SECONDS", "1.0"),
                ),
                progress_throttle_seconds=float(
                    os.getenv("TASK_ENGINE_PROGRESS_THROTTLE_SECONDS", "2.0"),
                ),
                cli_timeout_seconds=float(os.getenv("TASK_ENGINE_CLI_TIMEOUT_SECONDS", "1800")),
                http_timeout_seconds=float(os.getenv("TASK_ENGINE_HTTP_TIMEOUT_SECONDS", "60")),
                tool_loop_timeout_seconds=float(
                    os.getenv("TASK_ENGINE_TOOL_LOOP_TIMEOUT_SECONDS", "300"),
                ),
                kill_grace_seconds=float(os.getenv("TASK_ENGINE_KILL_GRACE_SECONDS", "5")),
                ollama_stream=_env_flag("TASK_ENGINE_OLLAMA_STREAM"),
            ),
            providers=ProviderSettings(
                openai_api_key=_first_env("TASK_ENGINE_OPENAI_API_KEY", "OPENAI_API_KEY"),
                anthropic_api_key=_first_env("TASK_ENGINE_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
                openai_base_url=os.getenv(
                    "TASK_ENGINE_OPENAI_BASE_URL",
                    "https://api.openai.com/v1",
                ),
                anthropic_base_url=os.getenv(
                    "TASK_ENGINE_ANTHROPIC_BASE_URL",
                    "https://api.anthropic.com/v1",
                ),
                ollama_base_url=os.getenv("TASK_ENGINE_OLLAMA_BASE_URL", "http://127.0.0.1:11434"),
                station_api_url=os.getenv("TASK_ENGINE_STATION_API_URL", "http://127.0.0.1:8787"),
                claude_executable=os.getenv("TASK_ENGINE_CLAUDE_EXECUTABLE") or None,
                codex_executable=os.getenv("TASK_ENGINE_CODEX_EXECUTABLE") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on inconsistent thresholds."""

        if self.rate_limit.max_retries < 0:
            raise ValueError("TASK_ENGINE_RATE_LIMIT_MAX_RETRIES must be >= 0.")
        if self.rate_limit.min_wait_seconds <= 0:
            raise ValueError("TASK_ENGINE_RATE_LIMIT_MIN_WAIT_SECONDS must be > 0.")
        if self.rate_limit.min_wait_seconds > self.rate_limit.max_wait_seconds:
            raise ValueError(
                "TASK_ENGINE_RATE_LIMIT_MIN_WAIT_SECONDS must not exceed "
                "TASK_ENGINE_RATE_LIMIT_MAX_WAIT_SECONDS.",
            )
        if self.session.max_runs_per_session <= 0:
            raise ValueError("TASK_ENGINE_SESSION_MAX_RUNS must be > 0.")
        if self.session.max_history_messages <= 0:
            raise ValueError("TASK_ENGINE_SESSION_MAX_MESSAGES must be > 0.")
        if not (
            MIN_CONCURRENT_TASKS
            <= self.execution.default_max_concurrent_tasks
            <= MAX_CONCURRENT_TASKS
        ):
            raise ValueError(
                "TASK_ENGINE_DEFAULT_MAX_CONCURRENT_TASKS must be between "
                f"{MIN_CONCURRENT_TASKS} and {MAX_CONCURRENT_TASKS}.",
            )
        for name, value in (
            ("TASK_ENGINE_CLI_TIMEOUT_SECONDS", self.execution.cli_timeout_seconds),
            ("TASK_ENGINE_HTTP_TIMEOUT_SECONDS", self.execution.http_timeout_seconds),
            ("TASK_ENGINE_TOOL_LOOP_TIMEOUT_SECONDS", self.execution.tool_loop_timeout_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")


def _first_env(*names: str) -> str:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return ""


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")
