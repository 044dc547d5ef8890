"""Model identifier parsing into backend routes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-sonnet-latest"


class BackendKind(str, Enum):
    """Closed set of execution pathways."""

    CLAUDE_CLI = "claude_cli"
    CODEX_CLI = "codex_cli"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    STATION = "station"

    @property
    def is_cli(self) -> bool:
        return self in (BackendKind.CLAUDE_CLI, BackendKind.CODEX_CLI)


@dataclass(slots=True, frozen=True)
class ModelRoute:
    """Parsed model identifier.

    ``model`` is the provider-side model name, or None when the backend
    should use its own default. Station routes wrap an ``inner`` route.
    """

    identifier: str
    kind: BackendKind
    model: str | None = None
    station_id: int | None = None
    inner: ModelRoute | None = None


def parse_model_identifier(identifier: str | None) -> ModelRoute:  # noqa: PLR0911
    """Classify a model identifier such as ``openai:gpt-4o`` or ``ollama:llama3``.

    Colon-free names go to the Claude CLI as its ``--model`` value; an
    unknown ``prefix:variant`` is rejected.
    Raises ``ValueError`` for identifiers that cannot be routed.
    """

    raw = (identifier or "").strip()
    if not raw or raw == "claude":
        return ModelRoute(identifier=raw or "claude", kind=BackendKind.CLAUDE_CLI)

    prefix, sep, rest = raw.partition(":")
    rest = rest.strip()
    if prefix == "station" and sep:
        return _parse_station(raw, rest)
    if prefix == "codex":
        return ModelRoute(identifier=raw, kind=BackendKind.CODEX_CLI, model=rest or None)
    if prefix == "openai":
        return ModelRoute(
            identifier=raw,
            kind=BackendKind.OPENAI,
            model=rest or DEFAULT_OPENAI_MODEL,
        )
    if prefix in ("anthropic", "claude-api"):
        return ModelRoute(
            identifier=raw,
            kind=BackendKind.ANTHROPIC,
            model=rest or DEFAULT_ANTHROPIC_MODEL,
        )
    if prefix == "ollama":
        if not rest:
            raise ValueError(f"Invalid model identifier {raw!r}: ollama requires a model name")
        return ModelRoute(identifier=raw, kind=BackendKind.OLLAMA, model=rest)
    if sep:
        raise ValueError(f"Invalid model identifier {raw!r}")
    return ModelRoute(identifier=raw, kind=BackendKind.CLAUDE_CLI, model=raw)


def _parse_station(raw: str, rest: str) -> ModelRoute:
    station_part, sep, inner_identifier = rest.partition(":")
    try:
        station_id = int(station_part)
    except ValueError as error:
        raise ValueError(f"Invalid model identifier {raw!r}: station id must be numeric") from error
    if not sep or not inner_identifier.strip():
        raise ValueError(f"Invalid model identifier {raw!r}: station requires an inner model")
    inner = parse_model_identifier(inner_identifier)
    if inner.kind.is_cli or inner.kind is BackendKind.STATION:
        raise ValueError(
            f"Invalid model identifier {raw!r}: {inner.kind.value} cannot run on a station",
        )
    return ModelRoute(
        identifier=raw,
        kind=BackendKind.STATION,
        model=inner.model,
        station_id=station_id,
        inner=inner,
    )
