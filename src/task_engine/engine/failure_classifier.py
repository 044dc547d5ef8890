"""Deterministic failure classification driving the auto-pause policy."""

from __future__ import annotations

from dataclasses import dataclass

from task_engine.engine.models import TERMINAL_FAILURE_CLASSES, FailureClass

_EXECUTABLE_MISSING_PATTERNS: tuple[str, ...] = (
    "failed to spawn",
    "enoent",
    "cli not found",
)
_CREDENTIAL_MISSING_PATTERNS: tuple[str, ...] = (
    "missing openai api key",
    "missing anthropic api key",
    "missing api key",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "invalid model identifier",
    "model not found",
    "unknown model",
    "unsupported model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "usage limit",
    "too many requests",
    "429",
    "overloaded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "station unreachable",
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def terminal(self) -> bool:
        """Failure will not improve on retry."""

        return self.failure_class in TERMINAL_FAILURE_CLASSES


def classify_failure(*, output: str, error_message: str, timed_out: bool) -> FailureClassification:
    """Classify a failed run from its combined output and error message."""

    if timed_out:
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timed_out",
            matched_pattern=None,
        )

    haystack = f"{output} {error_message}".lower()
    rules: tuple[tuple[FailureClass, str, tuple[str, ...]], ...] = (
        (FailureClass.EXECUTABLE_MISSING, "executable_missing", _EXECUTABLE_MISSING_PATTERNS),
        (FailureClass.CREDENTIAL_MISSING, "credential_missing", _CREDENTIAL_MISSING_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.RATE_LIMITED, "rate_limited", _RATE_LIMIT_PATTERNS),
        (FailureClass.BACKEND_TRANSIENT, "generic_transient", _TRANSIENT_PATTERNS),
    )
    for failure_class, rule, patterns in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return FailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
