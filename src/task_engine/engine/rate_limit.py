"""Rate-limit detection and the retry driver around backend calls."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from task_engine.config import RateLimitSettings
from task_engine.engine.backend.base import ExecutionResult
from task_engine.engine.cancellation import AbortSignal, sleep

logger = logging.getLogger(__name__)

_RATE_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"rate\s*limit", re.IGNORECASE),
    re.compile(r"usage\s*limit", re.IGNORECASE),
    re.compile(r"too\s*many\s*requests", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"rate_limit_error", re.IGNORECASE),
    re.compile(r"overloaded", re.IGNORECASE),
)
_RESET_AT_RE = re.compile(
    r"reset\s+at\s+(\d{1,2}(?::\d{2})?\s*(?:AM|PM)?)\s*(?:\(([^)]+)\))?",
    re.IGNORECASE,
)
_RESET_IN_RE = re.compile(
    r"(?:reset|try\s+again)\s+in\s+(\d+)\s*(minute|min|second|sec|hour|hr)s?",
    re.IGNORECASE,
)
_UNIX_TS_RE = re.compile(r"(?:limit\s*reached|reset[_-]?at)\s*[|:=\"']\s*(\d{10,13})\b")
_CLOCK_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(AM|PM)?$", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class RateLimitInfo:
    """Detected rate limit with a bounded wait."""

    wait_seconds: float
    reset_at: datetime | None
    raw_message: str

    @property
    def wait_ms(self) -> int:
        return int(self.wait_seconds * 1000)


def detect_rate_limit(
    result: ExecutionResult,
    settings: RateLimitSettings | None = None,
    *,
    now: datetime | None = None,
) -> RateLimitInfo | None:
    """Classify a failed result as rate limited and compute the wait.

    Successful and timed-out results are never rate limited. Diagnostics are
    scanned before regular output; the first matching text wins.
    """

    if result.exit_code == 0 or result.timed_out:
        return None
    settings = settings or RateLimitSettings()
    matched = ""
    for text in (result.stderr, result.stdout):
        if text and any(pattern.search(text) for pattern in _RATE_LIMIT_PATTERNS):
            matched = text
            break
    if not matched:
        return None

    current = now or datetime.now().astimezone()
    reset_at = parse_reset_time(matched, now=current)
    if reset_at is not None:
        wait_seconds = (reset_at - current).total_seconds()
    else:
        wait_seconds = settings.default_wait_seconds
    wait_seconds = max(settings.min_wait_seconds, min(settings.max_wait_seconds, wait_seconds))
    return RateLimitInfo(
        wait_seconds=wait_seconds,
        reset_at=reset_at,
        raw_message=matched[: settings.raw_message_limit],
    )


def parse_reset_time(text: str, *, now: datetime) -> datetime | None:
    """Extract a reset instant: clock time, relative delay, or unix timestamp."""

    clock = _RESET_AT_RE.search(text)
    if clock:
        return _parse_clock_time(clock.group(1), now=now)

    relative = _RESET_IN_RE.search(text)
    if relative:
        amount = int(relative.group(1))
        unit = relative.group(2).lower()
        if unit.startswith("sec"):
            delta = timedelta(seconds=amount)
        elif unit.startswith("min"):
            delta = timedelta(minutes=amount)
        else:
            delta = timedelta(hours=amount)
        if delta > timedelta(0):
            return now + delta

    stamp = _UNIX_TS_RE.search(text)
    if stamp:
        value = int(stamp.group(1))
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=now.tzinfo)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def _parse_clock_time(value: str, *, now: datetime) -> datetime | None:
    match = _CLOCK_RE.match(value.strip())
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2)) if match.group(2) else 0
    meridiem = (match.group(3) or "").upper()
    if meridiem == "PM" and hour < 12:
        hour += 12
    if meridiem == "AM" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    reset = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if reset <= now:
        reset += timedelta(days=1)
    return reset


WaitHook = Callable[[RateLimitInfo, str], None]
RetryHook = Callable[[str], None]
Sleeper = Callable[[float, AbortSignal | None], Awaitable[None]]


async def run_with_rate_limit_retry(  # noqa: PLR0913
    call: Callable[[], Awaitable[ExecutionResult]],
    *,
    settings: RateLimitSettings,
    signal: AbortSignal | None = None,
    on_wait: WaitHook | None = None,
    on_retry: RetryHook | None = None,
    sleeper: Sleeper = sleep,
    label: str = "",
) -> ExecutionResult:
    """Invoke ``call`` and re-invoke it while the failure looks rate limited.

    At most ``settings.max_retries`` extra attempts are made. The backoff
    sleep is aborted by ``signal``.
    """

    if signal is not None:
        signal.raise_if_aborted()
    result = await call()
    retries = 0
    while result.exit_code != 0 and retries < settings.max_retries:
        info = detect_rate_limit(result, settings)
        if info is None:
            break
        retries += 1
        retry_label = f"(attempt {retries + 1}/{settings.max_retries + 1})"
        logger.info(
            "%sRate limit detected. Waiting %ds %s",
            f"{label}: " if label else "",
            round(info.wait_seconds),
            retry_label,
        )
        if on_wait is not None:
            on_wait(info, retry_label)
        await sleeper(info.wait_seconds, signal)
        if on_retry is not None:
            on_retry(retry_label)
        result = await call()
    return result
