"""Local stream-json agent for CLI backend integration tests.

Accepts the Claude CLI flags and answers with deterministic events.
Behaviour is steered by environment variables:

- ``TASK_ENGINE_ECHO_EXIT_CODE`` / ``TASK_ENGINE_ECHO_STDERR``: fail with
  this code and diagnostic.
- ``TASK_ENGINE_ECHO_FAIL_ONCE_FILE``: apply the failure only while this
  marker file does not exist yet (the first call creates it).
- ``TASK_ENGINE_ECHO_FAIL_RESUME``: fail every call that passes ``--resume``.
- ``TASK_ENGINE_ECHO_SLEEP``: seconds to sleep before answering.
- ``TASK_ENGINE_ECHO_SESSION_ID``: session id reported in the result event.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path


def _emit(event: dict) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


def _should_fail() -> bool:
    if not os.getenv("TASK_ENGINE_ECHO_EXIT_CODE"):
        return False
    marker = os.getenv("TASK_ENGINE_ECHO_FAIL_ONCE_FILE")
    if not marker:
        return True
    marker_path = Path(marker)
    if marker_path.exists():
        return False
    marker_path.write_text("failed\n", encoding="utf-8")
    return True


def main(argv: list[str] | None = None) -> int:
    """Answer one prompt in Claude stream-json format."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", dest="prompt", default="")
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--resume")
    parser.add_argument("--system-prompt")
    parser.add_argument("--model")
    parser.add_argument("--max-turns")
    parser.add_argument("--allowedTools")
    parser.add_argument("--disallowedTools")
    args = parser.parse_args(argv)

    delay = float(os.getenv("TASK_ENGINE_ECHO_SLEEP", "0") or 0)
    if delay > 0:
        time.sleep(delay)

    if args.resume and os.getenv("TASK_ENGINE_ECHO_FAIL_RESUME"):
        sys.stderr.write(f"No conversation found with session ID: {args.resume}\n")
        return 1

    if _should_fail():
        sys.stderr.write(os.getenv("TASK_ENGINE_ECHO_STDERR", "echo agent failure") + "\n")
        return int(os.environ["TASK_ENGINE_ECHO_EXIT_CODE"])

    _emit({"type": "system", "subtype": "init"})
    sys.stdout.write("not json\n")
    _emit(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Working on it"},
                    {"type": "tool_use", "name": "Read", "input": {}},
                ],
            },
        },
    )
    prompt_lines = args.prompt.strip().splitlines()
    text = f"echo: {prompt_lines[-1]}" if prompt_lines else "echo"
    _emit(
        {
            "type": "result",
            "result": text,
            "session_id": os.getenv("TASK_ENGINE_ECHO_SESSION_ID") or args.resume or "echo-session",
        },
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
