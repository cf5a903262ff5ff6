"""Detection engine: completion markers, loop detection, verification, rate limits."""

from __future__ import annotations

import re
import subprocess
from collections import Counter
from pathlib import Path
from typing import Any

from cleave.constants import (
    LOOP_SIMILARITY_THRESHOLD,
    LOOP_SIZE_TOLERANCE,
    MAX_CAPTURE_CHARS,
    RATE_LIMIT_PATTERN,
    STATUS_LINE_PATTERN,
    TASK_FULLY_COMPLETE,
)
from cleave.models import LoopCheck, VerifyResult
from cleave.utils import _parse_utc, _read_text_if_exists

_RESET_HINT_PATTERN = re.compile(
    r"reset\w*[\"'\s:=]+(?:at\s+)?(\d{4}-\d{2}-\d{2}[T ][0-9:.]+(?:Z|[+-]\d{2}:?\d{2})?|\d{10,13})",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


def _contains_token(text: str, token: str) -> bool:
    pattern = rf"(?<![A-Za-z0-9_]){re.escape(token)}(?![A-Za-z0-9_])"
    return re.search(pattern, text, re.IGNORECASE) is not None


def status_values(text: str) -> list[str]:
    """Return the value of every ``STATUS:`` line in *text*."""
    values: list[str] = []
    for line in text.splitlines():
        match = STATUS_LINE_PATTERN.match(line)
        if match:
            values.append(match.group(1).strip())
    return values


def is_complete_text(text: str, marker: str) -> bool:
    for value in status_values(text):
        if _contains_token(value, TASK_FULLY_COMPLETE):
            return True
        if marker and _contains_token(value, marker):
            return True
    return False


def is_complete(progress_file: Path, marker: str) -> bool:
    """True when the progress record declares the task done on a ``STATUS:`` line.

    Prose that merely mentions the marker does not count.
    """
    return is_complete_text(_read_text_if_exists(progress_file), marker)


# ---------------------------------------------------------------------------
# Loop detection
# ---------------------------------------------------------------------------


def _content_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def text_similarity(newer: str, older: str) -> int:
    """Percentage of non-blank lines shared by both texts, over the larger line count."""
    newer_lines = _content_lines(newer)
    older_lines = _content_lines(older)
    if not newer_lines and not older_lines:
        return 100
    if not newer_lines or not older_lines:
        return 0
    shared = sum((Counter(newer_lines) & Counter(older_lines)).values())
    return round(shared * 100 / max(len(newer_lines), len(older_lines)))


def detect_loop(current: str, previous: str, *, session: int) -> LoopCheck:
    if session < 2 or not current.strip() or not previous.strip():
        return LoopCheck(is_loop=False, similarity=0)
    larger = max(len(current), len(previous))
    if abs(len(current) - len(previous)) > larger * LOOP_SIZE_TOLERANCE:
        return LoopCheck(is_loop=False, similarity=0)
    similarity = text_similarity(current, previous)
    return LoopCheck(is_loop=similarity >= LOOP_SIMILARITY_THRESHOLD, similarity=similarity)


# ---------------------------------------------------------------------------
# External verification
# ---------------------------------------------------------------------------


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _tail(text: str, limit: int = MAX_CAPTURE_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


def run_verification(command: str, *, cwd: Path, timeout: float) -> VerifyResult:
    """Run *command* through the shell in *cwd*; exit code 0 means done.

    Never raises: a timeout or a launch failure is reported as a failed result.
    """
    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        output = _as_text(exc.stdout) + _as_text(exc.stderr)
        return VerifyResult(passed=False, exit_code=-1, output=_tail(output), timed_out=True)
    except OSError as exc:
        return VerifyResult(passed=False, exit_code=-1, output=str(exc))
    output = (proc.stdout or "") + (proc.stderr or "")
    return VerifyResult(passed=proc.returncode == 0, exit_code=proc.returncode, output=_tail(output))


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------


def detect_rate_limit(text: str) -> bool:
    return bool(text) and RATE_LIMIT_PATTERN.search(text) is not None


def coerce_reset_time(value: Any) -> float | None:
    """Convert an epoch (seconds or milliseconds) or ISO timestamp to epoch seconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            parsed = _parse_utc(text.replace(" ", "T", 1))
            return parsed.timestamp() if parsed is not None else None
    if number <= 0:
        return None
    return number / 1000.0 if number > 1e12 else number


def parse_rate_limit_reset(text: str) -> float | None:
    match = _RESET_HINT_PATTERN.search(text or "")
    if match is None:
        return None
    return coerce_reset_time(match.group(1))
