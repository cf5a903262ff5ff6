"""Agent lifecycle hooks.

The agent CLI runs these as external commands (registered through
``.cleave/settings.json``). ``stop`` blocks the agent from exiting until the
handoff files are written; ``session-start`` refreshes the session marker;
``post-tool-use`` records activity evidence for rescue handoffs.
"""

from __future__ import annotations

import json
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Mapping

from cleave.constants import (
    DEFAULT_COMPLETION_MARKER,
    ENV_COMPLETION_MARKER_HOOK,
    ENV_RELAY_DIR,
    ENV_WORK_DIR,
    RELAY_DIR_NAME,
)
from cleave.detection import is_complete
from cleave.models import HookDecision
from cleave.state import (
    RelayPaths,
    check_handoff_files,
    clear_handoff_signal,
    paths_from_relay_dir,
    read_tool_use,
    touch_session_start,
    was_modified_this_session,
)
from cleave.utils import _append_log, _write_json

HOOK_EVENTS = ("stop", "session-start", "post-tool-use")


def _parse_payload(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _hook_paths(payload: Mapping[str, Any], environ: Mapping[str, str]) -> RelayPaths | None:
    relay_dir = environ.get(ENV_RELAY_DIR, "").strip()
    if relay_dir:
        return paths_from_relay_dir(Path(relay_dir))
    work_dir = str(payload.get("cwd") or payload.get("workingDir") or "").strip()
    if not work_dir:
        work_dir = environ.get(ENV_WORK_DIR, "").strip() or os.getcwd()
    if not work_dir:
        return None
    return paths_from_relay_dir(Path(work_dir) / RELAY_DIR_NAME)


def evaluate_stop_hook(paths: RelayPaths, marker: str) -> HookDecision:
    if not paths.active_relay_marker.exists():
        return HookDecision(allow=True, reason="no active relay")
    if is_complete(paths.progress_file, marker):
        return HookDecision(allow=True, reason="task complete")
    if paths.handoff_signal_file.exists():
        if not paths.session_start_marker.exists() or was_modified_this_session(
            paths.handoff_signal_file, paths.session_start_marker
        ):
            return HookDecision(allow=True, reason="handoff signal written")

    check = check_handoff_files(paths, marker)
    if not check.missing and not check.stale:
        return HookDecision(allow=True, reason="handoff files verified")

    relay_dir = paths.relay_dir.relative_to(paths.work_dir).as_posix()
    reason = "CLEAVE HANDOFF INCOMPLETE. You cannot exit yet.\n"
    if check.missing:
        reason += f"Missing files: {', '.join(check.missing)}\n"
    if check.stale:
        reason += f"Not updated this session: {', '.join(check.stale)}\n"
    reason += (
        "\nComplete the handoff procedure before exiting:\n"
        f"1. Update {relay_dir}/PROGRESS.md with current status and exact stop point\n"
        f"2. Update {relay_dir}/KNOWLEDGE.md: promote insights to Core, append session notes\n"
        f"3. Write {relay_dir}/NEXT_PROMPT.md: the complete prompt for the next session\n"
        "4. Print RELAY_HANDOFF_COMPLETE or TASK_FULLY_COMPLETE\n"
        f"\nIf the task is fully done, set STATUS: {marker} in PROGRESS.md."
    )
    return HookDecision(allow=False, reason=reason)


def record_tool_use(paths: RelayPaths, tool_name: str) -> int:
    count, _ = read_tool_use(paths)
    count += 1
    paths.relay_dir.mkdir(parents=True, exist_ok=True)
    paths.tool_use_count_file.write_text(f"{count}\n", encoding="utf-8")
    if tool_name:
        paths.last_tool_file.write_text(f"{tool_name}\n", encoding="utf-8")
    return count


def write_settings_file(paths: RelayPaths) -> Path:
    """Register the hook commands for the agent CLI's ``--settings`` flag."""
    base = f"{shlex.quote(sys.executable)} -m cleave hook"

    def _command(event: str) -> list[dict[str, Any]]:
        return [{"hooks": [{"type": "command", "command": f"{base} {event}"}]}]

    payload = {
        "hooks": {
            "Stop": _command("stop"),
            "SessionStart": _command("session-start"),
            "PostToolUse": [{"matcher": "*", **_command("post-tool-use")[0]}],
        }
    }
    _write_json(paths.settings_file, payload)
    return paths.settings_file


def run_hook(
    event: str,
    *,
    stdin_text: str = "",
    environ: Mapping[str, str] | None = None,
) -> int:
    """Execute one hook event and return the process exit code (2 blocks)."""
    env = os.environ if environ is None else environ
    payload = _parse_payload(stdin_text)
    paths = _hook_paths(payload, env)
    if paths is None or not paths.relay_dir.is_dir():
        return 0

    if event == "stop":
        marker = env.get(ENV_COMPLETION_MARKER_HOOK, "").strip() or DEFAULT_COMPLETION_MARKER
        decision = evaluate_stop_hook(paths, marker)
        _append_log(paths.relay_dir, f"[debug] stop hook allow={decision.allow} reason={decision.reason.splitlines()[0]}")
        if decision.allow:
            return 0
        print(json.dumps({"decision": "block", "reason": decision.reason}))
        return 2

    if not paths.active_relay_marker.exists():
        return 0
    if event == "session-start":
        touch_session_start(paths)
        clear_handoff_signal(paths)
        _append_log(paths.relay_dir, "[debug] session-start hook refreshed session marker")
        return 0
    if event == "post-tool-use":
        tool_name = str(payload.get("tool_name") or payload.get("toolName") or "").strip()
        record_tool_use(paths, tool_name)
        return 0
    raise ValueError(f"unknown hook event: {event}")
