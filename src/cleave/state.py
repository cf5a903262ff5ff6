from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cleave.constants import (
    ACTIVE_PIPELINE_MARKER_NAME,
    ACTIVE_RELAY_MARKER_NAME,
    ARCHIVED_STATE_FILES,
    HANDOFF_COMPLETE,
    HANDOFF_SIGNAL_FILE_NAME,
    KNOWLEDGE_FILE_NAME,
    LAST_TOOL_FILE_NAME,
    LOGS_DIR_NAME,
    NEXT_PROMPT_FILE_NAME,
    PIPELINE_CONFIG_COPY_NAME,
    PIPELINE_STATE_FILE_NAME,
    PROGRESS_FILE_NAME,
    RELAY_DIR_NAME,
    SESSION_COUNT_FILE_NAME,
    SESSION_PROMPT_FILE_NAME,
    SESSION_START_MARKER_NAME,
    SETTINGS_FILE_NAME,
    SHARED_DIR_NAME,
    STAGES_DIR_NAME,
    STATUS_FILE_NAME,
    STATUS_IN_PROGRESS,
    STATUS_LINE_PATTERN,
    TASK_FULLY_COMPLETE,
    TOOL_NAME,
    TOOL_USE_COUNT_FILE_NAME,
    VERSION,
)
from cleave.detection import is_complete
from cleave.knowledge import initial_knowledge_text
from cleave.models import HandoffCheck, StageStatus, StateError
from cleave.utils import _append_log, _read_json, _read_text_if_exists, _utc_now, _write_json


@dataclass(frozen=True)
class RelayPaths:
    """Every file the relay reads or writes for one state folder."""

    work_dir: Path
    relay_dir: Path
    progress_file: Path
    knowledge_file: Path
    next_prompt_file: Path
    status_file: Path
    session_start_marker: Path
    active_relay_marker: Path
    session_count_file: Path
    handoff_signal_file: Path
    tool_use_count_file: Path
    last_tool_file: Path
    session_prompt_file: Path
    settings_file: Path
    logs_dir: Path
    shared_knowledge_file: Path | None = None
    stage_name: str | None = None


def _paths_for(work_dir: Path, relay_dir: Path, **extra: Any) -> RelayPaths:
    return RelayPaths(
        work_dir=work_dir,
        relay_dir=relay_dir,
        progress_file=relay_dir / PROGRESS_FILE_NAME,
        knowledge_file=relay_dir / KNOWLEDGE_FILE_NAME,
        next_prompt_file=relay_dir / NEXT_PROMPT_FILE_NAME,
        status_file=relay_dir / STATUS_FILE_NAME,
        session_start_marker=relay_dir / SESSION_START_MARKER_NAME,
        active_relay_marker=relay_dir / ACTIVE_RELAY_MARKER_NAME,
        session_count_file=relay_dir / SESSION_COUNT_FILE_NAME,
        handoff_signal_file=relay_dir / HANDOFF_SIGNAL_FILE_NAME,
        tool_use_count_file=relay_dir / TOOL_USE_COUNT_FILE_NAME,
        last_tool_file=relay_dir / LAST_TOOL_FILE_NAME,
        session_prompt_file=relay_dir / SESSION_PROMPT_FILE_NAME,
        settings_file=relay_dir / SETTINGS_FILE_NAME,
        logs_dir=relay_dir / LOGS_DIR_NAME,
        **extra,
    )


def resolve_paths(work_dir: Path) -> RelayPaths:
    return _paths_for(work_dir, work_dir / RELAY_DIR_NAME)


def resolve_stage_paths(work_dir: Path, stage_name: str) -> RelayPaths:
    root = work_dir / RELAY_DIR_NAME
    return _paths_for(
        work_dir,
        root / STAGES_DIR_NAME / stage_name,
        shared_knowledge_file=root / SHARED_DIR_NAME / KNOWLEDGE_FILE_NAME,
        stage_name=stage_name,
    )


def paths_from_relay_dir(relay_dir: Path) -> RelayPaths:
    """Rebuild paths for an existing state folder (relay root or stage)."""
    relay_dir = relay_dir.resolve()
    if relay_dir.parent.name == STAGES_DIR_NAME and relay_dir.parent.parent.name == RELAY_DIR_NAME:
        return resolve_stage_paths(relay_dir.parent.parent.parent, relay_dir.name)
    return _paths_for(relay_dir.parent, relay_dir)


def init_relay_dir(paths: RelayPaths, *, reset_counter: bool = False) -> None:
    """Create the state folder; existing knowledge is never overwritten."""
    paths.relay_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    if not paths.knowledge_file.exists():
        paths.knowledge_file.write_text(initial_knowledge_text(), encoding="utf-8")
    if reset_counter or not paths.session_count_file.exists():
        write_session_count(paths, 0)


# ---------------------------------------------------------------------------
# Session markers and freshness
# ---------------------------------------------------------------------------


def touch_session_start(paths: RelayPaths) -> None:
    paths.session_start_marker.parent.mkdir(parents=True, exist_ok=True)
    paths.session_start_marker.write_text(f"{_utc_now()}\n", encoding="utf-8")


def was_modified_this_session(path: Path, marker: Path) -> bool:
    """True when *path* was written strictly after the session-start *marker*."""
    try:
        return path.stat().st_mtime > marker.stat().st_mtime
    except FileNotFoundError:
        return False


def read_handoff_signal(paths: RelayPaths) -> str:
    """Return the signal token when a fresh handoff signal exists, else ``""``."""
    if not was_modified_this_session(paths.handoff_signal_file, paths.session_start_marker):
        return ""
    content = _read_text_if_exists(paths.handoff_signal_file)
    for token in (TASK_FULLY_COMPLETE, HANDOFF_COMPLETE):
        if token in content:
            return token
    return ""


def clear_handoff_signal(paths: RelayPaths) -> None:
    paths.handoff_signal_file.unlink(missing_ok=True)


def check_handoff_files(paths: RelayPaths, marker: str) -> HandoffCheck:
    """Inspect the handoff bundle written since the session started.

    The bundle is valid when progress and next-task were both rewritten this
    session and next-task is non-empty. A progress record that declares the
    task complete needs no next-task.
    """
    handoff_files = {
        PROGRESS_FILE_NAME: paths.progress_file,
        KNOWLEDGE_FILE_NAME: paths.knowledge_file,
        NEXT_PROMPT_FILE_NAME: paths.next_prompt_file,
    }
    missing = tuple(name for name, path in handoff_files.items() if not path.exists())
    stale = tuple(
        name
        for name, path in handoff_files.items()
        if path.exists() and not was_modified_this_session(path, paths.session_start_marker)
    )

    progress_fresh = was_modified_this_session(paths.progress_file, paths.session_start_marker)
    if not progress_fresh:
        return HandoffCheck(missing=missing, stale=stale, valid=False, reason="progress not updated this session")
    if is_complete(paths.progress_file, marker):
        return HandoffCheck(missing=missing, stale=stale, valid=True, reason="task complete")
    if not was_modified_this_session(paths.next_prompt_file, paths.session_start_marker):
        return HandoffCheck(missing=missing, stale=stale, valid=False, reason="next-task not updated this session")
    if not _read_text_if_exists(paths.next_prompt_file).strip():
        return HandoffCheck(missing=missing, stale=stale, valid=False, reason="next-task is empty")
    return HandoffCheck(missing=missing, stale=stale, valid=True, reason="handoff complete")


# ---------------------------------------------------------------------------
# Counters and markers
# ---------------------------------------------------------------------------


def read_session_count(paths: RelayPaths) -> int:
    raw = _read_text_if_exists(paths.session_count_file).strip()
    try:
        count = int(raw)
    except ValueError:
        return 0
    return max(count, 0)


def write_session_count(paths: RelayPaths, count: int) -> None:
    paths.session_count_file.parent.mkdir(parents=True, exist_ok=True)
    paths.session_count_file.write_text(f"{count}\n", encoding="utf-8")


def read_tool_use(paths: RelayPaths) -> tuple[int, str]:
    raw = _read_text_if_exists(paths.tool_use_count_file).strip()
    try:
        count = max(int(raw), 0)
    except ValueError:
        count = 0
    return count, _read_text_if_exists(paths.last_tool_file).strip()


def reset_tool_use(paths: RelayPaths) -> None:
    paths.tool_use_count_file.unlink(missing_ok=True)
    paths.last_tool_file.unlink(missing_ok=True)


def mark_active(paths: RelayPaths) -> None:
    paths.active_relay_marker.write_text(f"{_utc_now()}\n", encoding="utf-8")


def cleanup_relay(paths: RelayPaths) -> None:
    """Drop the per-run markers; handoff files and knowledge stay for the next run."""
    for path in (
        paths.active_relay_marker,
        paths.session_start_marker,
        paths.handoff_signal_file,
        paths.session_prompt_file,
    ):
        path.unlink(missing_ok=True)
    reset_tool_use(paths)


def _demote_status_lines(text: str) -> str:
    demoted: list[str] = []
    for line in text.splitlines():
        match = STATUS_LINE_PATTERN.match(line)
        demoted.append(f"Previous status: {match.group(1).strip()}" if match else line)
    return "\n".join(demoted)


def reset_for_continuation(paths: RelayPaths, task: str) -> int:
    """Reopen a finished relay with a new *task*; returns the previous session count."""
    previous_count = read_session_count(paths)
    previous_progress = _read_text_if_exists(paths.progress_file).strip()
    lines = [
        f"## STATUS: {STATUS_IN_PROGRESS}",
        "",
        "## New Task (continuation)",
        task.strip(),
    ]
    if previous_progress:
        lines.extend(["", "## Previous Progress", _demote_status_lines(previous_progress)])
    paths.progress_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    paths.next_prompt_file.write_text(task.strip() + "\n", encoding="utf-8")
    clear_handoff_signal(paths)
    paths.session_start_marker.unlink(missing_ok=True)
    return previous_count


def reset_stage_for_retry(paths: RelayPaths) -> None:
    """Clear a stage's progress so it can be retried; knowledge is kept."""
    for path in (
        paths.progress_file,
        paths.next_prompt_file,
        paths.session_start_marker,
        paths.handoff_signal_file,
        paths.session_prompt_file,
    ):
        path.unlink(missing_ok=True)
    reset_tool_use(paths)
    write_session_count(paths, 0)


# ---------------------------------------------------------------------------
# Status record and archive
# ---------------------------------------------------------------------------


def write_status(
    paths: RelayPaths,
    *,
    session: int,
    max_sessions: int,
    status: str,
    message: str = "",
    phase: str = "",
    completion_marker: str = "",
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "tool": TOOL_NAME,
        "version": VERSION,
        "session": session,
        "max_sessions": max_sessions,
        "status": status,
        "phase": phase or status,
        "message": message,
        "updated_at": _utc_now(),
        "work_dir": str(paths.work_dir),
        "completion_marker": completion_marker,
    }
    if paths.stage_name:
        payload["stage"] = paths.stage_name
    _write_json(paths.status_file, payload)
    return payload


def archived_file(paths: RelayPaths, session: int, suffix: str) -> Path:
    return paths.logs_dir / f"session_{session}_{suffix}"


def archive_session(paths: RelayPaths, session: int, *, prompt_text: str = "") -> list[Path]:
    """Copy the session's handoff files into ``logs/``.

    Archiving must never abort a run, so copy failures are logged and skipped.
    """
    archived: list[Path] = []
    copies = [
        (getattr(paths, attribute), archived_file(paths, session, f"{suffix}.md"))
        for attribute, suffix in ARCHIVED_STATE_FILES
    ]
    copies.append((paths.status_file, archived_file(paths, session, "status.json")))
    try:
        paths.logs_dir.mkdir(parents=True, exist_ok=True)
        if prompt_text:
            target = archived_file(paths, session, "prompt.md")
            target.write_text(prompt_text, encoding="utf-8")
            archived.append(target)
    except OSError as exc:
        _append_log(paths.relay_dir, f"[warn] archive of session {session} prompt failed: {exc}")
    for source, target in copies:
        if not source.exists():
            continue
        try:
            shutil.copyfile(source, target)
        except OSError as exc:
            _append_log(paths.relay_dir, f"[warn] archive copy failed {source} -> {target}: {exc}")
            continue
        archived.append(target)
    return archived


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


def pipeline_state_path(work_dir: Path) -> Path:
    return work_dir / RELAY_DIR_NAME / PIPELINE_STATE_FILE_NAME


def pipeline_config_copy_path(work_dir: Path) -> Path:
    return work_dir / RELAY_DIR_NAME / PIPELINE_CONFIG_COPY_NAME


def active_pipeline_marker_path(work_dir: Path) -> Path:
    return work_dir / RELAY_DIR_NAME / ACTIVE_PIPELINE_MARKER_NAME


def default_pipeline_state(name: str, stage_names: list[str]) -> dict[str, Any]:
    return {
        "name": name,
        "started_at": _utc_now(),
        "current_stage": None,
        "stages": {stage: StageStatus.PENDING.value for stage in stage_names},
    }


def load_pipeline_state(path: Path) -> dict[str, Any]:
    payload = _read_json(path)
    stages = payload.get("stages")
    if not isinstance(stages, dict):
        raise StateError(f"pipeline state has no stage map: {path}")
    valid = {status.value for status in StageStatus}
    for stage, status in stages.items():
        if status not in valid:
            raise StateError(f"pipeline state has invalid status {status!r} for stage {stage!r}")
    return payload


def save_pipeline_state(path: Path, state: dict[str, Any]) -> None:
    state["updated_at"] = _utc_now()
    _write_json(path, state)
