"""Knowledge base maintenance.

A knowledge file has two sections: ``## Core Knowledge`` holds durable
insights and is never pruned, ``## Session Log`` holds one ``### Session``
entry per session and is trimmed to the most recent entries.
"""

from __future__ import annotations

from pathlib import Path

from cleave.constants import (
    KNOWLEDGE_CORE_HEADER,
    KNOWLEDGE_ENTRY_PREFIX,
    KNOWLEDGE_LOG_HEADER,
)
from cleave.models import CompactResult
from cleave.utils import _read_text_if_exists

SHARED_KNOWLEDGE_TITLE = "# Shared Pipeline Knowledge"
SHARED_STAGE_PREFIX = "## Stage:"


def initial_knowledge_text() -> str:
    return (
        "# Accumulated Knowledge\n"
        "\n"
        f"{KNOWLEDGE_CORE_HEADER}\n"
        "<!-- Durable insights that every future session needs. Never pruned. -->\n"
        "\n"
        f"{KNOWLEDGE_LOG_HEADER}\n"
        "<!-- One entry per session, newest last. Older entries are pruned automatically. -->\n"
    )


def _find_header(lines: list[str], header: str, *, start: int = 0) -> int | None:
    for index in range(start, len(lines)):
        if lines[index].strip() == header:
            return index
    return None


def _split_entries(lines: list[str]) -> tuple[list[str], list[list[str]]]:
    """Split the lines following the session-log header into preamble and entries."""
    preamble: list[str] = []
    entries: list[list[str]] = []
    for line in lines:
        if line.startswith(KNOWLEDGE_ENTRY_PREFIX):
            entries.append([line])
        elif entries:
            entries[-1].append(line)
        else:
            preamble.append(line)
    return preamble, entries


def compact_knowledge(path: Path, keep: int) -> CompactResult:
    """Prune the session log in *path* down to its last *keep* entries.

    The file is left untouched when either section header is missing, when
    the headers are out of order, or when there is nothing to prune.
    """
    text = _read_text_if_exists(path)
    lines = text.splitlines()
    old_count = len(lines)
    unchanged = CompactResult(pruned=False, old_lines=old_count, new_lines=old_count)
    if keep < 1 or not lines:
        return unchanged

    core_index = _find_header(lines, KNOWLEDGE_CORE_HEADER)
    if core_index is None:
        return unchanged
    log_index = _find_header(lines, KNOWLEDGE_LOG_HEADER, start=core_index + 1)
    if log_index is None:
        return unchanged

    preamble, entries = _split_entries(lines[log_index + 1 :])
    if len(entries) <= keep:
        return CompactResult(
            pruned=False, old_lines=old_count, new_lines=old_count, kept_entries=len(entries)
        )

    kept = entries[-keep:]
    new_lines = lines[: log_index + 1] + preamble
    for entry in kept:
        new_lines.extend(entry)
    path.write_text("\n".join(new_lines) + "\n", encoding="utf-8")
    return CompactResult(
        pruned=True, old_lines=old_count, new_lines=len(new_lines), kept_entries=len(kept)
    )


def extract_core_knowledge(text: str) -> str:
    """Return the body of the core section without comment-only lines."""
    lines = text.splitlines()
    core_index = _find_header(lines, KNOWLEDGE_CORE_HEADER)
    if core_index is None:
        return ""
    body: list[str] = []
    for line in lines[core_index + 1 :]:
        if line.startswith("## "):
            break
        stripped = line.strip()
        if stripped.startswith("<!--") and stripped.endswith("-->"):
            continue
        body.append(line)
    return "\n".join(body).strip()


def append_session_entry(path: Path, session: int, body: str, *, label: str = "") -> None:
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(initial_knowledge_text(), encoding="utf-8")
    heading = f"{KNOWLEDGE_ENTRY_PREFIX} {session}"
    if label:
        heading = f"{heading} ({label})"
    existing = _read_text_if_exists(path)
    separator = "" if existing.endswith("\n") or not existing else "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{separator}\n{heading}\n{body.strip()}\n")


def promote_to_shared_knowledge(stage_knowledge: Path, shared_file: Path, stage_name: str) -> bool:
    """Copy the stage's core knowledge into the pipeline-wide shared file.

    An earlier block for the same stage is replaced, so retried or re-run
    stages never duplicate their contribution. Returns False when the stage
    has no core knowledge to share.
    """
    core = extract_core_knowledge(_read_text_if_exists(stage_knowledge))
    if not core:
        return False

    heading = f"{SHARED_STAGE_PREFIX} {stage_name}"
    existing = _read_text_if_exists(shared_file)
    lines = existing.splitlines() if existing.strip() else [SHARED_KNOWLEDGE_TITLE, ""]

    kept: list[str] = []
    skipping = False
    for line in lines:
        if line.startswith(SHARED_STAGE_PREFIX):
            skipping = line.strip() == heading
        if not skipping:
            kept.append(line)
    while kept and not kept[-1].strip():
        kept.pop()

    kept.extend(["", heading, core])
    shared_file.parent.mkdir(parents=True, exist_ok=True)
    shared_file.write_text("\n".join(kept) + "\n", encoding="utf-8")
    return True
