from __future__ import annotations

import re
from pathlib import Path

from cleave.constants import (
    HANDOFF_COMPLETE,
    HANDOFF_INSTRUCTIONS_HEADER,
    KNOWLEDGE_ENTRY_PREFIX,
    KNOWLEDGE_REFERENCE_MIN_LINES,
    PROMPT_TOKEN_PATTERN,
    RELAY_HANDOFF_COMPLETE,
    SHARED_KNOWLEDGE_REFERENCE_MIN_LINES,
    STAGE_INSTRUCTIONS_HEADER,
    STATUS_IN_PROGRESS,
    TASK_FULLY_COMPLETE,
)
from cleave.models import PromptBuildError, RelayConfig
from cleave.state import RelayPaths
from cleave.utils import _count_lines, _read_text_if_exists, _report

HANDOFF_INSTRUCTIONS_TEMPLATE = f"""
======== {HANDOFF_INSTRUCTIONS_HEADER}: YOU MUST FOLLOW THESE RULES ========

You are inside an automated relay. Another session will continue your work.
Your job: make progress AND write handoff files. Both matter equally.

RULE 1: WRITE HANDOFF FILES EARLY AND OFTEN
After each logical chunk of work, update `{{{{relay_dir}}}}/PROGRESS.md` immediately.
If your session crashes, the relay uses these files to continue.

RULE 2: CONTEXT BUDGET
- 0-50%: work zone. Update PROGRESS.md after each batch.
- 50%: checkpoint. If the remaining work will not fit, start the handoff now.
- {{{{handoff_threshold}}}}%: hard stop. Begin the handoff procedure immediately.
- {{{{handoff_deadline}}}}%+: danger. Never reach this.

RULE 3: THE HANDOFF PROCEDURE (in order)
1. Write `{{{{relay_dir}}}}/PROGRESS.md`.
   First line: `## STATUS: {STATUS_IN_PROGRESS}` (or `## STATUS: {{{{completion_marker}}}}` when everything is done).
   Then: what you did, exactly where you stopped, what is left.
2. Append to `{{{{relay_dir}}}}/KNOWLEDGE.md` (never overwrite it).
   Add a `{KNOWLEDGE_ENTRY_PREFIX} N` entry with what worked, what failed, key discoveries.
   Promote durable insights into the Core Knowledge section.
3. Write `{{{{relay_dir}}}}/NEXT_PROMPT.md`.
   Full instructions for the next session; it has no memory of yours.
   End with: "When at ~{{{{handoff_threshold}}}}% context, STOP and do the handoff procedure."
4. Write `{HANDOFF_COMPLETE}` to `{{{{relay_dir}}}}/.handoff_signal`, print {RELAY_HANDOFF_COMPLETE} and stop.

If ALL work is done: set `STATUS: {{{{completion_marker}}}}` in PROGRESS.md,
write `{TASK_FULLY_COMPLETE}` to `{{{{relay_dir}}}}/.handoff_signal` and print {TASK_FULLY_COMPLETE}.

If you exit without handoff files the relay writes rescue files for you.
That is a fallback: always write the handoff files yourself.
"""

STAGE_HANDOFF_TEMPLATE = f"""
========================================================================
PIPELINE STAGE {{{{stage_number}}}}/{{{{total_stages}}}}: "{{{{stage_name}}}}" {STAGE_INSTRUCTIONS_HEADER}
========================================================================

You are stage "{{{{stage_name}}}}" ({{{{stage_number}}}} of {{{{total_stages}}}}) in a cleave pipeline.

YOUR COMPLETION MARKER: `{{{{completion_marker}}}}`
When this stage's work is fully done, set `STATUS: {{{{completion_marker}}}}` in
`{{{{relay_dir}}}}/PROGRESS.md` and print `{TASK_FULLY_COMPLETE}`.

STATE FILES: `{{{{relay_dir}}}}/` holds PROGRESS.md, KNOWLEDGE.md and NEXT_PROMPT.md.
The handoff rules are the same as a standard relay.

SHARED KNOWLEDGE: insights useful for later stages belong in your Core Knowledge
section; they are promoted to `{{{{shared_knowledge}}}}` when the stage succeeds.

CONTEXT BUDGET: stop at ~{{{{handoff_threshold}}}}% and do the handoff.

HANDOFF SIGNAL: as your final action write `{HANDOFF_COMPLETE}` to
`{{{{relay_dir}}}}/.handoff_signal`, or `{TASK_FULLY_COMPLETE}` when the stage is done.
"""


def _display_path(paths: RelayPaths, path: Path) -> str:
    try:
        return path.relative_to(paths.work_dir).as_posix()
    except ValueError:
        return str(path)


def _render_template(template: str, values: dict[str, str]) -> str:
    tokens = sorted({match.group(1) for match in PROMPT_TOKEN_PATTERN.finditer(template)})
    unsupported = [token for token in tokens if token not in values]
    if unsupported:
        raise PromptBuildError(f"instruction template has unsupported token(s): {', '.join(unsupported)}")

    def _replace_token(match: re.Match[str]) -> str:
        return str(values[match.group(1)])

    return PROMPT_TOKEN_PATTERN.sub(_replace_token, template)


def build_handoff_instructions(config: RelayConfig, paths: RelayPaths) -> str:
    return _render_template(
        HANDOFF_INSTRUCTIONS_TEMPLATE,
        {
            "relay_dir": _display_path(paths, paths.relay_dir),
            "handoff_threshold": str(config.handoff_threshold),
            "handoff_deadline": str(config.handoff_deadline),
            "completion_marker": config.completion_marker,
        },
    )


def build_stage_handoff_instructions(
    config: RelayConfig,
    paths: RelayPaths,
    *,
    stage_number: int,
    total_stages: int,
) -> str:
    shared = paths.shared_knowledge_file
    return _render_template(
        STAGE_HANDOFF_TEMPLATE,
        {
            "stage_name": paths.stage_name or "",
            "stage_number": str(stage_number),
            "total_stages": str(total_stages),
            "completion_marker": config.completion_marker,
            "relay_dir": _display_path(paths, paths.relay_dir),
            "shared_knowledge": _display_path(paths, shared) if shared else "",
            "handoff_threshold": str(config.handoff_threshold),
        },
    )


def _initial_prompt_with_progress(config: RelayConfig, paths: RelayPaths) -> str:
    prompt = ""
    if config.initial_prompt_file is not None:
        try:
            prompt = config.initial_prompt_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise PromptBuildError(
                f"initial prompt could not be read at {config.initial_prompt_file}: {exc}"
            ) from exc
    progress = _read_text_if_exists(paths.progress_file)
    if progress.strip():
        prompt = f"{prompt}\n\n--- PROGRESS FROM PRIOR SESSIONS ---\n{progress}"
    if not prompt.strip():
        raise PromptBuildError("no initial prompt, next-task record or progress record to build a prompt from")
    return prompt


def build_task_prompt(config: RelayConfig, paths: RelayPaths, session: int) -> str:
    """Return the task text for *session*, without handoff instructions.

    Session 1 starts from the initial prompt file. Later sessions use the
    next-task record and fall back to the initial prompt plus progress when
    that record is missing or empty.
    """
    relay_dir = paths.relay_dir
    if session > 1:
        next_prompt = _read_text_if_exists(paths.next_prompt_file).strip()
        if next_prompt:
            prompt = next_prompt
            _report(
                relay_dir,
                f"session {session}: using NEXT_PROMPT.md ({len(next_prompt)} chars)",
                level="debug",
                verbose=config.verbose,
            )
        else:
            state = "empty" if paths.next_prompt_file.exists() else "missing"
            _report(
                relay_dir,
                f"NEXT_PROMPT.md is {state} for session {session}; falling back to initial prompt + PROGRESS.md",
                level="warn",
            )
            prompt = _initial_prompt_with_progress(config, paths)
    else:
        prompt = _initial_prompt_with_progress(config, paths)

    if _count_lines(paths.knowledge_file) > KNOWLEDGE_REFERENCE_MIN_LINES:
        prompt += (
            "\n\n--- ACCUMULATED KNOWLEDGE ---\n"
            f"Read `{_display_path(paths, paths.knowledge_file)}` for tips and patterns from prior sessions."
        )
    shared = paths.shared_knowledge_file
    if shared is not None and _count_lines(shared) > SHARED_KNOWLEDGE_REFERENCE_MIN_LINES:
        prompt += (
            "\n\n--- SHARED PIPELINE KNOWLEDGE ---\n"
            f"Read `{_display_path(paths, shared)}` for cross-stage insights from earlier pipeline stages."
        )
    return prompt


def build_session_prompt(task_prompt: str, instructions: str) -> str:
    """Append *instructions* unless the task text already carries a copy."""
    if HANDOFF_INSTRUCTIONS_HEADER in task_prompt or STAGE_INSTRUCTIONS_HEADER in task_prompt:
        return task_prompt
    return f"{task_prompt.rstrip()}\n{instructions}"
