"""Relay core: the single-stage session loop and the ``cleave run`` entry point."""

from __future__ import annotations

import math
import signal
import threading
import time
from typing import Any

from cleave.config import validate_relay_config
from cleave.constants import (
    DEFAULT_RATE_LIMIT_BACKOFF_SECONDS,
    MAX_CONSECUTIVE_CRASHES,
    MAX_CONSECUTIVE_LOOPS,
    RATE_LIMIT_COUNTDOWN_TICK_SECONDS,
    RATE_LIMIT_RESET_MARGIN_SECONDS,
)
from cleave.detection import detect_loop, is_complete, run_verification
from cleave.knowledge import compact_knowledge
from cleave.lock import FileLock
from cleave.models import (
    PromptBuildError,
    RelayConfig,
    RelayInterrupted,
    RelayResult,
    RelayState,
    SessionCrashError,
    SessionOutcome,
    StuckInLoopError,
)
from cleave.prompts import build_handoff_instructions, build_session_prompt, build_task_prompt
from cleave.session import launch_session
from cleave.state import (
    RelayPaths,
    archive_session,
    archived_file,
    cleanup_relay,
    init_relay_dir,
    mark_active,
    reset_for_continuation,
    resolve_paths,
    write_session_count,
    write_status,
)
from cleave.utils import _read_text_if_exists, _report

EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_FAILED = 2
EXIT_INTERRUPTED = 130


def _raise_terminated(signum: int, frame: Any) -> None:
    raise RelayInterrupted(f"received signal {signum}", exit_code=128 + signum)


def install_terminate_handler() -> Any:
    """Turn SIGTERM into ``RelayInterrupted`` so cleanup runs; returns the old handler."""
    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGTERM, _raise_terminated)


def restore_terminate_handler(previous: Any) -> None:
    if previous is not None:
        signal.signal(signal.SIGTERM, previous)


def wait_for_rate_limit(config: RelayConfig, paths: RelayPaths, reset_at: float | None) -> float:
    """Sleep until the reported reset time (plus a margin) or the default backoff."""
    if reset_at is not None:
        wait = max(reset_at - time.time() + RATE_LIMIT_RESET_MARGIN_SECONDS, 0.0)
    else:
        wait = DEFAULT_RATE_LIMIT_BACKOFF_SECONDS
    wait = min(wait, config.rate_limit_max_wait)
    _report(paths.relay_dir, f"rate limit detected; waiting {math.ceil(wait)}s for reset", level="warn")
    remaining = wait
    while remaining > 0:
        minutes, seconds = divmod(int(remaining), 60)
        print(f"\r  rate limit reset in: {minutes:02d}:{seconds:02d}  ", end="", flush=True)
        tick = min(RATE_LIMIT_COUNTDOWN_TICK_SECONDS, remaining)
        time.sleep(tick)
        remaining -= tick
    if wait > 0:
        print("\r  rate limit should be lifted.              ")
    return wait


def _status(config: RelayConfig, paths: RelayPaths, session: int, max_sessions: int, status: str, message: str) -> None:
    write_status(
        paths,
        session=session,
        max_sessions=max_sessions,
        status=status,
        message=message,
        completion_marker=config.completion_marker,
    )


def _record_crash(
    config: RelayConfig,
    paths: RelayPaths,
    state: RelayState,
    *,
    max_sessions: int,
    label: str,
    reason: str,
) -> None:
    state.consecutive_crashes += 1
    if state.consecutive_crashes >= MAX_CONSECUTIVE_CRASHES:
        message = f"{MAX_CONSECUTIVE_CRASHES} consecutive failures ({reason})"
        state.status = "error"
        _status(config, paths, state.session, max_sessions, "error", message)
        _report(paths.relay_dir, f"{label}{message}; stopping", level="error")
        raise SessionCrashError(message)
    _report(
        paths.relay_dir,
        f"{label}session #{state.session} failed: {reason} "
        f"(crash {state.consecutive_crashes}/{MAX_CONSECUTIVE_CRASHES})",
        level="warn",
    )


def _complete(
    config: RelayConfig,
    paths: RelayPaths,
    state: RelayState,
    *,
    start: int,
    max_sessions: int,
    session: int,
    status: str,
    message: str,
) -> RelayResult:
    state.session = session
    state.status = status
    _status(config, paths, session, max_sessions, status, message)
    return RelayResult(
        completed=True,
        status=status,
        sessions_run=session - start,
        last_session=session,
        message=message,
    )


def run_relay_core(
    config: RelayConfig,
    paths: RelayPaths,
    state: RelayState,
    *,
    max_sessions: int,
    instructions: str,
    label: str = "",
) -> RelayResult:
    """Run sessions until completion, verification, or the session limit.

    ``state.session`` holds the last finished session on entry and is
    advanced in place. Three consecutive loop detections raise
    ``StuckInLoopError``; three consecutive crashes raise
    ``SessionCrashError``. Both persist an explanatory status first.
    """
    start = state.session
    marker = config.completion_marker
    while state.session < max_sessions:
        state.session += 1
        session = state.session

        if is_complete(paths.progress_file, marker):
            done = session - 1
            _report(paths.relay_dir, f"{label}task complete after session #{done}")
            return _complete(
                config, paths, state, start=start, max_sessions=max_sessions,
                session=done, status="complete", message="All done",
            )

        try:
            compacted = compact_knowledge(paths.knowledge_file, config.knowledge_keep_sessions)
        except OSError as exc:
            _report(paths.relay_dir, f"{label}knowledge compaction failed (non-fatal): {exc}", level="warn")
        else:
            if compacted.pruned:
                _report(
                    paths.relay_dir,
                    f"knowledge compacted: {compacted.old_lines} -> {compacted.new_lines} lines",
                    level="debug",
                    verbose=config.verbose,
                )

        try:
            task_prompt = build_task_prompt(config, paths, session)
            session_prompt = build_session_prompt(task_prompt, instructions)
        except PromptBuildError as exc:
            _record_crash(config, paths, state, max_sessions=max_sessions, label=label, reason=f"prompt build: {exc}")
            continue

        _report(paths.relay_dir, f"{label}session #{session}/{max_sessions} starting")
        write_session_count(paths, session)
        _status(config, paths, session, max_sessions, "running", f"{label}Session #{session} active")
        try:
            result = launch_session(
                config,
                paths,
                session=session,
                task_prompt=task_prompt,
                instructions=instructions,
                session_prompt=session_prompt,
            )
        except SessionCrashError as exc:
            _record_crash(config, paths, state, max_sessions=max_sessions, label=label, reason=str(exc))
            continue

        if result.outcome is SessionOutcome.RATE_LIMITED:
            _status(config, paths, session, max_sessions, "rate_limited", "Waiting for rate limit reset")
            wait_for_rate_limit(config, paths, result.rate_limit_reset_at)
            _report(paths.relay_dir, f"{label}rate limit cleared; retrying session #{session}")
            state.session -= 1
            write_session_count(paths, state.session)
            state.consecutive_crashes = 0
            continue

        crashed = result.outcome is SessionOutcome.CRASHED
        if crashed:
            _record_crash(
                config, paths, state, max_sessions=max_sessions, label=label,
                reason=f"exit {result.exit_code} ({result.exit_kind.value})",
            )
        else:
            state.consecutive_crashes = 0

        if config.verify_command:
            verification = run_verification(config.verify_command, cwd=config.work_dir, timeout=config.verify_timeout)
            if verification.passed:
                _report(paths.relay_dir, f"{label}verification passed")
                if not crashed:
                    archive_session(paths, session, prompt_text=session_prompt)
                return _complete(
                    config, paths, state, start=start, max_sessions=max_sessions,
                    session=session, status="verified_complete", message="Verification passed",
                )
            _report(
                paths.relay_dir,
                f"{label}verification not passing yet (exit {verification.exit_code}"
                f"{', timed out' if verification.timed_out else ''})",
                level="debug",
                verbose=config.verbose,
            )

        if not crashed:
            previous = _read_text_if_exists(archived_file(paths, session - 1, "next_prompt.md"))
            loop = detect_loop(_read_text_if_exists(paths.next_prompt_file), previous, session=session)
            if loop.is_loop:
                state.consecutive_loops += 1
                if state.consecutive_loops >= MAX_CONSECUTIVE_LOOPS:
                    message = f"Loop detected {MAX_CONSECUTIVE_LOOPS} times"
                    state.status = "stuck"
                    archive_session(paths, session, prompt_text=session_prompt)
                    _status(config, paths, session, max_sessions, "stuck", message)
                    _report(paths.relay_dir, f"{label}{message}; stopping", level="error")
                    raise StuckInLoopError(message)
                _report(
                    paths.relay_dir,
                    f"{label}loop detected: {loop.similarity}% similar "
                    f"(attempt {state.consecutive_loops}/{MAX_CONSECUTIVE_LOOPS})",
                    level="warn",
                )
            else:
                state.consecutive_loops = 0

        if not crashed:
            archive_session(paths, session, prompt_text=session_prompt)
            if paths.next_prompt_file.exists():
                _report(paths.relay_dir, f"{label}handoff received ({paths.next_prompt_file.stat().st_size} bytes)")
            else:
                _report(paths.relay_dir, f"{label}no NEXT_PROMPT.md; next session uses the initial prompt", level="warn")

        if is_complete(paths.progress_file, marker):
            _report(paths.relay_dir, f"{label}task complete after session #{session}")
            return _complete(
                config, paths, state, start=start, max_sessions=max_sessions,
                session=session, status="complete", message="All done",
            )

        state.status = "paused"
        _status(config, paths, session, max_sessions, "paused", "Between sessions")
        if state.session < max_sessions and config.pause_seconds > 0:
            _report(
                paths.relay_dir,
                f"next session in {config.pause_seconds:g}s",
                level="debug",
                verbose=config.verbose,
            )
            time.sleep(config.pause_seconds)

    state.status = "max_sessions"
    _status(config, paths, state.session, max_sessions, "max_sessions", "Stopped at session limit")
    _report(paths.relay_dir, f"{label}reached max sessions ({max_sessions})", level="warn")
    return RelayResult(
        completed=False,
        status="max_sessions",
        sessions_run=state.session - start,
        last_session=state.session,
        message="Stopped at session limit",
    )


def run_relay(config: RelayConfig, *, continue_task: str | None = None) -> int:
    """Run a standard relay in ``config.work_dir`` and return the process exit code."""
    validate_relay_config(config)
    paths = resolve_paths(config.work_dir)
    init_relay_dir(paths)

    lock = FileLock(paths.relay_dir, command="continue" if continue_task else "run")
    if not lock.acquire():
        _report(
            paths.relay_dir,
            f"another cleave run (pid={lock.holder_pid()}) is active in this directory; "
            f"only one relay can run per working directory",
            level="error",
        )
        return EXIT_INCOMPLETE

    state = RelayState(lock_pid=lock.pid, active=True)
    if paths.active_relay_marker.exists():
        _report(paths.relay_dir, "found stale .active_relay from a previous crash; replacing it", level="warn")
    mark_active(paths)
    previous_handler = install_terminate_handler()
    max_sessions = config.max_sessions
    try:
        if continue_task:
            state.session = reset_for_continuation(paths, continue_task)
            max_sessions = state.session + config.max_sessions
            _report(paths.relay_dir, f"continuing from session #{state.session} with a new task")
        else:
            state.session = config.resume_from
            if config.resume_from:
                _report(paths.relay_dir, f"resuming after session #{config.resume_from}")
        _report(
            paths.relay_dir,
            f"relay started in {config.work_dir} (mode={config.agent.mode}, max_sessions={max_sessions})",
        )
        result = run_relay_core(
            config,
            paths,
            state,
            max_sessions=max_sessions,
            instructions=build_handoff_instructions(config, paths),
        )
    except (StuckInLoopError, SessionCrashError):
        return EXIT_FAILED
    except KeyboardInterrupt:
        _status(config, paths, state.session, max_sessions, "interrupted", "Interrupted by user")
        _report(paths.relay_dir, "interrupted; state saved for resume", level="warn")
        return EXIT_INTERRUPTED
    except RelayInterrupted as exc:
        _status(config, paths, state.session, max_sessions, "interrupted", str(exc))
        _report(paths.relay_dir, f"terminated ({exc}); state saved for resume", level="warn")
        return exc.exit_code
    finally:
        restore_terminate_handler(previous_handler)
        state.active = False
        cleanup_relay(paths)
        lock.release()

    if result.completed:
        return EXIT_OK
    _report(
        paths.relay_dir,
        f"resume with: cleave run --resume-from {result.last_session} "
        f"--max-sessions {max_sessions + 10} <prompt-file>",
        level="debug",
        verbose=config.verbose,
    )
    return EXIT_INCOMPLETE
