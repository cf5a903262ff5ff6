"""Session launcher.

Runs one bounded agent invocation, supervises it until a handoff is ready
or the session timeout fires, and classifies what it left behind. When the
agent worked but exited without a handoff, a rescue handoff is written so
the next session can pick up the thread.
"""

from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cleave.constants import (
    AGENT_UNSAFE_FLAG,
    ENV_COMPLETION_MARKER_HOOK,
    ENV_RELAY_DIR,
    ENV_SESSION,
    ENV_WORK_DIR,
    MAX_CAPTURE_CHARS,
    STATUS_IN_PROGRESS,
)
from cleave.detection import (
    coerce_reset_time,
    detect_rate_limit,
    is_complete,
    parse_rate_limit_reset,
)
from cleave.hooks import write_settings_file
from cleave.knowledge import append_session_entry
from cleave.models import (
    ExitKind,
    RelayConfig,
    SessionCrashError,
    SessionOutcome,
    SessionResult,
    StreamEvent,
    StreamEventKind,
)
from cleave.state import (
    RelayPaths,
    check_handoff_files,
    clear_handoff_signal,
    read_handoff_signal,
    read_tool_use,
    reset_tool_use,
    touch_session_start,
    was_modified_this_session,
)
from cleave.utils import (
    _compact_log_text,
    _read_text_if_exists,
    _redact_sensitive_text,
    _report,
    _utc_now,
)

_SHELL_META_PATTERN = re.compile(r"[|&;<>()$`]")
_COMMAND_TOKEN_PATTERN = re.compile(r"\{(task|instructions|settings_path|prompt_path|session|work_dir)\}")
_RESCUE_TASK_HEADER = "--- TASK ---"
_RESCUE_PROGRESS_HEADER = "## Progress before the rescue"
_RESCUE_PREAMBLE_PATTERN = re.compile(r"^Session #\d+ of this relay exited without a handoff")
_RESCUE_PROGRESS_PATTERN = re.compile(r"^## STATUS: [^\n]*\n+## Rescue handoff \(session #\d+\)")
_NOT_LIMITED_STATUSES = {"allowed", "allowed_warning"}


@dataclass(frozen=True)
class _Supervision:
    exit_kind: ExitKind
    returncode: int | None
    timed_out: bool = False
    ready: bool = False


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def _command_uses_shell_syntax(command: str) -> bool:
    return bool(_SHELL_META_PATTERN.search(command))


def _substitute_agent_command(template: str, values: dict[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        return shlex.quote(values.get(match.group(1), ""))

    return _COMMAND_TOKEN_PATTERN.sub(_replace, template)


def build_agent_argv(config: RelayConfig, values: dict[str, str]) -> list[str]:
    template = config.agent.command
    if _command_uses_shell_syntax(template):
        raise SessionCrashError(
            "agent.command contains shell metacharacters; "
            "configure an argv-safe command without pipes/subshell syntax"
        )
    try:
        argv = shlex.split(_substitute_agent_command(template, values))
    except ValueError as exc:
        raise SessionCrashError(f"agent command could not be parsed: {exc}") from exc
    if not argv:
        raise SessionCrashError("agent command resolved to empty arguments")
    if not config.agent.safe_mode and AGENT_UNSAFE_FLAG not in argv:
        argv.append(AGENT_UNSAFE_FLAG)
    return argv


def _session_directive(session: int, prompt_path: Path) -> str:
    return (
        f"You are session #{session} of an automated cleave relay. "
        f'Read the file "{prompt_path}" for your full task instructions. '
        "Execute those instructions immediately. Do NOT ask for confirmation."
    )


# ---------------------------------------------------------------------------
# Stream parsing
# ---------------------------------------------------------------------------


def _rate_limit_event(payload: dict[str, Any]) -> StreamEvent | None:
    info = payload.get("rate_limit_info")
    info = info if isinstance(info, dict) else payload
    status = str(info.get("status", "")).strip().lower()
    if status in _NOT_LIMITED_STATUSES:
        return None
    resets_at = coerce_reset_time(
        info.get("resets_at", info.get("resetsAt", payload.get("resets_at")))
    )
    return StreamEvent(
        kind=StreamEventKind.RATE_LIMIT_EVENT,
        text=status,
        resets_at=resets_at,
        raw_type=str(payload.get("type", "")),
    )


def parse_stream_line(line: str) -> list[StreamEvent]:
    """Decode one line of streamed JSON output into typed events.

    An assistant message may carry several content blocks, so one line can
    yield a text event plus one event per tool invocation. Lines that are
    not JSON objects, or carry an unrecognised ``type``, become ``UNKNOWN``.
    """
    text = line.strip()
    if not text:
        return []
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return [StreamEvent(kind=StreamEventKind.UNKNOWN, text=text)]
    if not isinstance(payload, dict):
        return [StreamEvent(kind=StreamEventKind.UNKNOWN, text=text)]

    event_type = str(payload.get("type", "")).strip()
    if event_type == "assistant":
        message = payload.get("message")
        blocks = message.get("content") if isinstance(message, dict) else None
        events: list[StreamEvent] = []
        texts: list[str] = []
        for block in blocks if isinstance(blocks, list) else []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                texts.append(str(block.get("text", "")))
            elif block.get("type") == "tool_use":
                events.append(
                    StreamEvent(
                        kind=StreamEventKind.TOOL_USE,
                        tool_name=str(block.get("name", "")),
                        raw_type=event_type,
                    )
                )
        if texts:
            events.insert(0, StreamEvent(kind=StreamEventKind.ASSISTANT, text="".join(texts), raw_type=event_type))
        return events
    if event_type == "tool_use":
        return [StreamEvent(kind=StreamEventKind.TOOL_USE, tool_name=str(payload.get("name", "")), raw_type=event_type)]
    if event_type == "result":
        return [
            StreamEvent(
                kind=StreamEventKind.RESULT,
                text=str(payload.get("result", "") or ""),
                is_error=bool(payload.get("is_error", False)),
                raw_type=event_type,
            )
        ]
    if event_type in {"rate_limit_event", "rate_limit"}:
        event = _rate_limit_event(payload)
        return [event] if event is not None else []
    if event_type == "error":
        error = payload.get("error")
        message = error.get("message", "") if isinstance(error, dict) else error or payload.get("message", "")
        return [StreamEvent(kind=StreamEventKind.ERROR, text=str(message), is_error=True, raw_type=event_type)]
    if event_type == "system":
        return [StreamEvent(kind=StreamEventKind.SYSTEM, text=str(payload.get("subtype", "")), raw_type=event_type)]
    return [StreamEvent(kind=StreamEventKind.UNKNOWN, text=text, raw_type=event_type)]


class _StreamCollector:
    """Accumulates what the streamed session reported. Written by one pump thread."""

    def __init__(self, *, echo: bool = False) -> None:
        self.echo = echo
        self.tool_uses = 0
        self.last_tool = ""
        self.result_text = ""
        self.error_text = ""
        self.rate_limited = False
        self.rate_limit_reset_at: float | None = None
        self._captured: list[str] = []
        self._captured_len = 0

    def capture(self, text: str) -> None:
        if self._captured_len >= MAX_CAPTURE_CHARS:
            return
        snippet = text[: MAX_CAPTURE_CHARS - self._captured_len]
        self._captured.append(snippet)
        self._captured_len += len(snippet)

    @property
    def captured(self) -> str:
        return "".join(self._captured)

    def handle(self, event: StreamEvent) -> None:
        if event.kind is StreamEventKind.ASSISTANT:
            self.capture(event.text)
            if self.echo:
                sys.stdout.write(event.text)
                sys.stdout.flush()
        elif event.kind is StreamEventKind.TOOL_USE:
            self.tool_uses += 1
            self.last_tool = event.tool_name or self.last_tool
        elif event.kind is StreamEventKind.RESULT:
            self.result_text += event.text
            self.capture(event.text)
            if event.is_error:
                self.error_text += event.text
        elif event.kind is StreamEventKind.RATE_LIMIT_EVENT:
            self.rate_limited = True
            self.rate_limit_reset_at = event.resets_at
        elif event.kind is StreamEventKind.ERROR:
            self.error_text += event.text
            self.capture(event.text)


# ---------------------------------------------------------------------------
# Process supervision
# ---------------------------------------------------------------------------


def _deadline(timeout: float) -> float | None:
    return time.monotonic() + timeout if timeout > 0 else None


def _bounded(seconds: float, deadline: float | None) -> float:
    if deadline is None:
        return max(seconds, 0.0)
    return max(min(seconds, deadline - time.monotonic()), 0.0)


def _expired(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _wait(process: Any, seconds: float) -> int | None:
    try:
        return process.wait(timeout=seconds)
    except subprocess.TimeoutExpired:
        return None


def _terminate(process: Any, timeout: float) -> int | None:
    if process.poll() is not None:
        return process.returncode
    process.terminate()
    try:
        return process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        return process.wait()


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return -1


def _handoff_ready(config: RelayConfig, paths: RelayPaths) -> bool:
    if read_handoff_signal(paths):
        return True
    return was_modified_this_session(paths.progress_file, paths.session_start_marker) and is_complete(
        paths.progress_file, config.completion_marker
    )


def _supervise_polling(process: Any, config: RelayConfig, paths: RelayPaths) -> _Supervision:
    """Watch an interactive agent that never exits on its own.

    Readiness is a fresh handoff signal or a freshly written completion
    marker. The next-task file must keep the same size over ``stable_polls``
    consecutive polls before the agent is terminated.
    """
    agent = config.agent
    deadline = _deadline(config.session_timeout)
    returncode = _wait(process, _bounded(agent.initial_grace_seconds, deadline))
    last_size: int | None = None
    stable = 0
    while returncode is None:
        if _expired(deadline):
            _report(
                paths.relay_dir,
                f"session timed out after {config.session_timeout:.0f}s; terminating agent",
                level="warn",
            )
            returncode = _terminate(process, agent.terminate_timeout_seconds)
            return _Supervision(ExitKind.TERMINATED_BY_ORCHESTRATOR, returncode, timed_out=True)
        if _handoff_ready(config, paths):
            size = _file_size(paths.next_prompt_file)
            stable = stable + 1 if size == last_size else 1
            last_size = size
            if stable >= agent.stable_polls:
                _report(paths.relay_dir, "handoff ready; stopping agent", level="debug", verbose=config.verbose)
                returncode = _wait(process, _bounded(agent.post_handoff_grace_seconds, deadline))
                if returncode is None:
                    returncode = _terminate(process, agent.terminate_timeout_seconds)
                return _Supervision(ExitKind.TERMINATED_BY_ORCHESTRATOR, returncode, ready=True)
        else:
            stable = 0
            last_size = None
        returncode = _wait(process, _bounded(agent.poll_interval_seconds, deadline))
    kind = ExitKind.EXITED_CLEANLY if returncode == 0 else ExitKind.CRASHED
    return _Supervision(kind, returncode)


def _supervise_streamed(
    process: Any,
    config: RelayConfig,
    paths: RelayPaths,
    collector: _StreamCollector,
) -> _Supervision:
    agent = config.agent
    deadline = _deadline(config.session_timeout)
    while True:
        returncode = _wait(process, _bounded(agent.poll_interval_seconds, deadline))
        if returncode is not None:
            kind = ExitKind.EXITED_CLEANLY if returncode == 0 else ExitKind.CRASHED
            return _Supervision(kind, returncode)
        if collector.rate_limited:
            _report(paths.relay_dir, "rate limit event received; stopping agent", level="warn")
            returncode = _terminate(process, agent.terminate_timeout_seconds)
            return _Supervision(ExitKind.TERMINATED_BY_ORCHESTRATOR, returncode)
        if _expired(deadline):
            _report(
                paths.relay_dir,
                f"session timed out after {config.session_timeout:.0f}s; terminating agent",
                level="warn",
            )
            returncode = _terminate(process, agent.terminate_timeout_seconds)
            return _Supervision(ExitKind.TERMINATED_BY_ORCHESTRATOR, returncode, timed_out=True)


def _feed_stdin(stream: Any, text: str) -> None:
    if stream is None:
        return
    try:
        stream.write(text)
        stream.flush()
    except BrokenPipeError:
        pass
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            pass


def _pump_events(stream: Any, collector: _StreamCollector) -> None:
    if stream is None:
        return
    try:
        for line in iter(stream.readline, ""):
            for event in parse_stream_line(line):
                collector.handle(event)
    finally:
        try:
            stream.close()
        except Exception:
            pass


def _pump_text(stream: Any, sink: Any, collector: _StreamCollector) -> None:
    if stream is None:
        return
    try:
        for line in iter(stream.readline, ""):
            sink.write(line)
            sink.flush()
            collector.capture(line)
    finally:
        try:
            stream.close()
        except Exception:
            pass


# ---------------------------------------------------------------------------
# Outcome classification
# ---------------------------------------------------------------------------


def _unwrap_rescue(text: str, pattern: re.Pattern[str], header: str) -> str:
    """Return the content an earlier rescue wrapped, so rescues never nest."""
    if not pattern.match(text):
        return text
    _, found, inner = text.partition(f"\n{header}\n")
    return inner.strip() if found else ""


def write_rescue_handoff(
    config: RelayConfig,
    paths: RelayPaths,
    *,
    session: int,
    tool_uses: int,
    last_tool: str,
) -> None:
    """Synthesize the handoff files for a session that worked but never handed off."""
    relay_dir = paths.relay_dir.relative_to(paths.work_dir).as_posix()
    previous_progress = _unwrap_rescue(
        _read_text_if_exists(paths.progress_file).strip(), _RESCUE_PROGRESS_PATTERN, _RESCUE_PROGRESS_HEADER
    )
    previous_next = _unwrap_rescue(
        _read_text_if_exists(paths.next_prompt_file).strip(), _RESCUE_PREAMBLE_PATTERN, _RESCUE_TASK_HEADER
    )
    if not previous_next and config.initial_prompt_file is not None:
        previous_next = _read_text_if_exists(config.initial_prompt_file).strip()

    progress = [
        f"## STATUS: {STATUS_IN_PROGRESS}",
        "",
        f"## Rescue handoff (session #{session})",
        f"Session #{session} exited without writing handoff files.",
        f"It made {tool_uses} tool call(s); the last tool used was {last_tool or 'unknown'}.",
        "Its work is likely in the working tree or version-control history but is not described here.",
    ]
    if previous_progress:
        progress.extend(["", _RESCUE_PROGRESS_HEADER, previous_progress])
    paths.progress_file.write_text("\n".join(progress) + "\n", encoding="utf-8")

    next_prompt = [
        f"Session #{session} of this relay exited without a handoff after {tool_uses} tool call(s).",
        "Before doing anything else, reconstruct what it did:",
        "1. Run `git log --oneline -10`, `git status` and `git diff` to see recent changes.",
        f"2. Read `{relay_dir}/KNOWLEDGE.md` and `{relay_dir}/PROGRESS.md`.",
        "3. Verify the partial work, then continue the task below from where it stopped.",
    ]
    if previous_next:
        next_prompt.extend(["", _RESCUE_TASK_HEADER, previous_next])
    paths.next_prompt_file.write_text("\n".join(next_prompt) + "\n", encoding="utf-8")

    append_session_entry(
        paths.knowledge_file,
        session,
        f"Exited without a handoff after {tool_uses} tool call(s) (last tool: {last_tool or 'unknown'}). "
        "Progress and next-task were synthesized by the relay.",
        label="rescue",
    )


def classify_session(
    config: RelayConfig,
    paths: RelayPaths,
    *,
    session: int,
    supervision: _Supervision,
    collector: _StreamCollector | None = None,
    started_at: str = "",
) -> SessionResult:
    file_tool_uses, file_last_tool = read_tool_use(paths)
    tool_uses = max(file_tool_uses, collector.tool_uses if collector else 0)
    last_tool = (collector.last_tool if collector else "") or file_last_tool
    result = SessionResult(
        session=session,
        outcome=SessionOutcome.CRASHED,
        exit_kind=supervision.exit_kind,
        exit_code=supervision.returncode,
        timed_out=supervision.timed_out,
        tool_use_count=tool_uses,
        last_tool=last_tool,
        result_text=collector.result_text if collector else "",
        started_at=started_at,
    )

    if supervision.ready:
        result.outcome = SessionOutcome.HANDED_OFF
        return result

    if collector is not None and collector.rate_limited:
        result.outcome = SessionOutcome.RATE_LIMITED
        result.rate_limit_reset_at = collector.rate_limit_reset_at
        return result

    check = check_handoff_files(paths, config.completion_marker)
    reported_error = collector is not None and bool(collector.error_text)
    if not check.valid and (supervision.exit_kind is not ExitKind.EXITED_CLEANLY or reported_error):
        evidence = collector.captured if collector else ""
        if was_modified_this_session(paths.progress_file, paths.session_start_marker):
            evidence += "\n" + _read_text_if_exists(paths.progress_file)
        if detect_rate_limit(evidence):
            result.outcome = SessionOutcome.RATE_LIMITED
            result.rate_limit_reset_at = parse_rate_limit_reset(evidence)
            return result

    if check.valid:
        result.outcome = SessionOutcome.HANDED_OFF
        return result

    if tool_uses > 0:
        write_rescue_handoff(config, paths, session=session, tool_uses=tool_uses, last_tool=last_tool)
        _report(
            paths.relay_dir,
            f"session {session} left no handoff ({check.reason}); wrote rescue handoff "
            f"from {tool_uses} tool call(s)",
            level="warn",
        )
        result.outcome = SessionOutcome.HANDED_OFF
        result.rescued = True
        return result

    _report(paths.relay_dir, f"session {session} produced no handoff and no activity ({check.reason})", level="warn")
    return result


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


def prepare_session(paths: RelayPaths) -> None:
    paths.relay_dir.mkdir(parents=True, exist_ok=True)
    clear_handoff_signal(paths)
    reset_tool_use(paths)
    touch_session_start(paths)


def _agent_env(config: RelayConfig, paths: RelayPaths, session: int) -> dict[str, str]:
    env = os.environ.copy()
    env[ENV_SESSION] = str(session)
    env[ENV_WORK_DIR] = str(config.work_dir)
    env[ENV_RELAY_DIR] = str(paths.relay_dir)
    env[ENV_COMPLETION_MARKER_HOOK] = config.completion_marker
    return env


def launch_session(
    config: RelayConfig,
    paths: RelayPaths,
    *,
    session: int,
    task_prompt: str,
    instructions: str,
    session_prompt: str,
) -> SessionResult:
    """Run one agent session to completion and classify the result.

    *session_prompt* (task plus instructions) is written to
    ``.session_prompt.md``; interactive mode points the agent at that file
    and passes *instructions* separately, print mode sends it on stdin.
    """
    started_at = _utc_now()
    paths.session_prompt_file.parent.mkdir(parents=True, exist_ok=True)
    paths.session_prompt_file.write_text(session_prompt, encoding="utf-8")
    settings_path = write_settings_file(paths)
    streamed = config.agent.mode == "print"
    values = {
        "task": task_prompt if streamed else _session_directive(session, paths.session_prompt_file),
        "instructions": instructions,
        "settings_path": str(settings_path),
        "prompt_path": str(paths.session_prompt_file),
        "session": str(session),
        "work_dir": str(config.work_dir),
    }
    argv = build_agent_argv(config, values)
    flags = " ".join(arg for arg in argv[1:] if arg.startswith("-"))
    _report(
        paths.relay_dir,
        f"launching session {session} mode={config.agent.mode} program={argv[0]} "
        f"flags={_redact_sensitive_text(flags)}",
        level="debug",
        verbose=config.verbose,
    )

    prepare_session(paths)
    collector = _StreamCollector(echo=config.verbose) if streamed else None
    process: Any = None
    threads: list[threading.Thread] = []
    try:
        try:
            if streamed:
                process = subprocess.Popen(
                    argv,
                    cwd=config.work_dir,
                    shell=False,
                    text=True,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=1,
                    env=_agent_env(config, paths, session),
                )
            else:
                process = subprocess.Popen(
                    argv,
                    cwd=config.work_dir,
                    shell=False,
                    env=_agent_env(config, paths, session),
                )
        except OSError as exc:
            _report(paths.relay_dir, f"failed to start agent {argv[0]}: {exc}", level="error")
            return SessionResult(
                session=session,
                outcome=SessionOutcome.CRASHED,
                exit_kind=ExitKind.CRASHED,
                started_at=started_at,
            )

        if streamed:
            # Output is drained before and while the prompt is written, under the session deadline.
            threads = [
                threading.Thread(target=_pump_events, args=(process.stdout, collector), daemon=True),
                threading.Thread(target=_pump_text, args=(process.stderr, sys.stderr, collector), daemon=True),
                threading.Thread(target=_feed_stdin, args=(process.stdin, session_prompt), daemon=True),
            ]
            for thread in threads:
                thread.start()
            supervision = _supervise_streamed(process, config, paths, collector)
        else:
            supervision = _supervise_polling(process, config, paths)
    finally:
        if process is not None and process.poll() is None:
            _terminate(process, config.agent.terminate_timeout_seconds)
        for thread in threads:
            thread.join(timeout=2)

    if collector is not None and collector.captured.strip():
        _report(
            paths.relay_dir,
            f"agent output session={session}: {_compact_log_text(_redact_sensitive_text(collector.captured))}",
            level="debug",
            verbose=False,
        )
    result = classify_session(
        config,
        paths,
        session=session,
        supervision=supervision,
        collector=collector,
        started_at=started_at,
    )
    _report(
        paths.relay_dir,
        f"session {session} outcome={result.outcome.value} exit={result.exit_kind.value} "
        f"code={result.exit_code} tools={result.tool_use_count} timed_out={result.timed_out}",
        level="debug",
        verbose=config.verbose,
    )
    return result
