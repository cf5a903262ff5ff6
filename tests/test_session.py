from __future__ import annotations

import io
import json
import os
import subprocess
import threading
import time
from pathlib import Path

import pytest

import cleave.session as session_mod
from cleave.constants import AGENT_COMMAND_PRESETS, AGENT_UNSAFE_FLAG
from cleave.models import (
    AgentConfig,
    ExitKind,
    RelayConfig,
    SessionCrashError,
    SessionOutcome,
    StreamEventKind,
)
from cleave.session import (
    _StreamCollector,
    _Supervision,
    build_agent_argv,
    classify_session,
    launch_session,
    parse_stream_line,
    write_rescue_handoff,
)
from cleave.state import RelayPaths, init_relay_dir, resolve_paths, touch_session_start


def _relay_config(tmp_path: Path, *, mode: str = "print", **overrides) -> RelayConfig:
    prompt = tmp_path / "task.md"
    if not prompt.exists():
        prompt.write_text("Build the parser.\n", encoding="utf-8")
    agent = AgentConfig(
        mode=mode,
        command=overrides.pop("command", AGENT_COMMAND_PRESETS[mode]),
        safe_mode=overrides.pop("safe_mode", False),
        initial_grace_seconds=0.0,
        poll_interval_seconds=0.01,
        stable_polls=2,
        post_handoff_grace_seconds=0.0,
        terminate_timeout_seconds=0.1,
    )
    values = dict(
        work_dir=tmp_path,
        initial_prompt_file=prompt,
        max_sessions=5,
        pause_seconds=0.0,
        completion_marker="ALL_COMPLETE",
        knowledge_keep_sessions=5,
        rate_limit_max_wait=0.0,
        session_timeout=0.0,
        verify_command=None,
        verify_timeout=10.0,
        handoff_threshold=60,
        handoff_deadline=70,
        resume_from=0,
        verbose=False,
        agent=agent,
    )
    values.update(overrides)
    return RelayConfig(**values)


def _age(path: Path, seconds: float = 30.0) -> None:
    past = time.time() - seconds
    os.utime(path, (past, past))


def _write_handoff(paths: RelayPaths, *, status: str = "IN_PROGRESS") -> None:
    _age(paths.session_start_marker)
    paths.progress_file.write_text(f"## STATUS: {status}\n", encoding="utf-8")
    paths.next_prompt_file.write_text("Continue with the lexer.\n", encoding="utf-8")


class _StaticStream:
    def __init__(self, lines: list[str]) -> None:
        self._lines = list(lines)

    def readline(self) -> str:
        if self._lines:
            return self._lines.pop(0)
        return ""

    def close(self) -> None:
        return None


class _RecordingStdin(io.StringIO):
    def close(self) -> None:
        self.recorded = self.getvalue()
        super().close()


def _process_factory(paths: RelayPaths, *, stdout: list[str] = (), returncode: int | None = 0, on_start=None):
    """Build a fake Popen class; ``returncode=None`` keeps it running until terminated."""
    launched: list["_FakeProcess"] = []

    class _FakeProcess:
        def __init__(self, argv, **kwargs) -> None:
            self.argv = list(argv)
            self.kwargs = kwargs
            self.stdin = _RecordingStdin() if kwargs.get("stdin") == subprocess.PIPE else None
            self.stdout = _StaticStream(list(stdout)) if kwargs.get("stdout") == subprocess.PIPE else None
            self.stderr = _StaticStream([]) if kwargs.get("stderr") == subprocess.PIPE else None
            self.pid = 999999
            self.returncode = returncode
            self.terminated = False
            launched.append(self)
            if on_start is not None:
                on_start(paths)

        def wait(self, timeout: float | None = None) -> int:
            if self.returncode is not None:
                return self.returncode
            raise subprocess.TimeoutExpired(cmd="fake-agent", timeout=timeout or 0.0)

        def poll(self) -> int | None:
            return self.returncode

        def terminate(self) -> None:
            self.terminated = True
            self.returncode = -15

        def kill(self) -> None:
            self.returncode = -9

    return _FakeProcess, launched


def _line(payload: dict) -> str:
    return json.dumps(payload) + "\n"


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def test_agent_argv_quotes_values_and_adds_unsafe_flag(tmp_path: Path) -> None:
    config = _relay_config(tmp_path, mode="interactive")
    argv = build_agent_argv(
        config,
        {"task": "do 'this'; rm -rf /", "instructions": "hand off", "settings_path": "/tmp/s.json"},
    )
    assert argv[:2] == ["claude", "do 'this'; rm -rf /"]
    assert argv[argv.index("--append-system-prompt") + 1] == "hand off"
    assert argv[-1] == AGENT_UNSAFE_FLAG


def test_safe_mode_omits_unsafe_flag(tmp_path: Path) -> None:
    config = _relay_config(tmp_path, safe_mode=True)
    argv = build_agent_argv(config, {"settings_path": "s.json"})
    assert AGENT_UNSAFE_FLAG not in argv
    assert argv[:2] == ["claude", "-p"]


def test_shell_syntax_in_command_template_is_rejected(tmp_path: Path) -> None:
    config = _relay_config(tmp_path, command="claude -p | tee out.log")
    with pytest.raises(SessionCrashError):
        build_agent_argv(config, {})


# ---------------------------------------------------------------------------
# Stream parsing
# ---------------------------------------------------------------------------


def test_assistant_line_yields_text_and_tool_events() -> None:
    events = parse_stream_line(
        _line(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Reading the parser."},
                        {"type": "tool_use", "name": "Read"},
                        {"type": "tool_use", "name": "Edit"},
                    ]
                },
            }
        )
    )
    assert [event.kind for event in events] == [
        StreamEventKind.ASSISTANT,
        StreamEventKind.TOOL_USE,
        StreamEventKind.TOOL_USE,
    ]
    assert events[0].text == "Reading the parser."
    assert events[2].tool_name == "Edit"


def test_result_and_rate_limit_events() -> None:
    (result,) = parse_stream_line(_line({"type": "result", "result": "done", "is_error": True}))
    assert result.kind is StreamEventKind.RESULT
    assert result.is_error is True

    (limited,) = parse_stream_line(
        _line({"type": "rate_limit_event", "rate_limit_info": {"status": "rejected", "resetsAt": 1700000000}})
    )
    assert limited.kind is StreamEventKind.RATE_LIMIT_EVENT
    assert limited.resets_at == 1_700_000_000.0

    allowed = parse_stream_line(_line({"type": "rate_limit_event", "rate_limit_info": {"status": "allowed"}}))
    assert allowed == []


def test_non_json_lines_are_unknown() -> None:
    (event,) = parse_stream_line("plain text output\n")
    assert event.kind is StreamEventKind.UNKNOWN
    assert parse_stream_line("   \n") == []


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _started(tmp_path: Path) -> RelayPaths:
    paths = resolve_paths(tmp_path)
    init_relay_dir(paths)
    touch_session_start(paths)
    _age(paths.knowledge_file, 60)
    return paths


def test_valid_bundle_is_handed_off(tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = _started(tmp_path)
    _write_handoff(paths)
    result = classify_session(
        config, paths, session=2, supervision=_Supervision(ExitKind.EXITED_CLEANLY, 0)
    )
    assert result.outcome is SessionOutcome.HANDED_OFF
    assert result.rescued is False


def test_activity_without_handoff_is_rescued(tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = _started(tmp_path)
    paths.tool_use_count_file.write_text("7\n", encoding="utf-8")
    paths.last_tool_file.write_text("Bash\n", encoding="utf-8")

    result = classify_session(
        config, paths, session=3, supervision=_Supervision(ExitKind.EXITED_CLEANLY, 0)
    )

    assert result.outcome is SessionOutcome.HANDED_OFF
    assert result.rescued is True
    assert result.tool_use_count == 7
    progress = paths.progress_file.read_text(encoding="utf-8")
    assert progress.startswith("## STATUS: IN_PROGRESS")
    assert "Rescue handoff (session #3)" in progress
    next_prompt = paths.next_prompt_file.read_text(encoding="utf-8")
    assert "git log" in next_prompt
    assert "Build the parser." in next_prompt
    assert "### Session 3 (rescue)" in paths.knowledge_file.read_text(encoding="utf-8")


def test_repeated_rescues_do_not_nest(tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = _started(tmp_path)
    paths.progress_file.write_text("## STATUS: IN_PROGRESS\nlexer done\n", encoding="utf-8")
    paths.next_prompt_file.write_text("Write the parser tests.\n", encoding="utf-8")

    for session in (4, 5, 6):
        write_rescue_handoff(config, paths, session=session, tool_uses=2, last_tool="Edit")

    next_prompt = paths.next_prompt_file.read_text(encoding="utf-8")
    assert next_prompt.startswith("Session #6 of this relay")
    assert next_prompt.count("--- TASK ---") == 1
    assert next_prompt.rstrip().endswith("--- TASK ---\nWrite the parser tests.")
    progress = paths.progress_file.read_text(encoding="utf-8")
    assert progress.count("## Rescue handoff") == 1
    assert "## Progress before the rescue\n## STATUS: IN_PROGRESS\nlexer done" in progress


def test_no_activity_and_no_handoff_is_a_crash(tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = _started(tmp_path)
    result = classify_session(
        config, paths, session=1, supervision=_Supervision(ExitKind.EXITED_CLEANLY, 0)
    )
    assert result.outcome is SessionOutcome.CRASHED
    assert not paths.progress_file.exists()


def test_rate_limit_text_on_failed_exit(tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = _started(tmp_path)
    collector = _StreamCollector()
    collector.capture("Error: usage limit reached, resets_at: 1700000000")

    result = classify_session(
        config,
        paths,
        session=2,
        supervision=_Supervision(ExitKind.CRASHED, 1),
        collector=collector,
    )

    assert result.outcome is SessionOutcome.RATE_LIMITED
    assert result.rate_limit_reset_at == 1_700_000_000.0


def test_rate_limit_text_ignored_after_clean_handoff(tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = _started(tmp_path)
    _write_handoff(paths)
    collector = _StreamCollector()
    collector.capture("Added retry on HTTP 429 responses.")
    result = classify_session(
        config, paths, session=2, supervision=_Supervision(ExitKind.EXITED_CLEANLY, 0), collector=collector
    )
    assert result.outcome is SessionOutcome.HANDED_OFF


# ---------------------------------------------------------------------------
# Launch (fake processes)
# ---------------------------------------------------------------------------


def test_print_mode_streams_prompt_and_counts_tools(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = resolve_paths(tmp_path)
    init_relay_dir(paths)
    stdout = [
        _line({"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Write"}]}}),
        _line({"type": "result", "result": "RELAY_HANDOFF_COMPLETE"}),
    ]
    fake, launched = _process_factory(paths, stdout=stdout, returncode=0, on_start=_write_handoff)
    monkeypatch.setattr(session_mod.subprocess, "Popen", fake)

    result = launch_session(
        config, paths, session=1, task_prompt="Build it.", instructions="hand off", session_prompt="Build it.\nhand off"
    )

    assert result.outcome is SessionOutcome.HANDED_OFF
    assert result.exit_kind is ExitKind.EXITED_CLEANLY
    assert result.tool_use_count == 1
    assert result.result_text == "RELAY_HANDOFF_COMPLETE"
    (process,) = launched
    assert process.stdin.recorded == "Build it.\nhand off"
    assert process.argv[:2] == ["claude", "-p"]
    assert process.kwargs["env"]["CLEAVE_RELAY_DIR"] == str(paths.relay_dir)
    assert paths.session_prompt_file.read_text(encoding="utf-8") == "Build it.\nhand off"
    assert paths.settings_file.exists()


def test_print_mode_drains_output_while_writing_prompt(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = resolve_paths(tmp_path)
    init_relay_dir(paths)
    reading = threading.Event()

    class _WatchedStdout(_StaticStream):
        def readline(self) -> str:
            reading.set()
            return super().readline()

    class _FullPipeStdin(_RecordingStdin):
        def write(self, text: str) -> int:
            # An agent that writes before reading blocks until its output is consumed.
            self.unblocked = reading.wait(timeout=5)
            return super().write(text)

    base, launched = _process_factory(paths, stdout=[_line({"type": "result", "result": "done"})], on_start=_write_handoff)

    class _Process(base):
        def __init__(self, argv, **kwargs) -> None:
            super().__init__(argv, **kwargs)
            self.stdin = _FullPipeStdin()
            self.stdout = _WatchedStdout(self.stdout._lines)

    monkeypatch.setattr(session_mod.subprocess, "Popen", _Process)

    result = launch_session(config, paths, session=1, task_prompt="x", instructions="y", session_prompt="x\ny")

    assert result.outcome is SessionOutcome.HANDED_OFF
    (process,) = launched
    assert process.stdin.unblocked is True
    assert process.stdin.recorded == "x\ny"


def test_print_mode_rate_limit_event(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = resolve_paths(tmp_path)
    init_relay_dir(paths)
    stdout = [_line({"type": "rate_limit_event", "rate_limit_info": {"status": "rejected", "resets_at": 1700000000}})]
    fake, _ = _process_factory(paths, stdout=stdout, returncode=1)
    monkeypatch.setattr(session_mod.subprocess, "Popen", fake)

    result = launch_session(config, paths, session=1, task_prompt="t", instructions="i", session_prompt="t\ni")

    assert result.outcome is SessionOutcome.RATE_LIMITED
    assert result.rate_limit_reset_at == 1_700_000_000.0


def test_interactive_mode_terminates_after_stable_handoff(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    config = _relay_config(tmp_path, mode="interactive")
    paths = resolve_paths(tmp_path)
    init_relay_dir(paths)

    def _signal(paths: RelayPaths) -> None:
        _write_handoff(paths)
        paths.handoff_signal_file.write_text("HANDOFF_COMPLETE\n", encoding="utf-8")

    fake, launched = _process_factory(paths, returncode=None, on_start=_signal)
    monkeypatch.setattr(session_mod.subprocess, "Popen", fake)

    result = launch_session(config, paths, session=4, task_prompt="t", instructions="i", session_prompt="t\ni")

    assert result.outcome is SessionOutcome.HANDED_OFF
    assert result.exit_kind is ExitKind.TERMINATED_BY_ORCHESTRATOR
    (process,) = launched
    assert process.terminated is True
    assert "session #4" in process.argv[1]
    assert AGENT_UNSAFE_FLAG in process.argv


def test_interactive_timeout_without_handoff_is_crash(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _relay_config(tmp_path, mode="interactive", session_timeout=0.05)
    paths = resolve_paths(tmp_path)
    init_relay_dir(paths)
    fake, launched = _process_factory(paths, returncode=None)
    monkeypatch.setattr(session_mod.subprocess, "Popen", fake)

    result = launch_session(config, paths, session=1, task_prompt="t", instructions="i", session_prompt="t\ni")

    assert result.timed_out is True
    assert result.outcome is SessionOutcome.CRASHED
    assert launched[0].terminated is True


def test_spawn_failure_is_a_crash(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = _relay_config(tmp_path)
    paths = resolve_paths(tmp_path)
    init_relay_dir(paths)

    def _missing(*_args, **_kwargs):
        raise FileNotFoundError("claude")

    monkeypatch.setattr(session_mod.subprocess, "Popen", _missing)
    result = launch_session(config, paths, session=1, task_prompt="t", instructions="i", session_prompt="t\ni")
    assert result.outcome is SessionOutcome.CRASHED
    assert result.exit_code is None
