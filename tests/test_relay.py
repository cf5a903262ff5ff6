from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

import cleave.relay as relay_mod
from cleave.constants import AGENT_COMMAND_PRESETS
from cleave.lock import FileLock
from cleave.models import AgentConfig, ExitKind, RelayConfig, SessionOutcome, SessionResult
from cleave.relay import run_relay, wait_for_rate_limit
from cleave.state import RelayPaths, archived_file, read_session_count, resolve_paths


def _relay_config(tmp_path: Path, **overrides) -> RelayConfig:
    prompt = tmp_path / "task.md"
    if not prompt.exists():
        prompt.write_text("Port the tokenizer.\n", encoding="utf-8")
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
        agent=AgentConfig(
            mode="print",
            command=AGENT_COMMAND_PRESETS["print"],
            safe_mode=False,
            initial_grace_seconds=0.0,
            poll_interval_seconds=0.01,
            stable_polls=2,
            post_handoff_grace_seconds=0.0,
            terminate_timeout_seconds=0.1,
        ),
    )
    values.update(overrides)
    return RelayConfig(**values)


def _distinct_next_prompt(session: int) -> str:
    return "\n".join(f"session {session} item {index}: step {session * 100 + index}" for index in range(8)) + "\n"


class _ScriptedAgent:
    """Stands in for ``launch_session``; each call consumes one scripted behaviour."""

    def __init__(self, *behaviours) -> None:
        self.behaviours = list(behaviours)
        self.sessions: list[int] = []
        self.prompts: list[str] = []

    def __call__(self, config: RelayConfig, paths: RelayPaths, *, session: int, task_prompt: str, instructions: str, session_prompt: str) -> SessionResult:
        self.sessions.append(session)
        self.prompts.append(task_prompt)
        behaviour = self.behaviours.pop(0) if len(self.behaviours) > 1 else self.behaviours[0]
        return behaviour(config, paths, session)


def _handoff(next_prompt=_distinct_next_prompt, status: str = "IN_PROGRESS"):
    def _run(config: RelayConfig, paths: RelayPaths, session: int) -> SessionResult:
        paths.progress_file.write_text(f"## STATUS: {status}\nfinished part {session}\n", encoding="utf-8")
        paths.next_prompt_file.write_text(next_prompt(session), encoding="utf-8")
        return SessionResult(session=session, outcome=SessionOutcome.HANDED_OFF, exit_kind=ExitKind.EXITED_CLEANLY, exit_code=0)

    return _run


def _crash(config: RelayConfig, paths: RelayPaths, session: int) -> SessionResult:
    return SessionResult(session=session, outcome=SessionOutcome.CRASHED, exit_kind=ExitKind.CRASHED, exit_code=1)


def _rate_limited(config: RelayConfig, paths: RelayPaths, session: int) -> SessionResult:
    return SessionResult(
        session=session,
        outcome=SessionOutcome.RATE_LIMITED,
        exit_kind=ExitKind.CRASHED,
        exit_code=1,
        rate_limit_reset_at=time.time() - 100,
    )


def _status(tmp_path: Path) -> dict:
    return json.loads((tmp_path / ".cleave" / "status.json").read_text(encoding="utf-8"))


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    slept: list[float] = []
    monkeypatch.setattr(relay_mod.time, "sleep", lambda seconds: slept.append(seconds))
    return slept


def test_relay_stops_at_max_sessions(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)

    code = run_relay(_relay_config(tmp_path, max_sessions=3))

    assert code == 1
    assert agent.sessions == [1, 2, 3]
    assert _status(tmp_path)["status"] == "max_sessions"
    paths = resolve_paths(tmp_path)
    assert read_session_count(paths) == 3
    for session in (1, 2, 3):
        assert archived_file(paths, session, "next_prompt.md").exists()
        assert archived_file(paths, session, "prompt.md").exists()
    assert not paths.active_relay_marker.exists()
    assert not (paths.relay_dir / ".lock").exists()


def test_later_sessions_receive_previous_next_prompt(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)
    run_relay(_relay_config(tmp_path, max_sessions=2))
    assert agent.prompts[0].startswith("Port the tokenizer.")
    assert agent.prompts[1].startswith(_distinct_next_prompt(1).strip())


def test_completion_marker_ends_relay(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff(), _handoff(status="ALL_COMPLETE"))
    monkeypatch.setattr(relay_mod, "launch_session", agent)

    code = run_relay(_relay_config(tmp_path, max_sessions=5))

    assert code == 0
    assert agent.sessions == [1, 2]
    status = _status(tmp_path)
    assert status["status"] == "complete"
    assert status["session"] == 2


def test_passing_verification_ends_after_first_session(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)

    code = run_relay(_relay_config(tmp_path, max_sessions=5, verify_command="true"))

    assert code == 0
    assert agent.sessions == [1]
    assert _status(tmp_path)["status"] == "verified_complete"


def test_failing_verification_keeps_going(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)
    assert run_relay(_relay_config(tmp_path, max_sessions=2, verify_command="false")) == 1
    assert agent.sessions == [1, 2]


def test_rate_limited_session_is_retried_with_same_number(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep
) -> None:
    agent = _ScriptedAgent(_rate_limited, _handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)

    code = run_relay(_relay_config(tmp_path, max_sessions=2))

    assert code == 1
    assert agent.sessions == [1, 1, 2]


def test_three_consecutive_crashes_stop_relay(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_crash)
    monkeypatch.setattr(relay_mod, "launch_session", agent)

    code = run_relay(_relay_config(tmp_path, max_sessions=10))

    assert code == 2
    assert agent.sessions == [1, 2, 3]
    assert _status(tmp_path)["status"] == "error"
    assert not (tmp_path / ".cleave" / ".lock").exists()


def test_crash_counter_resets_after_success(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_crash, _crash, _handoff(), _crash, _crash, _handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)
    assert run_relay(_relay_config(tmp_path, max_sessions=6)) == 1
    assert agent.sessions == [1, 2, 3, 4, 5, 6]


def test_crashed_session_is_not_archived(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff(), _crash, _handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)

    assert run_relay(_relay_config(tmp_path, max_sessions=3)) == 1

    paths = resolve_paths(tmp_path)
    assert archived_file(paths, 1, "next_prompt.md").exists()
    assert not archived_file(paths, 2, "next_prompt.md").exists()
    assert not archived_file(paths, 2, "prompt.md").exists()
    assert archived_file(paths, 3, "next_prompt.md").read_text(encoding="utf-8") == _distinct_next_prompt(3)


def test_repeated_handoff_is_detected_as_loop(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    same = "Fix the failing tokenizer test.\nRun pytest.\nCommit.\n"
    agent = _ScriptedAgent(_handoff(next_prompt=lambda session: same))
    monkeypatch.setattr(relay_mod, "launch_session", agent)

    code = run_relay(_relay_config(tmp_path, max_sessions=10))

    assert code == 2
    assert agent.sessions == [1, 2, 3, 4]
    assert _status(tmp_path)["status"] == "stuck"


def test_distinct_handoffs_are_not_loops(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)
    assert run_relay(_relay_config(tmp_path, max_sessions=5)) == 1
    assert agent.sessions == [1, 2, 3, 4, 5]


def test_resume_from_continues_numbering(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)
    assert run_relay(_relay_config(tmp_path, max_sessions=4, resume_from=2)) == 1
    assert agent.sessions == [3, 4]


def test_continuation_reopens_finished_relay(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    monkeypatch.setattr(relay_mod, "launch_session", _ScriptedAgent(_handoff(), _handoff(status="ALL_COMPLETE")))
    assert run_relay(_relay_config(tmp_path, max_sessions=5)) == 0

    agent = _ScriptedAgent(_handoff(status="ALL_COMPLETE"))
    monkeypatch.setattr(relay_mod, "launch_session", agent)
    code = run_relay(_relay_config(tmp_path, max_sessions=3), continue_task="Add a benchmark suite")

    assert code == 0
    assert agent.sessions == [3]
    assert agent.prompts[0].startswith("Add a benchmark suite")
    assert _status(tmp_path)["max_sessions"] == 5


def test_held_lock_refuses_to_start(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    agent = _ScriptedAgent(_handoff())
    monkeypatch.setattr(relay_mod, "launch_session", agent)
    holder = FileLock(tmp_path / ".cleave")
    assert holder.acquire()

    assert run_relay(_relay_config(tmp_path)) == 1
    assert agent.sessions == []
    assert holder.holder_pid() == os.getpid()
    holder.release()


def test_keyboard_interrupt_saves_state(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    def _interrupt(config: RelayConfig, paths: RelayPaths, session: int) -> SessionResult:
        raise KeyboardInterrupt

    monkeypatch.setattr(relay_mod, "launch_session", _ScriptedAgent(_handoff(), _interrupt))

    code = run_relay(_relay_config(tmp_path))

    assert code == 130
    assert _status(tmp_path)["status"] == "interrupted"
    assert not (tmp_path / ".cleave" / ".lock").exists()
    assert not (tmp_path / ".cleave" / ".active_relay").exists()


def test_rate_limit_wait_uses_default_backoff_capped(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    config = _relay_config(tmp_path, rate_limit_max_wait=25.0)
    paths = resolve_paths(tmp_path)
    waited = wait_for_rate_limit(config, paths, None)
    assert waited == 25.0
    assert no_sleep == [10.0, 10.0, 5.0]


def test_rate_limit_wait_honours_reset_time(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep) -> None:
    config = _relay_config(tmp_path, rate_limit_max_wait=18000.0)
    paths = resolve_paths(tmp_path)
    waited = wait_for_rate_limit(config, paths, time.time() + 100)
    assert 125 <= waited <= 130
    assert sum(no_sleep) == pytest.approx(waited)
