"""Cleave data models: exceptions, enums, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


def _coerce_non_negative_float(value: Any, *, default: float) -> float:
    parsed = _coerce_float(value, default=default)
    return parsed if parsed >= 0 else default


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CleaveError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigError(CleaveError):
    """Raised when relay or agent configuration is invalid."""


class StateError(CleaveError):
    """Raised when a state file cannot be loaded or validated."""


class LockHeldError(CleaveError):
    """Raised when another live orchestrator owns the state folder."""


class PromptBuildError(CleaveError):
    """Raised when the prompt for a session cannot be assembled."""


class PipelineConfigError(CleaveError):
    """Raised when a pipeline definition is malformed."""


class CircularDependencyError(PipelineConfigError):
    """Raised when stage dependencies form a cycle."""


class DependencyUnmetError(CleaveError):
    """Raised when a stage starts before its dependencies finished."""


class StuckInLoopError(CleaveError):
    """Raised when consecutive sessions keep producing the same handoff."""


class SessionCrashError(CleaveError):
    """Raised when the agent process cannot be started or supervised."""


class RelayInterrupted(CleaveError):
    """Raised inside the run loop when the process receives SIGTERM."""

    def __init__(self, message: str = "terminated", *, exit_code: int = 143) -> None:
        super().__init__(message)
        self.exit_code = exit_code


# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------


class ExitKind(Enum):
    """How the agent process ended."""

    TERMINATED_BY_ORCHESTRATOR = "terminated_by_orchestrator"
    CRASHED = "crashed"
    EXITED_CLEANLY = "exited_cleanly"


class SessionOutcome(Enum):
    """Classification of one attempted session."""

    HANDED_OFF = "handed_off"
    RATE_LIMITED = "rate_limited"
    CRASHED = "crashed"


class FailurePolicy(Enum):
    STOP = "stop"
    RETRY = "retry"
    SKIP = "skip"


class StageStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


class StreamEventKind(Enum):
    """Event shapes emitted by the agent's streamed output mode."""

    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    RESULT = "result"
    RATE_LIMIT_EVENT = "rate_limit_event"
    ERROR = "error"
    SYSTEM = "system"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentConfig:
    mode: str
    command: str
    safe_mode: bool
    initial_grace_seconds: float
    poll_interval_seconds: float
    stable_polls: int
    post_handoff_grace_seconds: float
    terminate_timeout_seconds: float


@dataclass(frozen=True)
class RelayConfig:
    work_dir: Path
    initial_prompt_file: Path | None
    max_sessions: int
    pause_seconds: float
    completion_marker: str
    knowledge_keep_sessions: int
    rate_limit_max_wait: float
    session_timeout: float
    verify_command: str | None
    verify_timeout: float
    handoff_threshold: int
    handoff_deadline: int
    resume_from: int
    verbose: bool
    agent: AgentConfig


@dataclass(frozen=True)
class StageConfig:
    name: str
    prompt: Path
    max_sessions: int
    completion: str
    requires: tuple[str, ...] = ()
    verify: str | None = None
    on_fail: FailurePolicy = FailurePolicy.STOP
    retry_max: int = 1
    share_knowledge: bool = True
    skip: bool = False


@dataclass(frozen=True)
class PipelineConfig:
    name: str
    source_path: Path
    stages: tuple[StageConfig, ...]
    work_dir: Path | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VerifyResult:
    passed: bool
    exit_code: int
    output: str
    timed_out: bool = False


@dataclass(frozen=True)
class LoopCheck:
    is_loop: bool
    similarity: int


@dataclass(frozen=True)
class CompactResult:
    pruned: bool
    old_lines: int
    new_lines: int
    kept_entries: int = 0


@dataclass(frozen=True)
class HandoffCheck:
    missing: tuple[str, ...]
    stale: tuple[str, ...]
    valid: bool
    reason: str = ""


@dataclass(frozen=True)
class StreamEvent:
    kind: StreamEventKind
    text: str = ""
    tool_name: str = ""
    resets_at: float | None = None
    is_error: bool = False
    raw_type: str = ""


@dataclass
class SessionResult:
    """What one launched session left behind, after classification."""

    session: int
    outcome: SessionOutcome
    exit_kind: ExitKind
    exit_code: int | None = None
    timed_out: bool = False
    rate_limit_reset_at: float | None = None
    tool_use_count: int = 0
    last_tool: str = ""
    rescued: bool = False
    result_text: str = ""
    started_at: str = ""


@dataclass
class RelayState:
    """Mutable relay bookkeeping owned by the running orchestrator."""

    session: int = 0
    lock_pid: int | None = None
    active: bool = False
    status: str = "running"
    consecutive_loops: int = 0
    consecutive_crashes: int = 0


@dataclass(frozen=True)
class RelayResult:
    completed: bool
    status: str
    sessions_run: int
    last_session: int
    message: str = ""


@dataclass(frozen=True)
class HookDecision:
    allow: bool
    reason: str = ""
