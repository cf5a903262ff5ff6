"""Cleave constants: state folder layout, detection thresholds, and defaults."""

from __future__ import annotations

import re

VERSION = "5.2.0"
TOOL_NAME = "cleave"

# ---------------------------------------------------------------------------
# State folder layout
# ---------------------------------------------------------------------------

RELAY_DIR_NAME = ".cleave"
STAGES_DIR_NAME = "stages"
SHARED_DIR_NAME = "shared"
LOGS_DIR_NAME = "logs"

PROGRESS_FILE_NAME = "PROGRESS.md"
KNOWLEDGE_FILE_NAME = "KNOWLEDGE.md"
NEXT_PROMPT_FILE_NAME = "NEXT_PROMPT.md"
STATUS_FILE_NAME = "status.json"
SESSION_START_MARKER_NAME = ".session_start"
ACTIVE_RELAY_MARKER_NAME = ".active_relay"
SESSION_COUNT_FILE_NAME = ".session_count"
LOCK_FILE_NAME = ".lock"
LOCK_RECLAIM_FILE_NAME = ".lock.reclaim"
HANDOFF_SIGNAL_FILE_NAME = ".handoff_signal"
TOOL_USE_COUNT_FILE_NAME = ".tool_use_count"
LAST_TOOL_FILE_NAME = ".last_tool"
SESSION_PROMPT_FILE_NAME = ".session_prompt.md"
SETTINGS_FILE_NAME = "settings.json"
RELAY_LOG_FILE_NAME = "relay.log"
CONFIG_FILE_NAME = "config.yaml"

PIPELINE_STATE_FILE_NAME = "pipeline_state.json"
PIPELINE_CONFIG_COPY_NAME = "pipeline.yaml"
ACTIVE_PIPELINE_MARKER_NAME = ".active_pipeline"

# (source attribute on RelayPaths, archive suffix)
ARCHIVED_STATE_FILES = (
    ("progress_file", "progress"),
    ("next_prompt_file", "next_prompt"),
    ("knowledge_file", "knowledge"),
)

# ---------------------------------------------------------------------------
# Handoff protocol tokens
# ---------------------------------------------------------------------------

TASK_FULLY_COMPLETE = "TASK_FULLY_COMPLETE"
HANDOFF_COMPLETE = "HANDOFF_COMPLETE"
RELAY_HANDOFF_COMPLETE = "RELAY_HANDOFF_COMPLETE"
HANDOFF_INSTRUCTIONS_HEADER = "CLEAVE AUTOMATED RELAY"
STATUS_IN_PROGRESS = "IN_PROGRESS"

# Line start, optional markdown decoration, "STATUS", optional decoration, ":".
STATUS_LINE_PATTERN = re.compile(r"^[\s#*>_\-]*STATUS[\s*_]*:[\s*_`]*(.*)$", re.IGNORECASE)

KNOWLEDGE_CORE_HEADER = "## Core Knowledge"
KNOWLEDGE_LOG_HEADER = "## Session Log"
KNOWLEDGE_ENTRY_PREFIX = "### Session"

# ---------------------------------------------------------------------------
# Detection thresholds
# ---------------------------------------------------------------------------

LOOP_SIMILARITY_THRESHOLD = 85
LOOP_SIZE_TOLERANCE = 0.2
MAX_CONSECUTIVE_LOOPS = 3
MAX_CONSECUTIVE_CRASHES = 3

RATE_LIMIT_PATTERN = re.compile(
    r"rate.?limit|too many requests|usage.?limit|quota.?exceeded|limit.?reached|\b429\b|capacity|throttl",
    re.IGNORECASE,
)
DEFAULT_RATE_LIMIT_BACKOFF_SECONDS = 300.0
RATE_LIMIT_RESET_MARGIN_SECONDS = 30.0
RATE_LIMIT_COUNTDOWN_TICK_SECONDS = 10.0

LOCK_ACQUIRE_ATTEMPTS = 3
# A lock file without a readable pid this young may still be mid-write.
LOCK_UNREADABLE_GRACE_SECONDS = 5.0

KNOWLEDGE_REFERENCE_MIN_LINES = 10
SHARED_KNOWLEDGE_REFERENCE_MIN_LINES = 5

# ---------------------------------------------------------------------------
# Relay defaults
# ---------------------------------------------------------------------------

DEFAULT_MAX_SESSIONS = 10
DEFAULT_PAUSE_SECONDS = 10.0
DEFAULT_COMPLETION_MARKER = "ALL_COMPLETE"
DEFAULT_KNOWLEDGE_KEEP_SESSIONS = 5
DEFAULT_RATE_LIMIT_MAX_WAIT = 18000.0
DEFAULT_SESSION_TIMEOUT = 1800.0
DEFAULT_VERIFY_TIMEOUT = 120.0
DEFAULT_HANDOFF_THRESHOLD = 60
DEFAULT_HANDOFF_DEADLINE = 70

# ---------------------------------------------------------------------------
# Agent launch defaults
# ---------------------------------------------------------------------------

AGENT_MODES = ("interactive", "print")
DEFAULT_AGENT_MODE = "interactive"
AGENT_COMMAND_PRESETS: dict[str, str] = {
    "interactive": "claude {task} --append-system-prompt {instructions} --settings {settings_path}",
    "print": "claude -p --output-format stream-json --verbose --settings {settings_path}",
}
AGENT_UNSAFE_FLAG = "--dangerously-skip-permissions"
DEFAULT_INITIAL_GRACE_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_STABLE_POLLS = 2
DEFAULT_POST_HANDOFF_GRACE_SECONDS = 3.0
DEFAULT_TERMINATE_TIMEOUT_SECONDS = 10.0
MAX_CAPTURE_CHARS = 20000

# ---------------------------------------------------------------------------
# Status and pipeline vocabularies
# ---------------------------------------------------------------------------

RELAY_STATUSES = (
    "running",
    "paused",
    "complete",
    "verified_complete",
    "stuck",
    "max_sessions",
    "rate_limited",
    "error",
    "interrupted",
)
FAILURE_POLICIES = ("stop", "retry", "skip")
DEFAULT_STAGE_RETRY_MAX = 2

ENV_MAX_SESSIONS = "CLEAVE_MAX_SESSIONS"
ENV_PAUSE = "CLEAVE_PAUSE"
ENV_COMPLETION_MARKER = "CLEAVE_COMPLETION_MARKER"
ENV_SESSION_TIMEOUT = "CLEAVE_SESSION_TIMEOUT"
ENV_RELAY_DIR = "CLEAVE_RELAY_DIR"
ENV_SESSION = "CLEAVE_SESSION"
ENV_WORK_DIR = "CLEAVE_WORK_DIR"
ENV_COMPLETION_MARKER_HOOK = "CLEAVE_HOOK_COMPLETION_MARKER"

PROMPT_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
STAGE_INSTRUCTIONS_HEADER = "RELAY INSTRUCTIONS"
