from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from cleave.constants import (
    AGENT_COMMAND_PRESETS,
    AGENT_MODES,
    CONFIG_FILE_NAME,
    DEFAULT_AGENT_MODE,
    DEFAULT_COMPLETION_MARKER,
    DEFAULT_HANDOFF_DEADLINE,
    DEFAULT_HANDOFF_THRESHOLD,
    DEFAULT_INITIAL_GRACE_SECONDS,
    DEFAULT_KNOWLEDGE_KEEP_SESSIONS,
    DEFAULT_MAX_SESSIONS,
    DEFAULT_PAUSE_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POST_HANDOFF_GRACE_SECONDS,
    DEFAULT_RATE_LIMIT_MAX_WAIT,
    DEFAULT_SESSION_TIMEOUT,
    DEFAULT_STABLE_POLLS,
    DEFAULT_TERMINATE_TIMEOUT_SECONDS,
    DEFAULT_VERIFY_TIMEOUT,
    ENV_COMPLETION_MARKER,
    ENV_MAX_SESSIONS,
    ENV_PAUSE,
    ENV_SESSION_TIMEOUT,
    RELAY_DIR_NAME,
)
from cleave.models import (
    AgentConfig,
    ConfigError,
    RelayConfig,
    _coerce_bool,
    _coerce_non_negative_float,
    _coerce_positive_int,
)


def _load_policy(work_dir: Path) -> dict[str, Any]:
    policy_path = work_dir / RELAY_DIR_NAME / CONFIG_FILE_NAME
    if not policy_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _policy_section(policy: dict[str, Any], name: str) -> dict[str, Any]:
    section = policy.get(name)
    return section if isinstance(section, dict) else {}


def _parse_int_setting(name: str, value: Any) -> int:
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def _parse_float_setting(name: str, value: Any) -> float:
    try:
        return float(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _load_agent_config(
    policy: dict[str, Any],
    *,
    mode_override: str | None = None,
    safe_mode_override: bool | None = None,
) -> AgentConfig:
    agent = _policy_section(policy, "agent")
    mode = str(mode_override or agent.get("mode", DEFAULT_AGENT_MODE)).strip().lower()
    if mode not in AGENT_MODES:
        mode = DEFAULT_AGENT_MODE
    command = str(agent.get("command", "") or "").strip()
    if not command:
        command = AGENT_COMMAND_PRESETS[mode]
    safe_mode = _coerce_bool(agent.get("safe_mode"), default=False)
    if safe_mode_override is not None:
        safe_mode = safe_mode_override
    return AgentConfig(
        mode=mode,
        command=command,
        safe_mode=safe_mode,
        initial_grace_seconds=_coerce_non_negative_float(
            agent.get("initial_grace_seconds"), default=DEFAULT_INITIAL_GRACE_SECONDS
        ),
        poll_interval_seconds=_coerce_non_negative_float(
            agent.get("poll_interval_seconds"), default=DEFAULT_POLL_INTERVAL_SECONDS
        ),
        stable_polls=_coerce_positive_int(agent.get("stable_polls"), default=DEFAULT_STABLE_POLLS),
        post_handoff_grace_seconds=_coerce_non_negative_float(
            agent.get("post_handoff_grace_seconds"), default=DEFAULT_POST_HANDOFF_GRACE_SECONDS
        ),
        terminate_timeout_seconds=_coerce_non_negative_float(
            agent.get("terminate_timeout_seconds"), default=DEFAULT_TERMINATE_TIMEOUT_SECONDS
        ),
    )


def load_relay_config(
    work_dir: Path,
    *,
    initial_prompt_file: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Resolve the relay configuration for *work_dir*.

    Values are layered as defaults, then ``.cleave/config.yaml``, then the
    ``CLEAVE_*`` environment variables, then *overrides* (CLI flags; ``None``
    entries are ignored). The result is validated before it is returned.
    """
    work_dir = work_dir.resolve()
    policy = _load_policy(work_dir)
    relay = _policy_section(policy, "relay")
    env = os.environ if environ is None else environ
    cli = {key: value for key, value in (overrides or {}).items() if value is not None}

    values: dict[str, Any] = {
        "max_sessions": _coerce_positive_int(relay.get("max_sessions"), default=DEFAULT_MAX_SESSIONS),
        "pause_seconds": _coerce_non_negative_float(relay.get("pause_seconds"), default=DEFAULT_PAUSE_SECONDS),
        "completion_marker": str(relay.get("completion_marker") or DEFAULT_COMPLETION_MARKER).strip(),
        "knowledge_keep_sessions": _coerce_positive_int(
            relay.get("knowledge_keep_sessions"), default=DEFAULT_KNOWLEDGE_KEEP_SESSIONS
        ),
        "rate_limit_max_wait": _coerce_non_negative_float(
            relay.get("rate_limit_max_wait"), default=DEFAULT_RATE_LIMIT_MAX_WAIT
        ),
        "session_timeout": _coerce_non_negative_float(
            relay.get("session_timeout"), default=DEFAULT_SESSION_TIMEOUT
        ),
        "verify_command": str(relay.get("verify_command") or "").strip() or None,
        "verify_timeout": _coerce_non_negative_float(relay.get("verify_timeout"), default=DEFAULT_VERIFY_TIMEOUT),
        "handoff_threshold": _coerce_positive_int(
            relay.get("handoff_threshold"), default=DEFAULT_HANDOFF_THRESHOLD
        ),
        "handoff_deadline": _coerce_positive_int(relay.get("handoff_deadline"), default=DEFAULT_HANDOFF_DEADLINE),
        "resume_from": 0,
        "verbose": False,
    }

    if env.get(ENV_MAX_SESSIONS, "").strip():
        values["max_sessions"] = _parse_int_setting(ENV_MAX_SESSIONS, env[ENV_MAX_SESSIONS])
    if env.get(ENV_PAUSE, "").strip():
        values["pause_seconds"] = _parse_float_setting(ENV_PAUSE, env[ENV_PAUSE])
    if env.get(ENV_COMPLETION_MARKER, "").strip():
        values["completion_marker"] = env[ENV_COMPLETION_MARKER].strip()
    if env.get(ENV_SESSION_TIMEOUT, "").strip():
        values["session_timeout"] = _parse_float_setting(ENV_SESSION_TIMEOUT, env[ENV_SESSION_TIMEOUT])

    agent = _load_agent_config(
        policy,
        mode_override=cli.pop("mode", None),
        safe_mode_override=cli.pop("safe_mode", None),
    )
    for key, value in cli.items():
        if key not in values:
            raise ConfigError(f"unknown relay setting: {key}")
        values[key] = value

    config = RelayConfig(
        work_dir=work_dir,
        initial_prompt_file=initial_prompt_file.resolve() if initial_prompt_file else None,
        agent=agent,
        **values,
    )
    validate_relay_config(config)
    return config


def validate_relay_config(config: RelayConfig) -> None:
    if not config.work_dir.is_dir():
        raise ConfigError(f"work directory does not exist: {config.work_dir}")
    if config.initial_prompt_file is not None and not config.initial_prompt_file.is_file():
        raise ConfigError(f"prompt file not found: {config.initial_prompt_file}")
    if not 1 <= config.max_sessions <= 10000:
        raise ConfigError(f"max_sessions must be between 1 and 10000, got {config.max_sessions}")
    if not 0 <= config.pause_seconds <= 3600:
        raise ConfigError(f"pause_seconds must be between 0 and 3600, got {config.pause_seconds}")
    if not config.completion_marker:
        raise ConfigError("completion_marker must not be empty")
    if config.handoff_deadline <= config.handoff_threshold:
        raise ConfigError(
            f"handoff_deadline ({config.handoff_deadline}) must be greater than "
            f"handoff_threshold ({config.handoff_threshold})"
        )
    if config.knowledge_keep_sessions < 1:
        raise ConfigError("knowledge_keep_sessions must be at least 1")
    if not 1 <= config.verify_timeout <= 600:
        raise ConfigError(f"verify_timeout must be between 1 and 600, got {config.verify_timeout}")
    if config.resume_from < 0 or config.resume_from >= config.max_sessions:
        raise ConfigError(
            f"resume_from must be between 0 and {config.max_sessions - 1}, got {config.resume_from}"
        )
    if not 0 <= config.session_timeout <= 86400:
        raise ConfigError(f"session_timeout must be between 0 and 86400, got {config.session_timeout}")
    if config.rate_limit_max_wait < 0:
        raise ConfigError("rate_limit_max_wait must not be negative")
    if config.agent.poll_interval_seconds <= 0:
        raise ConfigError("agent.poll_interval_seconds must be greater than 0")
    if config.agent.stable_polls < 1:
        raise ConfigError("agent.stable_polls must be at least 1")
