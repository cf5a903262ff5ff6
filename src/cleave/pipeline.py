"""Pipeline orchestrator -- runs named stages, each an isolated relay.

Stages run strictly in declared order. Dependencies, retry/skip/stop
policies and the persisted stage map live here; the per-stage session loop
is ``relay.run_relay_core``.
"""

from __future__ import annotations

import re
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable

import yaml

from cleave.constants import DEFAULT_STAGE_RETRY_MAX
from cleave.detection import run_verification
from cleave.knowledge import promote_to_shared_knowledge
from cleave.lock import FileLock
from cleave.models import (
    CircularDependencyError,
    CleaveError,
    DependencyUnmetError,
    FailurePolicy,
    PipelineConfig,
    PipelineConfigError,
    RelayConfig,
    RelayInterrupted,
    RelayResult,
    RelayState,
    StageConfig,
    StageStatus,
    StateError,
    _coerce_bool,
)
from cleave.prompts import build_stage_handoff_instructions
from cleave.relay import (
    EXIT_INCOMPLETE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    install_terminate_handler,
    restore_terminate_handler,
    run_relay_core,
)
from cleave.state import (
    RelayPaths,
    active_pipeline_marker_path,
    cleanup_relay,
    default_pipeline_state,
    init_relay_dir,
    load_pipeline_state,
    mark_active,
    pipeline_config_copy_path,
    pipeline_state_path,
    read_session_count,
    reset_stage_for_retry,
    resolve_paths,
    resolve_stage_paths,
    save_pipeline_state,
    write_status,
)
from cleave.utils import _report, _utc_now

_STAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# snake_case keys are canonical; camelCase spellings are accepted as aliases.
_STAGE_KEY_ALIASES = {
    "maxSessions": "max_sessions",
    "onFail": "on_fail",
    "retryMax": "retry_max",
    "shareKnowledge": "share_knowledge",
    "workDir": "work_dir",
}


def _normalize_keys(raw: dict[str, Any]) -> dict[str, Any]:
    return {_STAGE_KEY_ALIASES.get(str(key), str(key)): value for key, value in raw.items()}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _resolve_stage_prompt(name: str, prompt: str, *, config_dir: Path, base_dir: Path) -> Path:
    candidates = [(config_dir / prompt).resolve(), (base_dir / prompt).resolve()]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    tried = "\n".join(f"  tried: {candidate}" for candidate in candidates)
    raise PipelineConfigError(f"stage {name!r} prompt file not found: {prompt}\n{tried}")


def _parse_stage(index: int, raw: Any, *, config_dir: Path, base_dir: Path) -> StageConfig:
    if not isinstance(raw, dict):
        raise PipelineConfigError(f"stage {index + 1} must be a mapping")
    raw = _normalize_keys(raw)

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise PipelineConfigError(f"stage {index + 1} requires a 'name' field")
    name = name.strip()
    if not _STAGE_NAME_PATTERN.match(name):
        raise PipelineConfigError(
            f"stage name {name!r} may only contain letters, digits, '.', '_' and '-'"
        )

    prompt = raw.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise PipelineConfigError(f"stage {name!r} requires a 'prompt' field")
    prompt_path = _resolve_stage_prompt(name, prompt.strip(), config_dir=config_dir, base_dir=base_dir)

    max_sessions = raw.get("max_sessions")
    if isinstance(max_sessions, bool) or not isinstance(max_sessions, int) or max_sessions < 1:
        raise PipelineConfigError(f"stage {name!r} requires a positive 'max_sessions' number")

    completion = raw.get("completion")
    if not isinstance(completion, str) or not completion.strip():
        raise PipelineConfigError(f"stage {name!r} requires a 'completion' marker string")

    on_fail_raw = str(raw.get("on_fail") or FailurePolicy.STOP.value).strip().lower()
    try:
        on_fail = FailurePolicy(on_fail_raw)
    except ValueError as exc:
        raise PipelineConfigError(f"stage {name!r} on_fail must be 'stop', 'retry', or 'skip'") from exc

    retry_max = raw.get("retry_max")
    if retry_max is None:
        retry_max = DEFAULT_STAGE_RETRY_MAX if on_fail is FailurePolicy.RETRY else 1
    elif isinstance(retry_max, bool) or not isinstance(retry_max, int) or retry_max < 1:
        raise PipelineConfigError(f"stage {name!r} retry_max must be a positive number")

    requires_raw = raw.get("requires") or []
    if isinstance(requires_raw, str):
        requires_raw = [requires_raw]
    if not isinstance(requires_raw, list):
        raise PipelineConfigError(f"stage {name!r} requires must be a list of stage names")
    requires = tuple(str(dep).strip() for dep in requires_raw if str(dep).strip())

    verify = str(raw.get("verify") or "").strip() or None
    return StageConfig(
        name=name,
        prompt=prompt_path,
        max_sessions=max_sessions,
        completion=completion.strip(),
        requires=requires,
        verify=verify,
        on_fail=on_fail,
        retry_max=retry_max,
        share_knowledge=_coerce_bool(raw.get("share_knowledge"), default=True),
        skip=_coerce_bool(raw.get("skip"), default=False),
    )


def validate_dag(stages: Iterable[StageConfig]) -> None:
    """Reject dependency cycles with a depth-first visiting/visited walk."""
    stage_map = {stage.name: stage for stage in stages}
    visited: set[str] = set()
    visiting: set[str] = set()

    def _visit(name: str, trail: list[str]) -> None:
        if name in visiting:
            raise CircularDependencyError(f"circular dependency detected: {' -> '.join([*trail, name])}")
        if name in visited:
            return
        visiting.add(name)
        stage = stage_map.get(name)
        for dep in stage.requires if stage else ():
            _visit(dep, [*trail, name])
        visiting.discard(name)
        visited.add(name)

    for name in stage_map:
        _visit(name, [])


def validate_dependencies_exist(stages: Iterable[StageConfig]) -> None:
    stages = list(stages)
    names = {stage.name for stage in stages}
    for stage in stages:
        for dep in stage.requires:
            if dep not in names:
                raise PipelineConfigError(
                    f"stage {stage.name!r} requires {dep!r} which does not exist in the pipeline"
                )


def load_pipeline_config(yaml_path: Path, work_dir: Path | None = None) -> PipelineConfig:
    resolved = yaml_path.resolve()
    if not resolved.is_file():
        raise PipelineConfigError(f"pipeline config not found: {resolved}")
    try:
        loaded = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise PipelineConfigError(f"invalid YAML in pipeline config: {exc}") from exc
    if not isinstance(loaded, dict):
        raise PipelineConfigError("pipeline config must be a YAML mapping")
    loaded = _normalize_keys(loaded)

    name = loaded.get("name")
    if not isinstance(name, str) or not name.strip():
        raise PipelineConfigError("pipeline config requires a 'name' field")
    raw_stages = loaded.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise PipelineConfigError("pipeline config requires at least one stage in 'stages'")

    declared_work_dir = str(loaded.get("work_dir") or "").strip()
    configured_work_dir = (resolved.parent / declared_work_dir).resolve() if declared_work_dir else None
    base_dir = (work_dir or configured_work_dir or Path.cwd()).resolve()

    stages = tuple(
        _parse_stage(index, raw, config_dir=resolved.parent, base_dir=base_dir)
        for index, raw in enumerate(raw_stages)
    )
    seen: set[str] = set()
    for stage in stages:
        if stage.name in seen:
            raise PipelineConfigError(f"duplicate stage name: {stage.name!r}")
        seen.add(stage.name)

    validate_dag(stages)
    validate_dependencies_exist(stages)
    return PipelineConfig(
        name=name.strip(),
        source_path=resolved,
        stages=stages,
        work_dir=configured_work_dir,
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _stage_relay_config(config: RelayConfig, stage: StageConfig) -> RelayConfig:
    return replace(
        config,
        initial_prompt_file=stage.prompt,
        max_sessions=stage.max_sessions,
        completion_marker=stage.completion,
        verify_command=stage.verify,
        resume_from=0,
    )


def _unmet_dependencies(stage: StageConfig, stages_state: dict[str, str]) -> list[str]:
    satisfied = {StageStatus.COMPLETE.value, StageStatus.SKIPPED.value}
    return [dep for dep in stage.requires if stages_state.get(dep) not in satisfied]


def _check_dependencies(stage: StageConfig, stages_state: dict[str, str]) -> None:
    unmet = _unmet_dependencies(stage, stages_state)
    if unmet:
        raise DependencyUnmetError(f"stage {stage.name!r} requires {', '.join(unmet)}, not yet complete")


def _set_stage_status(
    state_path: Path,
    state: dict[str, Any],
    stage_name: str,
    status: StageStatus,
) -> None:
    state["stages"][stage_name] = status.value
    save_pipeline_state(state_path, state)


def _run_stage_attempt(
    config: RelayConfig,
    stage: StageConfig,
    stage_paths: RelayPaths,
    *,
    stage_number: int,
    total_stages: int,
    start_session: int,
) -> RelayResult:
    stage_config = _stage_relay_config(config, stage)
    init_relay_dir(stage_paths)
    mark_active(stage_paths)
    relay_state = RelayState(session=start_session, active=True)
    try:
        result = run_relay_core(
            stage_config,
            stage_paths,
            relay_state,
            max_sessions=stage.max_sessions,
            instructions=build_stage_handoff_instructions(
                stage_config, stage_paths, stage_number=stage_number, total_stages=total_stages
            ),
            label=f"[stage: {stage.name}] ",
        )
    finally:
        cleanup_relay(stage_paths)

    if result.status == "complete" and stage.verify:
        verification = run_verification(stage.verify, cwd=config.work_dir, timeout=config.verify_timeout)
        if not verification.passed:
            _report(
                stage_paths.relay_dir,
                f"stage {stage.name!r} claimed complete but verification failed (exit {verification.exit_code})",
                level="warn",
            )
            return replace(result, completed=False, status="verification_failed")
    return result


def _run_stage(
    config: RelayConfig,
    stage: StageConfig,
    *,
    stage_number: int,
    total_stages: int,
    state_path: Path,
    state: dict[str, Any],
    resuming_stage: bool,
) -> tuple[bool, str]:
    """Run one stage with its retry policy; returns (completed, last outcome)."""
    stage_paths = resolve_stage_paths(config.work_dir, stage.name)
    root_dir = stage_paths.relay_dir.parents[1]
    attempts = stage.retry_max if stage.on_fail is FailurePolicy.RETRY else 1

    init_relay_dir(stage_paths)
    start_session = read_session_count(stage_paths) if resuming_stage else 0
    if not resuming_stage:
        reset_stage_for_retry(stage_paths)
    outcome = "not attempted"

    for attempt in range(1, attempts + 1):
        if attempt > 1:
            reset_stage_for_retry(stage_paths)
            start_session = 0
            _report(root_dir, f"retrying stage {stage.name!r} (attempt {attempt}/{attempts})")
        state["current_stage"] = stage.name
        _set_stage_status(state_path, state, stage.name, StageStatus.IN_PROGRESS)
        _report(root_dir, f"--- stage {stage_number}/{total_stages}: {stage.name} ---")
        try:
            result = _run_stage_attempt(
                config,
                stage,
                stage_paths,
                stage_number=stage_number,
                total_stages=total_stages,
                start_session=start_session,
            )
        except RelayInterrupted:
            raise
        except (CleaveError, OSError) as exc:
            outcome = str(exc)
            _report(root_dir, f"stage {stage.name!r} failed: {outcome}", level="error")
            continue
        if result.completed:
            _set_stage_status(state_path, state, stage.name, StageStatus.COMPLETE)
            if stage.share_knowledge and stage_paths.shared_knowledge_file is not None:
                if promote_to_shared_knowledge(
                    stage_paths.knowledge_file, stage_paths.shared_knowledge_file, stage.name
                ):
                    _report(root_dir, f"knowledge promoted from stage {stage.name!r}", level="debug", verbose=config.verbose)
            _report(root_dir, f"stage {stage.name!r} complete ({result.sessions_run} sessions)")
            return True, result.status
        outcome = result.status
        _report(root_dir, f"stage {stage.name!r} did not complete ({outcome})", level="warn")
    return False, outcome


def _record_pipeline_failure(
    config: RelayConfig,
    root_paths: RelayPaths,
    state_path: Path,
    state: dict[str, Any],
    stage: StageConfig,
    reason: str,
) -> None:
    state["failed_stage"] = stage.name
    state["failure_reason"] = reason
    save_pipeline_state(state_path, state)
    write_status(
        root_paths,
        session=read_session_count(resolve_stage_paths(config.work_dir, stage.name)),
        max_sessions=stage.max_sessions,
        status="error",
        phase=f"stage:{stage.name}",
        message=f"stage {stage.name!r} failed: {reason}",
        completion_marker=stage.completion,
    )
    _report(root_paths.relay_dir, f"pipeline stopped: stage {stage.name!r} failed: {reason}", level="error")


def _load_or_init_state(
    pipeline: PipelineConfig,
    state_path: Path,
    *,
    resume: bool,
    root_dir: Path,
) -> dict[str, Any]:
    stage_names = [stage.name for stage in pipeline.stages]
    if resume and state_path.exists():
        try:
            state = load_pipeline_state(state_path)
        except StateError as exc:
            _report(root_dir, f"ignoring unreadable pipeline state: {exc}", level="warn")
        else:
            if state.get("name") == pipeline.name:
                for name in stage_names:
                    state["stages"].setdefault(name, StageStatus.PENDING.value)
                return state
            _report(
                root_dir,
                f"pipeline state belongs to {state.get('name')!r}, not {pipeline.name!r}; starting fresh",
                level="warn",
            )
    elif resume:
        _report(root_dir, "no pipeline state to resume; starting fresh", level="warn")
    state = default_pipeline_state(pipeline.name, stage_names)
    save_pipeline_state(state_path, state)
    return state


def run_pipeline(
    config: RelayConfig,
    pipeline: PipelineConfig,
    *,
    resume: bool = False,
    resume_stage: str | None = None,
    skip_stages: Iterable[str] = (),
) -> int:
    """Run every stage of *pipeline* in order and return the process exit code."""
    validate_dag(pipeline.stages)
    validate_dependencies_exist(pipeline.stages)
    stage_names = [stage.name for stage in pipeline.stages]
    skip_set = set(skip_stages)
    unknown = sorted((skip_set | ({resume_stage} if resume_stage else set())) - set(stage_names))
    if unknown:
        raise PipelineConfigError(f"unknown stage(s): {', '.join(unknown)}")

    root_paths = resolve_paths(config.work_dir)
    init_relay_dir(root_paths)
    root_dir = root_paths.relay_dir
    lock = FileLock(root_dir, command="pipeline")
    if not lock.acquire():
        _report(root_dir, f"another cleave run (pid={lock.holder_pid()}) is active in {config.work_dir}", level="error")
        return EXIT_INCOMPLETE

    state_path = pipeline_state_path(config.work_dir)
    marker_path = active_pipeline_marker_path(config.work_dir)
    previous_handler = install_terminate_handler()
    try:
        shutil.copyfile(pipeline.source_path, pipeline_config_copy_path(config.work_dir))
        marker_path.write_text(f"{_utc_now()}\n", encoding="utf-8")
        state = _load_or_init_state(pipeline, state_path, resume=resume or bool(resume_stage), root_dir=root_dir)
        _report(root_dir, f"pipeline {pipeline.name!r}: {len(pipeline.stages)} stage(s)")
        for index, stage in enumerate(pipeline.stages, start=1):
            _report(root_dir, f"  stage {index}: {stage.name} [{state['stages'].get(stage.name, 'pending')}]")

        start_index = stage_names.index(resume_stage) if resume_stage else 0
        total = len(pipeline.stages)
        for index in range(start_index, total):
            stage = pipeline.stages[index]
            current = state["stages"].get(stage.name, StageStatus.PENDING.value)

            if stage.name in skip_set or stage.skip:
                _report(root_dir, f"skipping stage {stage.name!r}")
                _set_stage_status(state_path, state, stage.name, StageStatus.SKIPPED)
                continue
            if current == StageStatus.COMPLETE.value:
                _report(root_dir, f"stage {stage.name!r} already complete; skipping")
                continue

            try:
                _check_dependencies(stage, state["stages"])
            except DependencyUnmetError as exc:
                _set_stage_status(state_path, state, stage.name, StageStatus.FAILED)
                if stage.on_fail is FailurePolicy.SKIP:
                    _report(root_dir, f"{exc}; skipping", level="warn")
                    _set_stage_status(state_path, state, stage.name, StageStatus.SKIPPED)
                    continue
                _record_pipeline_failure(config, root_paths, state_path, state, stage, str(exc))
                return EXIT_INCOMPLETE

            completed, outcome = _run_stage(
                config,
                stage,
                stage_number=index + 1,
                total_stages=total,
                state_path=state_path,
                state=state,
                resuming_stage=current == StageStatus.IN_PROGRESS.value,
            )
            if completed:
                continue
            _set_stage_status(state_path, state, stage.name, StageStatus.FAILED)
            if stage.on_fail is FailurePolicy.SKIP:
                _report(root_dir, f"skipping failed stage {stage.name!r} (on_fail: skip)", level="warn")
                _set_stage_status(state_path, state, stage.name, StageStatus.SKIPPED)
                continue
            attempts = stage.retry_max if stage.on_fail is FailurePolicy.RETRY else 1
            _record_pipeline_failure(
                config, root_paths, state_path, state, stage, f"{outcome} after {attempts} attempt(s)"
            )
            return EXIT_INCOMPLETE

        state["current_stage"] = None
        state.pop("failed_stage", None)
        state.pop("failure_reason", None)
        save_pipeline_state(state_path, state)
        _report(root_dir, f"pipeline {pipeline.name!r} complete")
        return EXIT_OK
    except KeyboardInterrupt:
        _report(root_dir, "pipeline interrupted; resume with --resume", level="warn")
        return EXIT_INTERRUPTED
    except RelayInterrupted as exc:
        _report(root_dir, f"pipeline terminated ({exc}); resume with --resume", level="warn")
        return exc.exit_code
    finally:
        restore_terminate_handler(previous_handler)
        marker_path.unlink(missing_ok=True)
        lock.release()
