from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

from cleave.config import load_relay_config
from cleave.constants import AGENT_MODES, VERSION
from cleave.hooks import HOOK_EVENTS, run_hook
from cleave.models import ConfigError, PipelineConfigError, StateError
from cleave.pipeline import load_pipeline_config, run_pipeline
from cleave.relay import run_relay
from cleave.state import load_pipeline_state, pipeline_state_path, resolve_paths
from cleave.utils import _load_json_if_exists


def _work_dir(args: argparse.Namespace) -> Path:
    return Path(getattr(args, "work_dir", None) or ".").expanduser().resolve()


def _relay_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "max_sessions": getattr(args, "max_sessions", None),
        "pause_seconds": getattr(args, "pause", None),
        "completion_marker": getattr(args, "completion_marker", None),
        "verify_command": getattr(args, "verify", None),
        "verify_timeout": getattr(args, "verify_timeout", None),
        "session_timeout": getattr(args, "session_timeout", None),
        "resume_from": getattr(args, "resume_from", None),
        "verbose": True if getattr(args, "verbose", False) else None,
        "mode": getattr(args, "mode", None),
        "safe_mode": True if getattr(args, "safe_mode", False) else None,
    }


def _cmd_run(args: argparse.Namespace) -> int:
    prompt_file = Path(args.prompt_file).expanduser()
    try:
        config = load_relay_config(
            _work_dir(args),
            initial_prompt_file=prompt_file,
            overrides=_relay_overrides(args),
        )
    except ConfigError as exc:
        print(f"cleave run: ERROR {exc}", file=sys.stderr)
        return 1
    return run_relay(config)


def _cmd_continue(args: argparse.Namespace) -> int:
    task = str(args.task).strip()
    if not task:
        print("cleave continue: ERROR task must not be empty", file=sys.stderr)
        return 2
    work_dir = _work_dir(args)
    paths = resolve_paths(work_dir)
    if not paths.relay_dir.is_dir():
        print(f"cleave continue: ERROR no relay state found in {paths.relay_dir}", file=sys.stderr)
        return 1
    prompt_file = Path(args.prompt_file).expanduser() if args.prompt_file else None
    try:
        config = load_relay_config(work_dir, initial_prompt_file=prompt_file, overrides=_relay_overrides(args))
    except ConfigError as exc:
        print(f"cleave continue: ERROR {exc}", file=sys.stderr)
        return 1
    return run_relay(config, continue_task=task)


def _cmd_pipeline(args: argparse.Namespace) -> int:
    yaml_path = Path(args.pipeline_file).expanduser()
    explicit_work_dir = Path(args.work_dir).expanduser().resolve() if args.work_dir else None
    try:
        pipeline = load_pipeline_config(yaml_path, explicit_work_dir)
        work_dir = explicit_work_dir or pipeline.work_dir or Path.cwd().resolve()
        config = load_relay_config(work_dir, overrides=_relay_overrides(args))
        return run_pipeline(
            config,
            pipeline,
            resume=bool(args.resume),
            resume_stage=args.resume_stage,
            skip_stages=tuple(args.skip_stage or ()),
        )
    except (ConfigError, PipelineConfigError) as exc:
        print(f"cleave pipeline: ERROR {exc}", file=sys.stderr)
        return 1


def _cmd_status(args: argparse.Namespace) -> int:
    work_dir = _work_dir(args)
    paths = resolve_paths(work_dir)
    status = _load_json_if_exists(paths.status_file)

    print("cleave status")
    print(f"work_dir: {work_dir}")
    if not isinstance(status, dict):
        print("status: <no relay state>")
    else:
        for key in ("status", "session", "max_sessions", "phase", "message", "updated_at", "completion_marker"):
            print(f"{key}: {status.get(key, '<missing>')}")

    state_path = pipeline_state_path(work_dir)
    if state_path.exists():
        try:
            pipeline_state = load_pipeline_state(state_path)
        except StateError as exc:
            print(f"cleave status: ERROR {exc}", file=sys.stderr)
            return 1
        print(f"pipeline: {pipeline_state.get('name', '<unnamed>')}")
        print(f"current_stage: {pipeline_state.get('current_stage') or '-'}")
        for stage, stage_status in pipeline_state["stages"].items():
            print(f"  {stage}: {stage_status}")
    return 0


def _cmd_hook(args: argparse.Namespace) -> int:
    stdin_text = "" if sys.stdin is None or sys.stdin.isatty() else sys.stdin.read()
    return run_hook(args.event, stdin_text=stdin_text)


def _add_relay_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--max-sessions", type=int, default=None, help="Maximum number of sessions (default: 10)")
    parser.add_argument("--pause", type=float, default=None, help="Seconds to pause between sessions (default: 10)")
    parser.add_argument(
        "--completion-marker",
        default=None,
        help="Status value in PROGRESS.md that ends the relay (default: ALL_COMPLETE)",
    )
    parser.add_argument("--verify", default=None, help="Shell command whose exit 0 proves the task is done")
    parser.add_argument("--verify-timeout", type=float, default=None, help="Verify command timeout in seconds")
    parser.add_argument(
        "--session-timeout",
        type=float,
        default=None,
        help="Per-session wall-clock limit in seconds (0 disables; default: 1800)",
    )
    parser.add_argument("--mode", choices=AGENT_MODES, default=None, help="Agent launch strategy")
    parser.add_argument(
        "--safe-mode",
        action="store_true",
        help="Do not pass the permission-bypass flag to the agent.",
    )
    parser.add_argument("--work-dir", default=None, help="Project directory (default: current directory)")
    parser.add_argument("--verbose", action="store_true", help="Echo debug lines and agent output.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cleave",
        description="cleave: relay orchestrator for context-limited agent sessions",
    )
    parser.add_argument("--version", action="version", version=f"cleave {VERSION}")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run a relay of agent sessions from an initial prompt file")
    run.add_argument("prompt_file", help="Initial task prompt (markdown)")
    _add_relay_options(run)
    run.add_argument(
        "--resume-from",
        type=int,
        default=None,
        help="Resume after session N (the next session is N+1).",
    )
    run.set_defaults(handler=_cmd_run)

    cont = subparsers.add_parser("continue", help="Reopen a finished relay with a new task")
    cont.add_argument("task", help="The new task description")
    cont.add_argument("--prompt-file", default=None, help="Optional initial prompt used as fallback context")
    _add_relay_options(cont)
    cont.set_defaults(handler=_cmd_continue)

    pipeline = subparsers.add_parser("pipeline", help="Run a multi-stage pipeline defined in YAML")
    pipeline.add_argument("pipeline_file", help="Path to the pipeline YAML")
    _add_relay_options(pipeline)
    pipeline.add_argument("--resume", action="store_true", help="Resume from saved pipeline state.")
    pipeline.add_argument("--resume-stage", default=None, help="Start from the named stage.")
    pipeline.add_argument(
        "--skip-stage",
        action="append",
        default=[],
        help="Skip the named stage (repeatable).",
    )
    pipeline.set_defaults(handler=_cmd_pipeline)

    status = subparsers.add_parser("status", help="Show the current relay status and pipeline stage map")
    status.add_argument("--work-dir", default=None, help="Project directory (default: current directory)")
    status.set_defaults(handler=_cmd_status)

    hook = subparsers.add_parser("hook", help="Agent lifecycle hook entry point (reads JSON on stdin)")
    hook.add_argument("event", choices=HOOK_EVENTS)
    hook.set_defaults(handler=_cmd_hook)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
