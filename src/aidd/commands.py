from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from aidd import __version__
from aidd.adapters import ADAPTERS, resolve_adapter
from aidd.config import _resolve_metadata_dir, load_run_config
from aidd.constants import (
    EXIT_CLI_ERROR,
    EXIT_GENERAL_ERROR,
    EXIT_INVALID_ARGS,
    EXIT_NOT_FOUND,
    EXIT_SUCCESS,
    EXIT_VALIDATION_FAILED,
    FAILURE_SCOPES,
    FEATURES_DIRNAME,
    ITERATIONS_DIRNAME,
)
from aidd.gate import request_stop
from aidd.logs import clean_iteration_logs
from aidd.loop import IterationLoop
from aidd.models import AdapterError, ConfigError, ProjectError
from aidd.project import format_status_markdown, render_status, validate_features
from aidd.utils import _append_log


def _resolve_project_dir(raw: str) -> Path:
    return Path(raw).expanduser().resolve()


def _run_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "cli": args.cli,
        "max_iterations": args.max_iterations,
        "idle_timeout": args.idle_timeout,
        "nudge_timeout": args.idle_nudge_timeout,
        "timeout": args.timeout,
        "failure_threshold": args.quit_on_abort,
        "failure_scope": args.failure_scope,
        "continue_on_timeout": args.continue_on_timeout,
        "no_clean": args.no_clean,
        "model": args.model,
        "init_model": args.init_model,
        "code_model": args.code_model,
        "spec_file": args.spec,
        "todo": args.todo,
        "validate": args.validate,
        "in_progress": args.in_progress,
        "directive": args.prompt,
        "audits": args.audit,
        "stop_when_done": args.stop_when_done,
        "resources_dir": args.resources_dir,
    }


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        config = load_run_config(_resolve_project_dir(args.project_dir), _run_overrides(args))
    except ConfigError as exc:
        print(f"aidd run: ERROR {exc}", file=sys.stderr)
        return EXIT_INVALID_ARGS

    try:
        adapter = resolve_adapter(
            config.cli,
            model=config.model,
            init_model=config.init_model,
            code_model=config.code_model,
            nudge_message=config.nudge_message,
        )
    except AdapterError as exc:
        print(f"aidd run: ERROR {exc}", file=sys.stderr)
        return EXIT_CLI_ERROR
    if not adapter.is_available():
        print(
            f"aidd run: ERROR agent CLI '{adapter.executable}' for {adapter.name} was not found on PATH",
            file=sys.stderr,
        )
        return EXIT_CLI_ERROR
    print(f"aidd run: using {adapter.name} ({adapter.version()})")

    try:
        summary = IterationLoop(config, adapter).run()
    except ProjectError as exc:
        print(f"aidd run: ERROR {exc}", file=sys.stderr)
        _append_log(config.metadata_dir, f"run error: {exc}")
        return EXIT_GENERAL_ERROR
    return int(summary.exit_code)


def _cmd_stop(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    if not project_dir.is_dir():
        print(f"aidd stop: ERROR project directory does not exist: {project_dir}", file=sys.stderr)
        return EXIT_NOT_FOUND
    metadata_dir = _resolve_metadata_dir(project_dir)
    path = request_stop(metadata_dir, reason=args.reason or "")
    _append_log(metadata_dir, f"stop requested via {path}")
    print(f"aidd stop: stop requested; the run halts before its next iteration ({path})")
    return EXIT_SUCCESS


def _cmd_status(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    if not project_dir.is_dir():
        print(f"aidd status: ERROR project directory does not exist: {project_dir}", file=sys.stderr)
        return EXIT_NOT_FOUND
    status = render_status(project_dir, _resolve_metadata_dir(project_dir))
    if args.json:
        print(json.dumps(status, indent=2))
    else:
        print(format_status_markdown(status), end="")
    return EXIT_SUCCESS


def _cmd_check_features(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    metadata_dir = _resolve_metadata_dir(project_dir)
    checked, failures = validate_features(metadata_dir)
    if checked == 0:
        print(f"aidd check-features: ERROR no feature files under {metadata_dir / FEATURES_DIRNAME}", file=sys.stderr)
        return EXIT_NOT_FOUND
    for failure in failures:
        print(f"  - {failure}")
    if failures:
        print(f"aidd check-features: {len(failures)} problem(s) in {checked} feature file(s)")
        return EXIT_VALIDATION_FAILED
    print(f"aidd check-features: {checked} feature file(s) valid")
    return EXIT_SUCCESS


def _cmd_clean_logs(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    metadata_dir = _resolve_metadata_dir(project_dir)
    iterations_dir = metadata_dir / ITERATIONS_DIRNAME
    if not iterations_dir.is_dir():
        print(f"aidd clean-logs: ERROR no iteration logs under {iterations_dir}", file=sys.stderr)
        return EXIT_NOT_FOUND
    changed = clean_iteration_logs(iterations_dir)
    print(f"aidd clean-logs: cleaned {changed} log file(s)")
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_project_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        required=True,
        help="Project directory the agent works in",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="aidd: unattended AI development driver")
    parser.add_argument("--version", action="version", version=f"aidd {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Drive agent iterations against a project")
    _add_project_dir(run)
    run.add_argument("--cli", choices=sorted(ADAPTERS), default=None, help="Agent CLI to drive (default: opencode)")
    run.add_argument("--max-iterations", type=int, default=None, help="Stop after N iterations (default: unbounded)")
    run.add_argument("--idle-timeout", type=float, default=None, help="Kill the agent after S silent seconds (default: 900)")
    run.add_argument(
        "--idle-nudge-timeout",
        type=float,
        default=None,
        help="Nudge the agent after S silent seconds; must be below --idle-timeout (default: 300)",
    )
    run.add_argument("--timeout", type=float, default=None, help="Hard wall-clock limit per iteration (default: 3600)")
    run.add_argument(
        "--quit-on-abort",
        type=int,
        default=None,
        help="Halt after N consecutive failed iterations; 0 never halts (default: 0)",
    )
    run.add_argument(
        "--failure-scope",
        choices=FAILURE_SCOPES,
        default=None,
        help="Share the failure counter across audits ('run') or reset it per audit ('audit')",
    )
    run.add_argument(
        "--continue-on-timeout",
        action="store_true",
        default=None,
        help=(
            "Keep going after an iteration is terminated by timeout or signal; "
            "without it the run halts on the first such iteration (exit 124)"
        ),
    )
    run.add_argument("--no-clean", action="store_true", default=None, help="Leave iteration logs uncleaned on exit")
    run.add_argument("--model", default=None, help="Model for every prompt")
    run.add_argument("--init-model", default=None, help="Model for initializer/onboarding prompts")
    run.add_argument("--code-model", default=None, help="Model for coding prompts")
    run.add_argument("--spec", default=None, help="Application spec copied in for a new project")
    modes = run.add_mutually_exclusive_group()
    modes.add_argument("--todo", action="store_true", default=None, help="Work through todo items")
    modes.add_argument("--validate", action="store_true", default=None, help="Validate features and todos")
    modes.add_argument("--in-progress", action="store_true", default=None, help="Only finish in-progress features")
    run.add_argument("--prompt", default=None, help="Run a custom directive instead of the normal prompts")
    run.add_argument("--audit", default=None, help="Run audit(s), comma separated")
    run.add_argument(
        "--stop-when-done",
        action="store_true",
        default=None,
        help="Stop when --todo/--in-progress has nothing left",
    )
    run.add_argument(
        "--resources-dir",
        default=None,
        help="Directory holding copydirs.txt/copyfiles.txt (default: the metadata directory)",
    )
    run.set_defaults(handler=_cmd_run)

    stop = subparsers.add_parser("stop", help="Ask a running driver to halt before its next iteration")
    _add_project_dir(stop)
    stop.add_argument("--reason", default="", help="Reason recorded in the stop file")
    stop.set_defaults(handler=_cmd_stop)

    status = subparsers.add_parser("status", help="Show feature, todo and completion status")
    _add_project_dir(status)
    status.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    status.set_defaults(handler=_cmd_status)

    check = subparsers.add_parser("check-features", help="Validate feature.json files against the schema")
    _add_project_dir(check)
    check.set_defaults(handler=_cmd_check_features)

    clean = subparsers.add_parser("clean-logs", help="Strip terminal noise from iteration logs")
    _add_project_dir(clean)
    clean.set_defaults(handler=_cmd_clean_logs)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return EXIT_INVALID_ARGS
    return int(handler(args))
