#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for Feature Spec Runner.

Runs the constitution, specify, clarify, plan, tasks, checklist, analyze and
implement stages through an external agent, validating each artifact.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from .config import RunnerSettings, load_settings
from .constants import EXIT_CANCELLED, EXIT_INVALID_INPUT, EXIT_SUCCESS, TASKS_FILE
from .dependencies import check_artifact_dependencies, check_constitution_exists
from .errors import FeatureNotFound, MissingPrerequisite, PipelineError
from .execution_mode import ExecutionModeFlags, resolve_execution_mode
from .features import Feature, detect_feature
from .orchestrator import PipelineOrchestrator
from .reporting import render_order, render_run_preview, render_status
from .stages import Stage, StageSelector
from .task_graph import parse_tasks


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


# Initialize with default level; will be reconfigured in main() based on CLI args
_configure_logging()

_STAGE_FLAGS: list[tuple[str, str, Stage, str]] = [
    ("-n", "--constitution", Stage.CONSTITUTION, "Create or update the project constitution"),
    ("-s", "--specify", Stage.SPECIFY, "Generate the feature specification"),
    ("-r", "--clarify", Stage.CLARIFY, "Refine the specification with clarifications"),
    ("-p", "--plan", Stage.PLAN, "Generate the implementation plan"),
    ("-t", "--tasks", Stage.TASKS, "Generate the task breakdown"),
    ("-l", "--checklist", Stage.CHECKLIST, "Generate a requirements checklist"),
    ("-z", "--analyze", Stage.ANALYZE, "Cross-check spec, plan and tasks"),
    ("-i", "--implement", Stage.IMPLEMENT, "Implement the tasks"),
]


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Shorthand for --log-level DEBUG",
    )


def _add_spec_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--spec",
        type=str,
        default=None,
        help="Feature directory to use (NNN-name, NNN or name; default: detect from git branch or newest)",
    )


def _add_execution_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Retries per stage when validation fails (default: config or 3)",
    )
    parser.add_argument(
        "--agent-command",
        type=str,
        default=None,
        help="Agent command template; must contain {prompt}, {prompt_file} or '-'",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Do not ask before overwriting existing artifacts",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run all checks and show what would run, without invoking the agent",
    )
    parser.add_argument(
        "--prompt",
        type=str,
        default=None,
        help="Extra guidance passed to every stage except specify",
    )
    parser.add_argument(
        "--restart",
        action="store_true",
        help="Re-run implement units even when already complete",
    )


def _add_mode_args(parser: argparse.ArgumentParser, *, include_tasks_flag: bool) -> None:
    group = parser.add_argument_group("implement execution mode")
    group.add_argument("--phases", action="store_true", help="One agent session per phase")
    group.add_argument("--phase", type=int, default=None, metavar="N", help="Run only phase N")
    group.add_argument("--from-phase", type=int, default=None, metavar="N", help="Run phases N and later")
    if include_tasks_flag:
        group.add_argument("--tasks", action="store_true", help="One agent session per task")
    group.add_argument("--from-task", type=str, default=None, metavar="ID", help="Run tasks from ID onward")
    group.add_argument("--single-session", action="store_true", help="Run all tasks in one agent session")


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feature-spec-runner run",
        description="Run selected pipeline stages in canonical order",
    )
    parser.add_argument("description", nargs="?", default=None, help="Feature description (for --specify)")
    parser.add_argument(
        "-a",
        "--all",
        action="store_true",
        help="Run the core stages: specify, plan, tasks, implement",
    )
    for short, long, _stage, help_text in _STAGE_FLAGS:
        parser.add_argument(short, long, action="store_true", help=help_text)
    _add_spec_arg(parser)
    _add_execution_args(parser)
    _add_mode_args(parser, include_tasks_flag=False)
    _add_common_args(parser)
    return parser


def _build_implement_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feature-spec-runner implement",
        description="Run the implement stage for a feature",
    )
    parser.add_argument("guidance", nargs="?", default=None, help="Extra guidance for the agent")
    _add_spec_arg(parser)
    _add_execution_args(parser)
    _add_mode_args(parser, include_tasks_flag=True)
    _add_common_args(parser)
    return parser


def _build_check_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feature-spec-runner check",
        description="Check that the artifacts needed by the selected stages exist",
    )
    parser.add_argument("-a", "--all", action="store_true", help="Check the core stages")
    for short, long, _stage, help_text in _STAGE_FLAGS:
        parser.add_argument(short, long, action="store_true", help=help_text)
    _add_spec_arg(parser)
    _add_common_args(parser)
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feature-spec-runner status",
        description="Show task progress for a feature",
    )
    _add_spec_arg(parser)
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
    _add_common_args(parser)
    return parser


def _build_order_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feature-spec-runner order",
        description="Show the dependency-respecting task execution order",
    )
    _add_spec_arg(parser)
    _add_common_args(parser)
    return parser


def _selector_from_args(args: argparse.Namespace) -> StageSelector:
    selector = StageSelector()
    if getattr(args, "all", False):
        selector.set_all()
    for _short, long, stage, _help in _STAGE_FLAGS:
        if getattr(args, long.lstrip("-").replace("-", "_"), False):
            selector.add(stage)
    return selector


def _mode_flags_from_args(args: argparse.Namespace) -> ExecutionModeFlags:
    return ExecutionModeFlags(
        phases=bool(args.phases),
        tasks=bool(getattr(args, "tasks", False)) if args.command == "implement" else False,
        single_session=bool(args.single_session),
        phase=args.phase,
        from_phase=args.from_phase,
        from_task=args.from_task,
    )


def _prompt_confirm(message: str) -> bool:
    sys.stderr.write(f"{message} [y/N] ")
    sys.stderr.flush()
    try:
        answer = input()
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


@contextmanager
def _cancel_on_interrupt(orchestrator: PipelineOrchestrator) -> Iterator[None]:
    """Turn the first Ctrl-C into a cancellation request; the second interrupts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum: int, frame: Any) -> None:
        if orchestrator.cancel_event.is_set():
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        orchestrator.cancel()

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _report_error(exc: PipelineError) -> int:
    sys.stderr.write(f"Error: {exc}\n")
    if isinstance(exc, MissingPrerequisite) and exc.remediation:
        sys.stderr.write(exc.remediation + "\n")
    return exc.exit_code


def _settings_for(args: argparse.Namespace) -> RunnerSettings:
    overrides = {
        "max_retries": getattr(args, "max_retries", None),
        "agent_command": getattr(args, "agent_command", None),
    }
    return load_settings(args.project_dir.resolve(), overrides=overrides)


def _run_command(args: argparse.Namespace) -> int:
    project_dir = args.project_dir.resolve()
    if args.command == "implement":
        selector = StageSelector([Stage.IMPLEMENT])
        guidance = args.guidance or args.prompt
        description = None
    else:
        selector = _selector_from_args(args)
        guidance = args.prompt
        description = args.description
    if selector.count() == 0:
        sys.stderr.write("No stages selected. Use -a or one of -n -s -r -p -t -l -z -i.\n")
        return EXIT_INVALID_INPUT

    try:
        settings = _settings_for(args)
        mode = resolve_execution_mode(_mode_flags_from_args(args), settings.implement_method)
        orchestrator = PipelineOrchestrator(project_dir, settings, confirm=_prompt_confirm)
        with _cancel_on_interrupt(orchestrator):
            result = orchestrator.run(
                selector,
                feature_description=description,
                spec_name=args.spec,
                guidance=guidance,
                execution_mode=mode,
                force_restart=bool(args.restart),
                assume_yes=bool(args.yes),
                dry_run=bool(args.dry_run),
            )
    except PipelineError as exc:
        return _report_error(exc)
    except ValueError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        return EXIT_INVALID_INPUT

    if result.dry_run:
        sys.stdout.write(render_run_preview(selector, result))
        return EXIT_SUCCESS
    sys.stdout.write(
        f"Completed {len(result.stages_run)} stage(s) for {result.feature or 'project'} "
        f"in {result.total_attempts} agent attempt(s)\n"
    )
    if result.skipped_units:
        sys.stdout.write(f"Skipped {len(result.skipped_units)} unit(s) already complete\n")
    return EXIT_SUCCESS


def _check_command(args: argparse.Namespace) -> int:
    project_dir = args.project_dir.resolve()
    selector = _selector_from_args(args).freeze()
    try:
        settings = _settings_for(args)
        constitution = check_constitution_exists(selector, project_dir)
        if not constitution.ok:
            raise MissingPrerequisite(
                "Project constitution not found",
                missing=constitution.missing_artifacts,
                remediation=constitution.remediation_message,
            )
        feature = None
        if Stage.SPECIFY not in selector:
            feature = detect_feature(project_dir, project_dir / settings.specs_dir, args.spec)
        result = check_artifact_dependencies(selector, project_dir, feature.directory if feature else None)
    except PipelineError as exc:
        return _report_error(exc)

    if not result.ok:
        sys.stdout.write(result.remediation_message + "\n")
        return EXIT_INVALID_INPUT
    sys.stdout.write("All required artifacts are present.\n")
    for path in result.overwrites:
        sys.stdout.write(f"Warning: {path} will be overwritten\n")
    return EXIT_SUCCESS


def _load_feature(args: argparse.Namespace) -> tuple[Feature, RunnerSettings]:
    project_dir = args.project_dir.resolve()
    settings = _settings_for(args)
    feature = detect_feature(project_dir, project_dir / settings.specs_dir, args.spec)
    if feature is None:
        raise FeatureNotFound(f"no feature directory under {project_dir / settings.specs_dir}")
    return feature, settings


def _status_command(args: argparse.Namespace, *, as_json: bool = False) -> int:
    try:
        feature, _settings = _load_feature(args)
        graph = parse_tasks(feature.directory / TASKS_FILE)
    except PipelineError as exc:
        return _report_error(exc)

    if as_json:
        stats = graph.stats()
        nxt = graph.first_incomplete_phase()
        payload = {
            "feature": feature.identity,
            "tasks_file": str(feature.directory / TASKS_FILE),
            "summary": {
                "total": stats.total,
                "completed": stats.completed,
                "in_progress": stats.in_progress,
                "pending": stats.pending,
                "blocked": stats.blocked,
            },
            "phases": [
                {
                    "number": phase.number,
                    "title": phase.title,
                    "complete": phase.is_complete(),
                    "tasks": {task.id: task.status.value for task in phase.tasks},
                }
                for phase in graph.phases
            ],
            "next_phase": nxt.number if nxt else None,
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return EXIT_SUCCESS

    sys.stdout.write(render_status(graph, feature.identity))
    return EXIT_SUCCESS


def _order_command(args: argparse.Namespace) -> int:
    try:
        feature, _settings = _load_feature(args)
        graph = parse_tasks(feature.directory / TASKS_FILE)
        sys.stdout.write(render_order(graph))
    except PipelineError as exc:
        return _report_error(exc)
    return EXIT_SUCCESS


_COMMANDS = {
    "run": _build_run_parser,
    "implement": _build_implement_parser,
    "check": _build_check_parser,
    "status": _build_status_parser,
    "order": _build_order_parser,
}


def main(argv: Optional[list[str]] = None) -> None:
    """Run the `feature-spec-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`. Without a known subcommand, `run` is assumed.

    Raises:
        SystemExit: Raised to return a process exit code for CLI subcommands.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    command = "run"
    if argv and argv[0] in _COMMANDS:
        command = argv.pop(0)
    args = _COMMANDS[command]().parse_args(argv)
    args.command = command
    _configure_logging("DEBUG" if args.debug else args.log_level)

    if command == "check":
        raise SystemExit(_check_command(args))
    if command == "status":
        raise SystemExit(_status_command(args, as_json=bool(args.json)))
    if command == "order":
        raise SystemExit(_order_command(args))
    try:
        raise SystemExit(_run_command(args))
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted\n")
        raise SystemExit(EXIT_CANCELLED)


if __name__ == "__main__":
    main()
