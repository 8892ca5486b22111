#!/usr/bin/env python3
"""Provide the `orrery` CLI entrypoint and subcommands."""

from __future__ import annotations

import argparse
import json
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .constants import EXIT_BLOCKED, EXIT_ERROR, EXIT_OK
from .lock import ExecutionLock, LockContentionError
from .models import Plan, PlanValidationError, StepStatus
from .orchestrator import discover_plans, orchestrate, prepare, run_plan, unblock_plan
from .plan_store import get_plan_files, load_plan, resolve_plan_file


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


def _handle_sigterm(signum: int, frame: Any) -> None:
    # Unwind through the lock's finally block instead of dying mid-write.
    raise SystemExit(128 + signum)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=None,
        help="Repository root (default: $ORRERY_REPO_ROOT or current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Debug logging and live worker output",
    )


def _build_exec_parser(prog: str = "orrery exec", resume: bool = False) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Orrery - resume the plan for the current branch" if resume else "Orrery - execute pending plans",
    )
    _add_common_args(parser)
    parser.add_argument("--plan", type=str, default=None, help="Plan file (path or name under plans/)")
    if not resume:
        parser.add_argument("--dry-run", action="store_true", help="Show what would run without changing anything")
        parser.add_argument("--resume", action="store_true", help="Continue the plan whose work branch is checked out")
        parser.add_argument(
            "--no-branch",
            action="store_true",
            help="Run plans in place on the current branch (per-plan locks, no dispatch or PR)",
        )
    parser.add_argument(
        "--parallel",
        dest="parallel",
        action="store_true",
        default=None,
        help="Run parallel-eligible steps in isolated worktrees",
    )
    parser.add_argument("--no-parallel", dest="parallel", action="store_false", help="Disable parallel execution")
    parser.add_argument("--max-parallel", type=int, default=None, help="Maximum concurrent workers")
    parser.add_argument(
        "--review",
        dest="review",
        action="store_true",
        default=None,
        help="Review each completed step and send feedback back for edits",
    )
    parser.add_argument("--no-review", dest="review", action="store_false", help="Skip the review pass")
    return parser


def _build_unblock_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orrery unblock",
        description="Orrery - reset blocked steps to pending and resume the plan",
    )
    _add_common_args(parser)
    parser.add_argument("plan", type=str, help="Plan file (path or name under plans/)")
    parser.add_argument("--step", type=str, default=None, help="Unblock only this step (default: all blocked steps)")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be unblocked")
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orrery status",
        description="Orrery - show plan and lock status",
    )
    _add_common_args(parser)
    parser.add_argument("--plan", type=str, default=None, help="Show step detail for one plan")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    return parser


def plan_status(plan: Plan) -> str:
    if plan.is_successful():
        return "complete"
    if any(step.status is StepStatus.BLOCKED for step in plan.steps):
        return "blocked"
    if any(step.status is StepStatus.IN_PROGRESS for step in plan.steps):
        return "in_progress"
    if plan.metadata.get("work_branch"):
        return "in_flight"
    return "pending"


_STATUS_STYLES = {
    "complete": "green",
    "in_progress": "yellow",
    "in_flight": "yellow",
    "blocked": "red",
}


def _styled(status: str) -> str:
    style = _STATUS_STYLES.get(status)
    label = status.replace("_", " ")
    return f"[{style}]{label}[/{style}]" if style else label


def _status_command(project_dir: Optional[Path], plan_arg: Optional[str], *, as_json: bool = False) -> int:
    paths, _ = prepare(project_dir)
    lock = ExecutionLock(paths.work_dir).status()
    errors: list[str] = []
    plans: list[Plan] = []
    if plan_arg:
        resolved = resolve_plan_file(plan_arg, paths.plans)
        if resolved is None:
            logger.error("Plan file not found: {}", plan_arg)
            return EXIT_ERROR
        plan_files = [resolved]
    else:
        plan_files = get_plan_files(paths.plans)
    for plan_file in plan_files:
        try:
            plans.append(load_plan(plan_file))
        except PlanValidationError as exc:
            errors.append(str(exc))

    if as_json:
        payload = {
            "work_dir": str(paths.work_dir),
            "lock": {"locked": lock.locked, "stale": lock.stale, "pid": lock.pid, "started_at": lock.started_at},
            "errors": errors,
            "plans": [
                {
                    "file": plan.file_name,
                    "status": plan_status(plan),
                    "work_branch": plan.metadata.get("work_branch"),
                    "counts": plan.counts(),
                    "steps": [
                        {"id": s.id, "status": s.status.value, "blocked_reason": s.blocked_reason} for s in plan.steps
                    ],
                }
                for plan in plans
            ],
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return EXIT_ERROR if errors else EXIT_OK

    console = Console()
    if lock.locked:
        console.print(f"[yellow]Running:[/yellow] PID {lock.pid} since {lock.started_at}")
    elif lock.stale:
        console.print(f"Stale lock from PID {lock.pid} (will be recovered on next run)")
    else:
        console.print("Lock: free")
    for err in errors:
        console.print(f"[red]Invalid plan:[/red] {err}", markup=True)
    if not plans:
        console.print(f"No plans in {paths.plans}")
        return EXIT_ERROR if errors else EXIT_OK

    if plan_arg:
        plan = plans[0]
        console.print(f"{_styled(plan_status(plan))} {plan.file_name}")
        table = Table(show_header=True)
        table.add_column("Step")
        table.add_column("Status")
        table.add_column("Deps")
        table.add_column("Description")
        for step in plan.steps:
            detail = step.description
            if step.blocked_reason:
                detail += f"\n[red]Blocked: {step.blocked_reason}[/red]"
            table.add_row(step.id, _styled(step.status.value), ", ".join(step.deps), detail)
        console.print(table)
        return EXIT_OK

    table = Table(title="Plans", show_header=True)
    table.add_column("Status")
    table.add_column("Plan")
    table.add_column("Complete", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Blocked", justify="right")
    table.add_column("Work branch")
    for plan in plans:
        counts = plan.counts()
        table.add_row(
            _styled(plan_status(plan)),
            plan.file_name,
            str(counts["complete"]),
            str(counts["pending"] + counts["in_progress"]),
            str(counts["blocked"]),
            str(plan.metadata.get("work_branch") or "-"),
        )
    console.print(table)
    return EXIT_OK


def _stream_override(args: argparse.Namespace) -> Optional[bool]:
    return True if args.verbose else None


def _exec_in_place(args: argparse.Namespace) -> int:
    paths, config = prepare(
        args.project_dir,
        parallel=args.parallel,
        max_parallel=args.max_parallel,
        stream_output=_stream_override(args),
        review=args.review,
    )
    try:
        to_run, dispatched = discover_plans(paths, args.plan)
        to_run += [plan.path for plan in dispatched]
        if not to_run:
            logger.info("No plans to process in {}", paths.plans)
            return EXIT_OK
        for plan_file in to_run:
            outcome = run_plan(plan_file, paths, config)
            if not outcome.successful:
                return EXIT_BLOCKED
    except LockContentionError as exc:
        logger.error("Cannot start: {}", exc.reason)
        return EXIT_ERROR
    except (PlanValidationError, FileNotFoundError) as exc:
        logger.error("{}", exc)
        return EXIT_ERROR
    return EXIT_OK


def _exec_command(args: argparse.Namespace, *, resume: bool = False) -> int:
    if getattr(args, "no_branch", False):
        return _exec_in_place(args)
    return orchestrate(
        repo_root=args.project_dir,
        plan=args.plan,
        dry_run=bool(getattr(args, "dry_run", False)),
        resume=resume or bool(getattr(args, "resume", False)),
        parallel=args.parallel,
        max_parallel=args.max_parallel,
        stream_output=_stream_override(args),
        review=args.review,
    )


def _log_level(args: argparse.Namespace) -> str:
    return "DEBUG" if args.verbose else args.log_level


def main(argv: list[str] | None = None) -> None:
    """Run the `orrery` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    command = argv[0] if argv and not argv[0].startswith("-") else "exec"
    rest = argv[1:] if argv and argv[0] == command else argv

    if command == "status":
        args = _build_status_parser().parse_args(rest)
        _configure_logging(_log_level(args))
        raise SystemExit(_status_command(args.project_dir, args.plan, as_json=bool(args.json)))
    if command not in ("exec", "resume", "unblock"):
        sys.stderr.write(f"Unknown command: {command}. Use exec, resume, unblock, or status.\n")
        raise SystemExit(EXIT_ERROR)

    signal.signal(signal.SIGTERM, _handle_sigterm)
    if command == "unblock":
        args = _build_unblock_parser().parse_args(rest)
        _configure_logging(_log_level(args))
        raise SystemExit(
            unblock_plan(plan=args.plan, step=args.step, dry_run=bool(args.dry_run), repo_root=args.project_dir)
        )

    resume = command == "resume"
    args = _build_exec_parser(f"orrery {command}", resume=resume).parse_args(rest)
    _configure_logging(_log_level(args))
    raise SystemExit(_exec_command(args, resume=resume))


if __name__ == "__main__":
    main()
