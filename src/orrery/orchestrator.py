"""Discover plans and run them on their own work branches.

Each plan is marked as dispatched on the source branch, executed on
`plan/<name>`, then archived and offered for review as a pull request. A plan
that ends blocked stops the run and keeps its work branch for `resume`.
"""

from __future__ import annotations

import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Mapping, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from . import git_utils
from .config import OrchestratorConfig, load_config
from .constants import EXIT_BLOCKED, EXIT_ERROR, EXIT_OK
from .git_utils import GitError, derive_branch_name
from .lock import ExecutionLock, LockContentionError
from .models import Plan, PlanValidationError, StepStatus
from .paths import RepoPaths, effective_root, resolve_paths
from .plan_store import (
    StepUpdate,
    get_completed_plan_names,
    get_plan_files,
    load_plan,
    resolve_plan_file,
    save_plan,
    update_steps_status,
)
from .resolver import resolve_execution_groups
from .scheduler import PlanRunner, RunOutcome

__all__ = [
    "derive_branch_name",
    "discover_plans",
    "generate_pr_body",
    "orchestrate",
    "resume_plan",
    "run_plan",
    "unblock_plan",
]


def _plan_title(file_name: str) -> str:
    name = re.sub(r"\.ya?ml$", "", file_name)
    return re.sub(r"^\d{4}-\d{2}-\d{2}-", "", name)


def generate_pr_body(plan: Plan) -> str:
    """Markdown summary of a finished plan, with a checklist of its steps."""
    total = len(plan.steps)
    completed = sum(1 for s in plan.steps if s.status is StepStatus.COMPLETE)
    blocked = sum(1 for s in plan.steps if s.status is StepStatus.BLOCKED)
    status = "All steps complete" if plan.metadata.get("outcome") == "success" else "Partial (some steps blocked)"

    lines = ["## Plan Summary", "", f"- **Status:** {status}"]
    counts = f"- **Steps:** {completed}/{total} complete"
    if blocked:
        counts += f", {blocked} blocked"
    lines += [counts, "", "## Steps", ""]
    for step in plan.steps:
        mark = {StepStatus.COMPLETE: "x", StepStatus.BLOCKED: "-"}.get(step.status, " ")
        lines.append(f"- [{mark}] **{step.id}**: {step.description}")
        if step.status is StepStatus.BLOCKED and step.blocked_reason:
            lines.append(f"  - Blocked: {step.blocked_reason}")
    lines += ["", "---", "*Generated by Orrery*"]
    return "\n".join(lines)


def discover_plans(paths: RepoPaths, plan_arg: Optional[str] = None) -> tuple[list[Path], list[Plan]]:
    """Return `(plans_to_dispatch, already_dispatched)`.

    Raises:
        FileNotFoundError: If `plan_arg` does not resolve to a plan file.
        PlanValidationError: If any candidate plan is malformed.
    """
    completed = get_completed_plan_names(paths.completed)
    if plan_arg:
        resolved = resolve_plan_file(plan_arg, paths.plans)
        if resolved is None:
            raise FileNotFoundError(f"Plan file not found: {plan_arg}")
        if resolved.name in completed:
            logger.info("Plan already completed: {}", resolved.name)
            return [], []
        candidates = [resolved]
    else:
        candidates = [path for path in get_plan_files(paths.plans) if path.name not in completed]

    to_run: list[Path] = []
    dispatched: list[Plan] = []
    for path in candidates:
        plan = load_plan(path)
        if plan.metadata.get("work_branch"):
            dispatched.append(plan)
        else:
            to_run.append(path)
    return to_run, dispatched


def _commit_plan_file(paths: RepoPaths, message: str, plan_file: Path) -> None:
    if not plan_file.resolve().is_relative_to(paths.repo_root):
        return
    sha = git_utils.commit(paths.repo_root, message, [plan_file])
    if sha:
        logger.info("{} ({})", message, sha[:7])


def _log_pull_request(info: git_utils.PullRequestInfo, console: Console) -> None:
    console.print("\n[bold]=== Pull Request Ready ===[/bold]\n")
    if info.pushed:
        console.print(f"Branch pushed: {info.head_branch} -> origin")
    else:
        console.print(f"Note: Could not push branch. Run: git push -u origin {info.head_branch}")
    console.print(f"Base branch: {info.base_branch}")
    console.print(f"Head branch: {info.head_branch}")
    if info.url:
        console.print(f"\nCreate PR: {info.url}", soft_wrap=True)
    else:
        console.print("\nCould not generate PR URL (no remote configured).")
    console.print("\n--- PR Title ---")
    console.print(info.title, markup=False)
    console.print("\n--- PR Body ---")
    console.print(info.body, markup=False)


def _finalize(outcome: RunOutcome, paths: RepoPaths, source_branch: str, console: Console) -> None:
    """Commit the run's result on the work branch; propose a PR once archived."""
    name = outcome.plan_path.name
    root = paths.repo_root
    if not outcome.archived:
        sha = git_utils.commit(root, f"wip: progress on plan {name}")
        if sha:
            logger.info("Committed work-in-progress ({})", sha[:7])
        logger.info("Plan not complete. Work branch preserved for later continuation.")
        return

    sha = git_utils.commit(root, f"chore: complete plan {name}")
    if sha:
        logger.info("Committed plan completion ({})", sha[:7])
    plan = load_plan(outcome.plan_path)
    try:
        info = git_utils.create_pull_request(root, f"Plan: {_plan_title(name)}", generate_pr_body(plan), source_branch)
    except GitError as exc:
        # The plan is archived already; a failed hand-off never reopens it.
        logger.error("Could not prepare pull request: {}", exc)
        return
    _log_pull_request(info, console)


def _exit_code(outcome: RunOutcome) -> int:
    return EXIT_OK if outcome.successful else EXIT_BLOCKED


def run_plan(
    plan_file: Path,
    paths: RepoPaths,
    config: OrchestratorConfig,
    *,
    commit_changes: bool = True,
) -> RunOutcome:
    """Run one plan in place under its per-plan lock.

    Raises:
        LockContentionError: If another live run owns this plan.
    """
    plan = load_plan(plan_file)
    with ExecutionLock(paths.work_dir, plan.plan_id).held():
        return PlanRunner(plan_file, paths, config, commit_changes=commit_changes).run()


def process_plan_with_branching(
    plan_file: Path,
    source_branch: str,
    paths: RepoPaths,
    config: OrchestratorConfig,
    console: Console,
) -> RunOutcome:
    name = plan_file.name
    root = paths.repo_root
    logger.info("--- Processing: {} ---", name)

    work_branch = derive_branch_name(name)
    logger.info("Work branch: {}", work_branch)
    plan = load_plan(plan_file)
    plan.metadata["source_branch"] = source_branch
    plan.metadata["work_branch"] = work_branch
    save_plan(plan)
    _commit_plan_file(paths, f"chore: dispatch plan {name} to {work_branch}", plan_file)

    if git_utils.branch_exists(root, work_branch):
        logger.info("Work branch {} already exists, checking out...", work_branch)
        git_utils.checkout_branch(root, work_branch)
    else:
        logger.info("Creating work branch: {}", work_branch)
        git_utils.create_branch(root, work_branch)

    outcome = run_plan(plan_file, paths, config)
    _finalize(outcome, paths, source_branch, console)
    return outcome


def resume_plan(
    paths: RepoPaths,
    config: OrchestratorConfig,
    current_branch: str,
    plan_arg: Optional[str] = None,
    console: Optional[Console] = None,
) -> int:
    """Continue the dispatched plan whose work branch is checked out."""
    console = console or Console()
    completed = get_completed_plan_names(paths.completed)
    match: Optional[Plan] = None
    if plan_arg:
        resolved = resolve_plan_file(plan_arg, paths.plans)
        if resolved is None:
            logger.error("Plan file not found: {}", plan_arg)
            return EXIT_ERROR
        match = load_plan(resolved)
        work_branch = match.metadata.get("work_branch")
        if not work_branch:
            logger.error("Plan has no work_branch; it hasn't been dispatched yet. Use 'orrery exec --plan {}'.", resolved.name)
            return EXIT_ERROR
        if work_branch != current_branch:
            logger.error("Plan expects branch '{}' but you are on '{}'. Run: git checkout {}", work_branch, current_branch, work_branch)
            return EXIT_ERROR
    else:
        logger.info("Looking for plan with work_branch: {}", current_branch)
        for path in get_plan_files(paths.plans):
            if path.name in completed:
                continue
            plan = load_plan(path)
            if plan.metadata.get("work_branch") == current_branch:
                match = plan
                break
        if match is None:
            logger.error(
                "No plan found with work_branch matching '{}'. Check out a work branch or pass --plan.",
                current_branch,
            )
            return EXIT_ERROR

    logger.info("Found plan: {}", match.file_name)
    if match.is_complete():
        logger.info("Plan is already complete (no pending steps).")
        return EXIT_OK
    in_progress = [s.id for s in match.steps if s.status is StepStatus.IN_PROGRESS]
    if in_progress:
        logger.info("In-progress steps (will be retried): {}", len(in_progress))

    outcome = run_plan(match.path, paths, config)
    _finalize(outcome, paths, str(match.metadata.get("source_branch") or "main"), console)
    return _exit_code(outcome)


def unblock_plan(
    *,
    plan: str,
    step: Optional[str] = None,
    dry_run: bool = False,
    repo_root: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    console: Optional[Console] = None,
) -> int:
    """Return blocked steps to pending, commit the plan, and resume it.

    Every blocked step is reset unless `step` names a single one.
    """
    console = console or Console()
    paths, _ = prepare(repo_root, env)
    root = paths.repo_root
    plan_file = resolve_plan_file(plan, paths.plans)
    if plan_file is None:
        logger.error("Plan file not found: {}", plan)
        return EXIT_ERROR
    try:
        loaded = load_plan(plan_file)
    except PlanValidationError as exc:
        logger.error("{}", exc)
        return EXIT_ERROR

    blocked = [s for s in loaded.steps if s.status is StepStatus.BLOCKED]
    if not blocked:
        console.print(f"No blocked steps in {loaded.file_name}.")
        return EXIT_OK
    targets = [s for s in blocked if s.id == step] if step else blocked
    if not targets:
        logger.error("Step '{}' is not blocked or does not exist. Blocked: {}", step, ", ".join(s.id for s in blocked))
        return EXIT_ERROR

    if dry_run:
        console.print("Dry run - would unblock the following steps:\n")
        for target in targets:
            console.print(f"  {target.id}", markup=False)
            if target.blocked_reason:
                console.print(f"    (was blocked: {target.blocked_reason})", markup=False)
        return EXIT_OK

    for lock in (ExecutionLock(paths.work_dir), ExecutionLock(paths.work_dir, loaded.plan_id)):
        status = lock.status()
        if status.locked:
            logger.error("A run is in progress (PID {}); try again once it finishes.", status.pid)
            return EXIT_ERROR

    work_branch = loaded.metadata.get("work_branch")
    is_git = git_utils.is_git_repo(root)
    try:
        if work_branch and is_git and git_utils.current_branch(root) != work_branch:
            logger.error("Plan expects branch '{}'. Run: git checkout {}", work_branch, work_branch)
            return EXIT_ERROR
        update_steps_status(plan_file, [StepUpdate(s.id, StepStatus.PENDING) for s in targets])
        console.print(f"Unblocked {len(targets)} step(s): {', '.join(s.id for s in targets)}", markup=False)
        if is_git:
            _commit_plan_file(paths, f"chore: unblock steps in {loaded.plan_id}", plan_file)
    except GitError as exc:
        logger.error("{}", exc)
        return EXIT_ERROR

    if not work_branch:
        # Never dispatched: the next `exec` picks it up.
        return EXIT_OK
    return orchestrate(repo_root=root, plan=str(plan_file), resume=True, env=env, console=console)


def render_dry_run(plan_files: list[Path], console: Console) -> None:
    console.print("Dry run: no changes will be made.")
    if not plan_files:
        console.print("No plans to process.")
        return
    console.print(f"Plans to process ({len(plan_files)}):")
    for plan_file in plan_files:
        plan = load_plan(plan_file)
        counts = plan.counts()
        pending = len(plan.steps) - counts["complete"] - counts["blocked"]
        console.print(f"  - {plan.file_name} ({pending} pending, {counts['complete']} complete, {counts['blocked']} blocked)")
        remaining = {s.id for s in plan.steps if s.status is not StepStatus.COMPLETE}
        table = Table(show_header=True, box=None, pad_edge=False)
        table.add_column("Batch", justify="right")
        table.add_column("Steps")
        batch = 0
        for group in resolve_execution_groups(plan):
            open_ids = [step_id for step_id in group if step_id in remaining]
            if open_ids:
                batch += 1
                table.add_row(str(batch), ", ".join(open_ids))
        console.print(table)


def _apply_cli_overrides(
    config: OrchestratorConfig,
    parallel: Optional[bool],
    max_parallel: Optional[int],
    stream_output: Optional[bool] = None,
    review: Optional[bool] = None,
) -> OrchestratorConfig:
    if stream_output is not None:
        config = replace(config, logging=replace(config.logging, stream_output=stream_output))
    if review is not None:
        config = replace(config, review=replace(config.review, enabled=review))
    concurrency = config.concurrency
    if parallel is not None:
        concurrency = replace(concurrency, parallel_enabled=parallel)
    if max_parallel is not None and max_parallel > 0:
        concurrency = replace(concurrency, max_parallel=max_parallel)
    return replace(config, concurrency=concurrency)


def prepare(
    repo_root: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    *,
    parallel: Optional[bool] = None,
    max_parallel: Optional[int] = None,
    stream_output: Optional[bool] = None,
    review: Optional[bool] = None,
) -> tuple[RepoPaths, OrchestratorConfig]:
    """Resolve directories and the layered configuration for a run."""
    env = os.environ if env is None else env
    paths = resolve_paths(repo_root or effective_root(env=env), env).ensure()
    config, err = load_config(paths.work_dir, env=env)
    if err:
        logger.warning("Ignoring unreadable config ({})", err)
    return paths, _apply_cli_overrides(config, parallel, max_parallel, stream_output, review)


def orchestrate(
    *,
    repo_root: Optional[Path] = None,
    plan: Optional[str] = None,
    dry_run: bool = False,
    resume: bool = False,
    parallel: Optional[bool] = None,
    max_parallel: Optional[int] = None,
    stream_output: Optional[bool] = None,
    review: Optional[bool] = None,
    env: Optional[Mapping[str, str]] = None,
    console: Optional[Console] = None,
) -> int:
    """Run every pending plan (or one named plan) and return a process exit code."""
    console = console or Console()
    paths, config = prepare(
        repo_root,
        env,
        parallel=parallel,
        max_parallel=max_parallel,
        stream_output=stream_output,
        review=review,
    )

    try:
        if dry_run:
            to_run, _ = discover_plans(paths, plan)
            render_dry_run(to_run, console)
            return EXIT_OK
        with ExecutionLock(paths.work_dir).held():
            return _orchestrate_locked(paths, config, plan, resume, console)
    except LockContentionError as exc:
        logger.error("Cannot start: {}", exc.reason)
    except PlanValidationError as exc:
        logger.error("Invalid plan {}:", exc.path.name if exc.path else "")
        for error in exc.errors:
            logger.error("  - {}", error)
    except FileNotFoundError as exc:
        logger.error("{}", exc)
    except GitError as exc:
        logger.error("{}", exc)
    return EXIT_ERROR


def _orchestrate_locked(
    paths: RepoPaths,
    config: OrchestratorConfig,
    plan_arg: Optional[str],
    resume: bool,
    console: Console,
) -> int:
    root = paths.repo_root
    if not git_utils.is_git_repo(root):
        logger.error("{} is not a git repository", root)
        return EXIT_ERROR
    source_branch = git_utils.current_branch(root)
    logger.info("Source branch: {}", source_branch)
    if git_utils.has_uncommitted_changes(root):
        logger.error("Uncommitted changes detected. Please commit or stash before running the orchestrator.")
        return EXIT_ERROR
    if config.concurrency.parallel_enabled:
        logger.info("Parallel mode enabled (max {} concurrent agents)", config.concurrency.max_parallel)
    if config.review.enabled:
        logger.info("Review enabled (max {} iteration(s) per step)", config.review.max_iterations)

    if resume:
        return resume_plan(paths, config, source_branch, plan_arg, console)

    to_run, dispatched = discover_plans(paths, plan_arg)
    if dispatched:
        logger.info("Skipping {} already-dispatched plan(s):", len(dispatched))
        for plan in dispatched:
            logger.info("  - {} (work branch: {})", plan.file_name, plan.metadata.get("work_branch"))
    if not to_run:
        logger.info("No new plans to process in {}", paths.plans)
        return EXIT_OK

    logger.info("Found {} plan(s) to process: {}", len(to_run), ", ".join(p.name for p in to_run))
    for index, plan_file in enumerate(to_run):
        outcome = process_plan_with_branching(plan_file, source_branch, paths, config, console)
        if outcome.successful:
            if git_utils.current_branch(root) != source_branch:
                logger.info("Returning to source branch: {}", source_branch)
                git_utils.checkout_branch(root, source_branch)
            continue
        logger.warning("Plan {} is blocked. Staying on its work branch.", plan_file.name)
        logger.warning("Fix the blocked steps (orrery status), then run 'orrery resume'.")
        remaining = len(to_run) - index - 1
        if remaining:
            logger.warning("Skipped {} remaining plan(s).", remaining)
        return EXIT_BLOCKED
    return EXIT_OK
