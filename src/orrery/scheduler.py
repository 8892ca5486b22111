"""Drive one plan from its current statuses to archived or blocked.

The loop is single-threaded: worker processes run on executor threads, but
every scheduling decision, plan write, and reintegration happens here, one
at a time.

    scanning -> dispatching -> awaiting -> scanning | blocked_terminal | archiving
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence

from loguru import logger

from . import git_utils
from .condensed_plan import delete_condensed_plan, generate_condensed_plan, write_condensed_plan
from .config import OrchestratorConfig
from .constants import OUTCOME_PARTIAL, OUTCOME_SUCCESS, REPO_ROOT_ENV
from .git_utils import GitError
from .isolation import IsolationManager, Workspace
from .models import Plan, StepResult, StepStatus
from .paths import RepoPaths
from .plan_store import (
    StepUpdate,
    load_plan,
    move_plan_to_completed,
    reset_in_progress,
    save_plan,
    update_steps_status,
)
from .progress import ProgressTracker
from .reports import write_step_report
from .resolver import Partition, blocked_dependents, partition_steps, ready_steps
from .utils import _now_iso
from .workers import BatchHandle, BatchOutcome, run_review_loop, submit_batch, wait_for_any


class RunState(str, Enum):
    SCANNING = "scanning"
    DISPATCHING = "dispatching"
    AWAITING = "awaiting"
    BLOCKED_TERMINAL = "blocked_terminal"
    ARCHIVING = "archiving"


@dataclass
class RunOutcome:
    plan_path: Path
    state: RunState
    history: list[RunState] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    outcome: Optional[str] = None
    archived_path: Optional[Path] = None

    @property
    def archived(self) -> bool:
        return self.archived_path is not None

    @property
    def successful(self) -> bool:
        return self.archived and not self.blocked


@dataclass
class _InFlight:
    step_ids: list[str]
    serial: bool
    temp_plan: Path
    workspace: Optional[Workspace] = None
    handle: Optional[BatchHandle] = None


def archive_plan(plan_path: Path, completed_dir: Path) -> tuple[Path, str]:
    """Stamp completion metadata on a finished plan and move it to `completed_dir`."""
    plan = load_plan(plan_path)
    outcome = OUTCOME_SUCCESS if plan.is_successful() else OUTCOME_PARTIAL
    plan.metadata["completed_at"] = _now_iso()
    plan.metadata["outcome"] = outcome
    save_plan(plan)
    dest = move_plan_to_completed(plan_path, completed_dir)
    logger.info("Archived {} ({}) to {}", plan.file_name, outcome, dest.parent)
    return dest, outcome


def _log_blocked(plan: Plan) -> None:
    for step in plan.steps:
        if step.status is StepStatus.BLOCKED:
            logger.warning("  {}: {}", step.id, step.blocked_reason)


def _blocked_results(step_ids: Sequence[str], reason: str) -> list[StepResult]:
    return [
        StepResult(step_id=step_id, status=StepStatus.BLOCKED, summary="Step failed", blocked_reason=reason, synthesized=True)
        for step_id in step_ids
    ]


class PlanRunner:
    """Execute one plan file until it is archived or cannot progress."""

    def __init__(
        self,
        plan_path: Path,
        paths: RepoPaths,
        config: OrchestratorConfig,
        *,
        isolation: Optional[IsolationManager] = None,
        commit_changes: bool = True,
        archive: bool = True,
    ) -> None:
        self.plan_path = plan_path
        self.paths = paths
        self.config = config
        self.repo_root = paths.repo_root
        self.is_git = git_utils.is_git_repo(self.repo_root)
        self.isolation = isolation
        if self.isolation is None and config.concurrency.parallel_enabled and self.is_git:
            self.isolation = IsolationManager(self.repo_root)
        self.commit_changes = commit_changes and self.is_git
        self.archive = archive
        self.max_parallel = max(1, config.concurrency.max_parallel)
        self.history: list[RunState] = []
        self._in_flight: list[_InFlight] = []
        self._deferred: list[tuple[_InFlight, BatchOutcome]] = []
        self._tracker: Optional[ProgressTracker] = None

    def _transition(self, state: RunState) -> None:
        if not self.history or self.history[-1] is not state:
            logger.debug("{}: {}", self.plan_path.name, state.value)
        self.history.append(state)

    @property
    def _isolation_enabled(self) -> bool:
        return self.isolation is not None

    def _serial_running(self) -> bool:
        return any(flight.serial for flight in self._in_flight)

    def _running_count(self) -> int:
        return sum(len(flight.step_ids) for flight in self._in_flight)

    def _on_output(self, step_ids: list[str]):
        prefix = f"[{','.join(step_ids)}]"
        stream_output = self.config.logging.stream_output
        progress_agents = {name for name, spec in self.config.agents.items() if spec.stderr_is_progress}

        def emit(agent: str, stream: str, text: str) -> None:
            line = text.rstrip()
            if not line:
                return
            if stream_output:
                logger.info("{} {}", prefix, line)
            elif stream == "stderr" and agent not in progress_agents:
                logger.debug("{} {}", prefix, line)

        return emit

    def _dispatch(self, plan: Plan, partition: Partition, executor: ThreadPoolExecutor) -> None:
        selected = [step.id for step in partition.selected]
        # Mark every selected step before any worker starts.
        plan = update_steps_status(
            self.plan_path, [StepUpdate(step_id, StepStatus.IN_PROGRESS) for step_id in selected]
        )
        if self._tracker:
            self._tracker.log_step_start(selected)

        isolation = self.isolation
        parallel_ids = {step.id for step in partition.parallel} if isolation is not None else set()
        for step_id in selected:
            ids = [step_id]
            serial = step_id not in parallel_ids
            workspace: Optional[Workspace] = None
            cwd = self.repo_root
            if isolation is not None and not serial:
                try:
                    workspace = isolation.create(ids)
                    cwd = workspace.path
                except GitError as exc:
                    logger.error("Failed to create worktree for {}: {}", step_id, exc)
                    self._apply_results(_blocked_results(ids, f"Could not create isolated workspace: {exc.stderr or exc}"), None)
                    continue

            condensed = generate_condensed_plan(plan, ids)
            temp_plan = write_condensed_plan(condensed, self.plan_path, ids, self.paths.temp)
            flight = _InFlight(step_ids=ids, serial=serial, temp_plan=temp_plan, workspace=workspace)
            flight.handle = submit_batch(
                executor,
                self.config,
                temp_plan,
                ids,
                cwd,
                log_dir=self.paths.reports,
                context=flight,
                on_output=self._on_output(ids),
                env=self._worker_env(),
                source_plan=self.plan_path,
            )
            self._in_flight.append(flight)

    def _worker_env(self) -> dict[str, str]:
        return {REPO_ROOT_ENV: str(self.repo_root)}

    def _workspaces(self) -> IsolationManager:
        if self.isolation is None:
            raise RuntimeError(f"{self.plan_path.name}: worktree isolation is not set up for this run")
        return self.isolation

    def _apply_results(
        self,
        results: list[StepResult],
        agent: Optional[str],
        reviews: Optional[dict[str, list[dict[str, Any]]]] = None,
    ) -> Plan:
        """Write all results of one invocation in a single plan update, then report them."""
        updates = []
        for result in results:
            extras: dict[str, object] = {}
            if agent:
                extras["agent"] = agent
            if result.status is StepStatus.BLOCKED:
                extras["blocked_reason"] = result.blocked_reason or result.summary or "blocked"
            updates.append(StepUpdate(result.step_id, result.status, extras))
        plan = update_steps_status(self.plan_path, updates)

        tracker = self._tracker
        for result in results:
            write_step_report(
                self.paths.reports, plan.file_name, result, agent=agent, reviews=(reviews or {}).get(result.step_id)
            )
            if result.ok:
                logger.info("Step {} complete: {}", result.step_id, result.summary)
                if tracker:
                    tracker.record_complete(result.step_id)
                continue
            logger.warning("Step {} blocked: {}", result.step_id, result.blocked_reason)
            if tracker:
                tracker.record_blocked(result.step_id)
            waiting = blocked_dependents(plan, result.step_id)
            if waiting:
                logger.warning("Steps waiting on {} cannot run: {}", result.step_id, ", ".join(waiting))
        if tracker:
            tracker.log_progress()
        return plan

    def _commit_message(self, flight: _InFlight, results: list[StepResult]) -> str:
        for result in results:
            if result.ok and result.commit_message:
                return result.commit_message
        ids = ", ".join(flight.step_ids)
        if any(result.ok for result in results):
            return f"feat: complete step(s) {ids}"
        return f"wip: attempt step(s) {ids}"

    def _review(self, flight: _InFlight, results: list[StepResult]) -> tuple[list[StepResult], dict[str, list[dict[str, Any]]]]:
        """Run the review/edit loop on each completed result, in the directory the worker used."""
        if not self.config.review.enabled:
            return results, {}
        cwd = flight.workspace.path if flight.workspace is not None else self.repo_root
        reviewed: list[StepResult] = []
        reviews: dict[str, list[dict[str, Any]]] = {}
        for result in results:
            if not result.ok:
                reviewed.append(result)
                continue
            loop = run_review_loop(
                self.config,
                flight.temp_plan,
                result,
                cwd,
                log_dir=self.paths.reports,
                on_output=self._on_output([result.step_id]),
                env=self._worker_env(),
                source_plan=self.plan_path,
            )
            reviewed.append(loop.result)
            reviews[result.step_id] = loop.reviews
        return reviewed, reviews

    def _reintegrate(self, flight: _InFlight, workspace: Workspace, results: list[StepResult]) -> list[StepResult]:
        reintegration = self._workspaces().reintegrate(workspace, self._commit_message(flight, results))
        if reintegration.ok:
            return results
        reason = reintegration.reason or "Reintegration failed"
        return [
            result if not result.ok else StepResult(
                step_id=result.step_id,
                status=StepStatus.BLOCKED,
                summary=result.summary,
                artifacts=result.artifacts,
                blocked_reason=reason,
                test_results=result.test_results,
            )
            for result in results
        ]

    def _finish(self, flight: _InFlight, outcome: BatchOutcome) -> None:
        try:
            results, reviews = self._review(flight, outcome.results)
        finally:
            delete_condensed_plan(flight.temp_plan)
        workspace = flight.workspace
        if workspace is not None:
            if any(result.ok for result in results):
                results = self._reintegrate(flight, workspace, results)
            else:
                self._workspaces().discard(workspace)
        self._apply_results(results, outcome.agent, reviews)

        if flight.serial and self.commit_changes and git_utils.has_uncommitted_changes(
            self.repo_root, include_untracked=True
        ):
            message = self._commit_message(flight, results)
            try:
                sha = git_utils.commit(self.repo_root, message)
            except GitError as exc:
                logger.error("Commit after {} failed: {}", ", ".join(flight.step_ids), exc)
            else:
                if sha:
                    logger.info("Committed: {} ({})", message.splitlines()[0], sha[:7])

    def _collect(self, flight: _InFlight) -> None:
        if flight.handle is None:
            raise RuntimeError(f"Step(s) {flight.step_ids} were never dispatched")
        self._in_flight.remove(flight)
        try:
            outcome = flight.handle.result()
        except Exception as exc:
            logger.exception("Worker for {} crashed", flight.step_ids)
            outcome = BatchOutcome(step_ids=flight.step_ids, results=_blocked_results(flight.step_ids, f"Worker error: {exc}"))

        if outcome.agent:
            code = outcome.invocation.exit_code if outcome.invocation else None
            logger.info("Agent {} for step(s) {} exited with code {}", outcome.agent, ", ".join(flight.step_ids), code)

        # Replaying commits while a serial worker edits the shared tree is unsafe; wait for it.
        if flight.workspace is not None and self._serial_running():
            logger.debug("Deferring reintegration of {} until the serial step finishes", flight.step_ids)
            self._deferred.append((flight, outcome))
            return
        self._finish(flight, outcome)

    def _drain_deferred(self) -> None:
        if self._serial_running():
            return
        while self._deferred:
            flight, outcome = self._deferred.pop(0)
            self._finish(flight, outcome)

    def _cancel_all(self) -> None:
        for flight in self._in_flight:
            if flight.handle is not None:
                flight.handle.cancel()
        for flight in self._in_flight:
            if flight.workspace is not None:
                logger.warning("Leaving worktree {} for inspection", flight.workspace.path)
            delete_condensed_plan(flight.temp_plan)
        for flight, _ in self._deferred:
            if flight.workspace is not None:
                logger.warning("Leaving worktree {} for inspection", flight.workspace.path)
            delete_condensed_plan(flight.temp_plan)

    def _outcome(self, state: RunState, archived: Optional[Path] = None, outcome: Optional[str] = None) -> RunOutcome:
        plan = load_plan(archived or self.plan_path)
        return RunOutcome(
            plan_path=archived or self.plan_path,
            state=state,
            history=list(self.history),
            completed=[s.id for s in plan.steps if s.status is StepStatus.COMPLETE],
            blocked={s.id: s.blocked_reason or "" for s in plan.steps if s.status is StepStatus.BLOCKED},
            pending=[s.id for s in plan.steps if not s.status.is_terminal],
            outcome=outcome,
            archived_path=archived,
        )

    def run(self) -> RunOutcome:
        stale = reset_in_progress(self.plan_path)
        if stale:
            logger.info("Resetting interrupted step(s) to pending: {}", ", ".join(stale))
        plan = load_plan(self.plan_path)
        self._tracker = ProgressTracker.from_plan(plan)
        self._tracker.log_start()
        if self.isolation is not None:
            for orphan in self.isolation.orphaned_workspaces():
                logger.warning(
                    "Found worktree from an earlier run: {} (branch {}; left for manual recovery)",
                    orphan.path,
                    orphan.branch or "unknown",
                )

        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="orrery-worker") as executor:
            try:
                state = self._loop(executor)
            except BaseException:
                self._cancel_all()
                raise

        self._tracker.log_summary()
        if state is RunState.BLOCKED_TERMINAL:
            plan = load_plan(self.plan_path)
            logger.warning("Plan {} is blocked; no executable steps remain.", plan.file_name)
            _log_blocked(plan)
            return self._outcome(state)

        if not self.archive:
            return self._outcome(state)
        archived, outcome = archive_plan(self.plan_path, self.paths.completed)
        if outcome == OUTCOME_PARTIAL:
            plan = load_plan(archived)
            logger.warning("Plan {} finished with blocked steps:", plan.file_name)
            _log_blocked(plan)
        return self._outcome(state, archived, outcome)

    def _loop(self, executor: ThreadPoolExecutor) -> RunState:
        while True:
            self._drain_deferred()
            self._transition(RunState.SCANNING)
            plan = load_plan(self.plan_path)
            if plan.is_complete() and not self._in_flight and not self._deferred:
                self._transition(RunState.ARCHIVING)
                return RunState.ARCHIVING

            partition = partition_steps(
                ready_steps(plan),
                self.max_parallel,
                self._running_count(),
                serial_running=self._serial_running(),
                isolation=self._isolation_enabled,
            )
            if partition:
                self._transition(RunState.DISPATCHING)
                self._dispatch(plan, partition, executor)
                if not self._in_flight:
                    continue
            elif not self._in_flight:
                if self._deferred:
                    continue
                self._transition(RunState.BLOCKED_TERMINAL)
                return RunState.BLOCKED_TERMINAL

            self._transition(RunState.AWAITING)
            handles = [flight.handle for flight in self._in_flight if flight.handle is not None]
            done = None
            while done is None:
                done = wait_for_any(handles, timeout=self.config.concurrency.poll_interval_seconds)
            self._collect(done.context)
