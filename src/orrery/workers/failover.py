"""Run a step batch across the configured backend chain.

Each backend is tried at most once per pass over the chain. A pass in which
every backend hits a failover trigger can be retried (with backoff) up to
`retry.max_attempts` times before the batch resolves to blocked results.
"""

from __future__ import annotations

import re
import threading
from concurrent.futures import FIRST_COMPLETED, Executor, Future, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from loguru import logger

from ..config import OrchestratorConfig
from ..constants import (
    FAILOVER_REASON_API_ERROR,
    FAILOVER_REASON_COMMAND_NOT_FOUND,
    FAILOVER_REASON_IDLE,
    FAILOVER_REASON_SPAWN_ERROR,
    FAILOVER_REASON_TIMEOUT,
    FAILOVER_REASON_TOKEN_LIMIT,
)
from ..models import StepResult, StepStatus
from ..reports import log_failure, log_timeout
from .invoke import InvocationResult, OutputCallback, WorkerHandle, WorkerSpawnError, invoke_agent
from .output import parse_agent_results, resolve_step_results

_MAX_REASON_CHARS = 2000


@dataclass(frozen=True)
class FailoverDecision:
    should_failover: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class AttemptRecord:
    agent: str
    reason: Optional[str]
    exit_code: Optional[int] = None
    detail: str = ""


@dataclass
class BatchOutcome:
    """Final, normalised outcome of one dispatched batch."""

    step_ids: list[str]
    results: list[StepResult]
    agent: Optional[str] = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    invocation: Optional[InvocationResult] = None
    skipped: int = 0
    cancelled: bool = False


def should_trigger_failover(
    result: Optional[InvocationResult],
    spawn_error: Optional[BaseException],
    patterns: Mapping[str, Sequence[re.Pattern[str]]],
) -> FailoverDecision:
    """Decide whether a failed invocation should move on to the next backend.

    A non-zero exit alone is not a trigger: a worker that legitimately reports
    a blocked step exits non-zero too. Only spawn failures, timeouts, and
    stderr matching a known infrastructure error signature qualify.
    """
    if spawn_error is not None:
        if isinstance(spawn_error, WorkerSpawnError):
            return FailoverDecision(True, spawn_error.reason)
        if isinstance(spawn_error, FileNotFoundError):
            return FailoverDecision(True, FAILOVER_REASON_COMMAND_NOT_FOUND)
        return FailoverDecision(True, FAILOVER_REASON_SPAWN_ERROR)
    if result is None:
        return FailoverDecision(False)
    if result.timed_out:
        return FailoverDecision(True, FAILOVER_REASON_TIMEOUT)
    if result.idle_timed_out:
        return FailoverDecision(True, FAILOVER_REASON_IDLE)
    if result.exit_code != 0:
        stderr = result.stderr or ""
        for pattern in patterns.get("api_error", []):
            if pattern.search(stderr):
                return FailoverDecision(True, FAILOVER_REASON_API_ERROR)
        for pattern in patterns.get("token_limit", []):
            if pattern.search(stderr):
                return FailoverDecision(True, FAILOVER_REASON_TOKEN_LIMIT)
    return FailoverDecision(False)


def _tail(text: str) -> str:
    text = (text or "").strip()
    return text[-_MAX_REASON_CHARS:]


def _blocked_batch(step_ids: Sequence[str], reason: str, summary: str) -> list[StepResult]:
    return [
        StepResult(
            step_id=step_id,
            status=StepStatus.BLOCKED,
            summary=summary,
            blocked_reason=reason,
            synthesized=True,
        )
        for step_id in step_ids
    ]


def invoke_with_failover(
    config: OrchestratorConfig,
    plan_file: Path,
    step_ids: Sequence[str],
    cwd: Path,
    *,
    log_dir: Path,
    on_output: Optional[OutputCallback] = None,
    env: Optional[Mapping[str, str]] = None,
    cancel_event: Optional[threading.Event] = None,
    on_spawn: Optional[Callable[[WorkerHandle], None]] = None,
    source_plan: Optional[Path] = None,
) -> BatchOutcome:
    """Execute `step_ids` with the first backend that does not hit a failover trigger.

    Blocks until done; callers that need concurrency run this on a worker thread
    (see `submit_batch`). `source_plan` names the plan in failure and timeout
    logs when `plan_file` is a condensed temporary copy.
    """
    step_ids = [str(step_id) for step_id in step_ids]
    cancel_event = cancel_event or threading.Event()
    chain = config.agent_chain()
    patterns = config.failover.compiled()
    logged_plan = source_plan or plan_file
    passes = max(1, config.retry.max_attempts)
    records: list[AttemptRecord] = []
    last: Optional[InvocationResult] = None

    def cancelled() -> BatchOutcome:
        return BatchOutcome(
            step_ids=step_ids,
            results=_blocked_batch(step_ids, "Worker cancelled", "Step cancelled"),
            attempts=records,
            invocation=last,
            cancelled=True,
        )

    for attempt in range(1, passes + 1):
        for index, agent in enumerate(chain, start=1):
            if cancel_event.is_set():
                return cancelled()
            logger.info("[failover] Trying agent: {} ({}/{}) for steps {}", agent.name, index, len(chain), step_ids)
            try:
                handle = invoke_agent(agent, plan_file, step_ids, cwd, on_output=on_output, env=env)
            except WorkerSpawnError as exc:
                decision = should_trigger_failover(None, exc, patterns)
                records.append(AttemptRecord(agent.name, decision.reason, None, str(exc.error)))
                logger.warning("[failover] Agent {} spawn failed ({})", agent.name, decision.reason)
                continue

            if on_spawn:
                on_spawn(handle)
            if cancel_event.is_set():
                handle.kill("cancelled")
            result = handle.wait(config.failover.timeout_seconds, config.failover.idle_timeout_seconds)
            last = result
            if result.cancelled or cancel_event.is_set():
                return cancelled()

            if result.exit_code != 0:
                log_failure(
                    log_dir,
                    config.logging.failure_log,
                    plan_file=logged_plan,
                    step_ids=step_ids,
                    agent=agent.name,
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )

            decision = should_trigger_failover(result, None, patterns)
            if decision.should_failover:
                records.append(AttemptRecord(agent.name, decision.reason, result.exit_code, _tail(result.stderr)))
                if decision.reason in (FAILOVER_REASON_TIMEOUT, FAILOVER_REASON_IDLE):
                    log_timeout(
                        log_dir,
                        config.logging.timeout_log,
                        plan_file=logged_plan,
                        step_ids=step_ids,
                        agent=agent.name,
                        timeout_seconds=(
                            config.failover.timeout_seconds
                            if decision.reason == FAILOVER_REASON_TIMEOUT
                            else config.failover.idle_timeout_seconds
                        ),
                        reason=decision.reason,
                    )
                logger.warning("[failover] Agent {} failed ({}), trying next agent", agent.name, decision.reason)
                continue

            parsed = parse_agent_results(result.stdout)
            if parsed.skipped:
                logger.debug("{} skipped {} malformed result fragment(s)", agent.name, parsed.skipped)
            return BatchOutcome(
                step_ids=step_ids,
                results=resolve_step_results(step_ids, parsed.results, result.exit_code, _tail(result.stderr)),
                agent=agent.name,
                attempts=records,
                invocation=result,
                skipped=parsed.skipped,
            )

        if attempt < passes:
            delay = config.retry.backoff_seconds
            logger.warning(
                "All agents failed for steps {} (pass {}/{}); retrying in {}s", step_ids, attempt, passes, delay
            )
            if cancel_event.wait(delay):
                return cancelled()

    chain_text = "; ".join(f"{record.agent}: {record.reason}" for record in records)
    logger.error("All agents failed for steps {}: {}", step_ids, chain_text)
    return BatchOutcome(
        step_ids=step_ids,
        results=_blocked_batch(step_ids, f"All agents failed ({chain_text})", "Step failed"),
        attempts=records,
        invocation=last,
    )


class BatchHandle:
    """A batch running on an executor thread.

    `context` is free for the caller (the scheduler keeps the isolated
    workspace there).
    """

    def __init__(self, step_ids: list[str], context: Any = None) -> None:
        self.step_ids = step_ids
        self.context = context
        self.future: Optional[Future] = None
        self.cancel_event = threading.Event()
        self._worker: Optional[WorkerHandle] = None

    def _attach(self, worker: WorkerHandle) -> None:
        self._worker = worker

    @property
    def done(self) -> bool:
        return self.future is not None and self.future.done()

    def result(self) -> BatchOutcome:
        if self.future is None:
            raise RuntimeError(f"Batch {self.step_ids} was never submitted")
        return self.future.result()

    def cancel(self) -> None:
        self.cancel_event.set()
        worker = self._worker
        if worker is not None:
            worker.kill("cancelled")


def submit_batch(
    executor: Executor,
    config: OrchestratorConfig,
    plan_file: Path,
    step_ids: Sequence[str],
    cwd: Path,
    *,
    log_dir: Path,
    context: Any = None,
    on_output: Optional[OutputCallback] = None,
    env: Optional[Mapping[str, str]] = None,
    source_plan: Optional[Path] = None,
) -> BatchHandle:
    handle = BatchHandle([str(step_id) for step_id in step_ids], context)
    handle.future = executor.submit(
        invoke_with_failover,
        config,
        plan_file,
        handle.step_ids,
        cwd,
        log_dir=log_dir,
        on_output=on_output,
        env=env,
        cancel_event=handle.cancel_event,
        on_spawn=handle._attach,
        source_plan=source_plan,
    )
    return handle


def wait_for_any(handles: Sequence[BatchHandle], timeout: Optional[float] = None) -> Optional[BatchHandle]:
    """Block until at least one handle finishes and return exactly one of them.

    When several are already done the earliest dispatched wins; the others are
    left untouched for the next call. Returns None on timeout or empty input.
    """
    futures = [handle.future for handle in handles if handle.future is not None]
    if not futures:
        return None
    done, _ = wait(futures, timeout=timeout, return_when=FIRST_COMPLETED)
    for handle in handles:
        if handle.future in done:
            return handle
    return None
