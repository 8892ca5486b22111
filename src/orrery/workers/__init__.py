"""Worker process gateway: invocation, result parsing, backend failover, and review."""

from .failover import (
    AttemptRecord,
    BatchHandle,
    BatchOutcome,
    FailoverDecision,
    invoke_with_failover,
    should_trigger_failover,
    submit_batch,
    wait_for_any,
)
from .invoke import InvocationResult, WorkerHandle, WorkerSpawnError, format_args, invoke_agent
from .output import ParseOutcome, default_result, parse_agent_results, resolve_step_results, validate_agent_output
from .review import (
    ReviewFeedback,
    ReviewOutcome,
    ReviewVerdict,
    build_edit_prompt,
    invoke_edit_agent,
    invoke_review_agent,
    parse_review_results,
    run_review_loop,
)

__all__ = [
    "AttemptRecord",
    "BatchHandle",
    "BatchOutcome",
    "FailoverDecision",
    "InvocationResult",
    "ParseOutcome",
    "ReviewFeedback",
    "ReviewOutcome",
    "ReviewVerdict",
    "WorkerHandle",
    "WorkerSpawnError",
    "build_edit_prompt",
    "default_result",
    "format_args",
    "invoke_agent",
    "invoke_edit_agent",
    "invoke_review_agent",
    "invoke_with_failover",
    "parse_agent_results",
    "parse_review_results",
    "resolve_step_results",
    "run_review_loop",
    "should_trigger_failover",
    "submit_batch",
    "validate_agent_output",
    "wait_for_any",
]
