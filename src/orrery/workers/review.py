"""Review finished steps and feed reviewer comments back to an edit pass.

A reviewer backend inspects what a worker did for one step and answers with
`approved` or `needs_changes` plus feedback. Feedback is handed to an edit
invocation and the step is reviewed again, up to `review.max_iterations`
times. Review output that cannot be read counts as approval, so a confused
reviewer never blocks a step the worker already finished.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from loguru import logger

from ..config import WORKER_PROMPT, OrchestratorConfig
from ..models import StepResult, StepStatus
from .failover import BatchOutcome, invoke_with_failover
from .invoke import OutputCallback, format_args
from .output import _DECODER, _FENCED_BLOCK_RE, default_result

SEVERITY_BLOCKING = "blocking"
SEVERITY_SUGGESTION = "suggestion"

_APPROVED = "approved"
_NEEDS_CHANGES = "needs_changes"
_STATUS_ALIASES = {
    "approved": _APPROVED,
    "needs_changes": _NEEDS_CHANGES,
    "changes_requested": _NEEDS_CHANGES,
}


@dataclass(frozen=True)
class ReviewFeedback:
    comment: str
    severity: str = SEVERITY_SUGGESTION
    file: Optional[str] = None
    line: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {"severity": self.severity, "file": self.file, "line": self.line, "comment": self.comment}


@dataclass
class ReviewVerdict:
    approved: bool
    feedback: list[ReviewFeedback] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ReviewOutcome:
    """Result of the review loop for one step."""

    result: StepResult
    approved: bool
    reviews: list[dict[str, Any]] = field(default_factory=list)


def _extract_payload(text: str) -> Any:
    for match in _FENCED_BLOCK_RE.finditer(text):
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            continue
    for index, char in enumerate(text):
        if char not in "{[":
            continue
        try:
            parsed, _ = _DECODER.raw_decode(text, index)
        except json.JSONDecodeError:
            continue
        return parsed
    return None


def _feedback_entry(entry: Any) -> Optional[ReviewFeedback]:
    if isinstance(entry, str):
        return ReviewFeedback(comment=entry) if entry else None
    if not isinstance(entry, dict):
        return None
    comment = entry.get("comment")
    comment = comment if isinstance(comment, str) else str(comment or "")
    if not comment:
        return None
    file = entry.get("file")
    line = entry.get("line")
    return ReviewFeedback(
        comment=comment,
        severity=SEVERITY_BLOCKING if entry.get("severity") == SEVERITY_BLOCKING else SEVERITY_SUGGESTION,
        file=file.strip() if isinstance(file, str) and file.strip() else None,
        line=int(line) if isinstance(line, (int, float)) and not isinstance(line, bool) else None,
    )


def parse_review_results(text: str) -> ReviewVerdict:
    """Read a reviewer's verdict from its stdout.

    Accepts a fenced or raw JSON object (or an array whose first element is
    one) with a `status` of `approved`, `needs_changes` or
    `changes_requested`. Anything else is treated as approved and the problem
    is reported in `error`.
    """
    payload = _extract_payload(text or "")
    if payload is None:
        return ReviewVerdict(approved=True, error="No JSON review output detected")
    data = payload[0] if isinstance(payload, list) and payload else payload
    if not isinstance(data, dict):
        return ReviewVerdict(approved=True, error="Review output was not a JSON object")

    raw_status = data.get("status")
    status = _STATUS_ALIASES.get(raw_status.strip().lower()) if isinstance(raw_status, str) else None
    if status is None:
        return ReviewVerdict(approved=True, error=f"Unrecognized review status: {raw_status}")

    raw_feedback = data.get("feedback")
    if raw_feedback is None:
        raw_feedback = data.get("comments")
    entries = raw_feedback if isinstance(raw_feedback, list) else []
    feedback = [item for item in (_feedback_entry(entry) for entry in entries) if item is not None]
    return ReviewVerdict(approved=status == _APPROVED, feedback=feedback)


def format_feedback_list(feedback: Sequence[ReviewFeedback]) -> str:
    if not feedback:
        return "No review feedback items provided."
    lines = []
    for index, item in enumerate(feedback, start=1):
        line = f" line: {item.line}" if item.line is not None else ""
        lines.append(
            f"{index}. file: {item.file or '(not specified)'}{line} "
            f"severity: {item.severity or SEVERITY_SUGGESTION} comment: {item.comment.strip() or '(no comment provided)'}"
        )
    return "\n".join(lines)


def build_edit_prompt(template: str, plan_file: Path, step_ids: Sequence[str], feedback: Sequence[ReviewFeedback]) -> str:
    base = format_args([template], plan_file, step_ids)[0]
    return (
        f"{base}\n\n## Review Feedback\n{format_feedback_list(feedback)}\n\n"
        "## Instructions\nAddress all review feedback items above before reporting the step as complete."
    )


def _worker_template(config: OrchestratorConfig) -> str:
    agent = config.agents.get(config.default_agent) or next(iter(config.agents.values()), None)
    if agent is not None and agent.args:
        return agent.args[-1]
    return WORKER_PROMPT


def _with_prompt(config: OrchestratorConfig, prompt: str) -> OrchestratorConfig:
    """Copy `config` with every agent's final argument (its prompt) replaced."""
    agents = {
        name: replace(spec, args=spec.args[:-1] + (prompt,)) if spec.args else spec
        for name, spec in config.agents.items()
    }
    return replace(config, agents=agents)


def invoke_review_agent(
    config: OrchestratorConfig,
    plan_file: Path,
    step_ids: Sequence[str],
    cwd: Path,
    *,
    log_dir: Path,
    on_output: Optional[OutputCallback] = None,
    env: Optional[Mapping[str, str]] = None,
    source_plan: Optional[Path] = None,
) -> ReviewVerdict:
    prompt = format_args([config.review.prompt], plan_file, step_ids)[0]
    outcome = invoke_with_failover(
        _with_prompt(config, prompt),
        plan_file,
        step_ids,
        cwd,
        log_dir=log_dir,
        on_output=on_output,
        env=env,
        source_plan=source_plan,
    )
    stdout = outcome.invocation.stdout if outcome.invocation is not None else ""
    return parse_review_results(stdout)


def _edit_result(outcome: BatchOutcome, step_id: str) -> StepResult:
    for result in outcome.results:
        if result.step_id != step_id:
            continue
        # A backend that exited without a report has not shown it addressed anything.
        if result.synthesized and outcome.agent is not None:
            break
        return result
    return default_result(step_id, None, "Edit agent returned no report")


def invoke_edit_agent(
    config: OrchestratorConfig,
    plan_file: Path,
    step_id: str,
    feedback: Sequence[ReviewFeedback],
    cwd: Path,
    *,
    log_dir: Path,
    on_output: Optional[OutputCallback] = None,
    env: Optional[Mapping[str, str]] = None,
    source_plan: Optional[Path] = None,
) -> StepResult:
    prompt = build_edit_prompt(_worker_template(config), plan_file, [step_id], feedback)
    outcome = invoke_with_failover(
        _with_prompt(config, prompt),
        plan_file,
        [step_id],
        cwd,
        log_dir=log_dir,
        on_output=on_output,
        env=env,
        source_plan=source_plan,
    )
    return _edit_result(outcome, step_id)


def run_review_loop(
    config: OrchestratorConfig,
    plan_file: Path,
    result: StepResult,
    cwd: Path,
    *,
    log_dir: Path,
    on_output: Optional[OutputCallback] = None,
    env: Optional[Mapping[str, str]] = None,
    source_plan: Optional[Path] = None,
) -> ReviewOutcome:
    """Review `result` and send it back for edits until approved or out of iterations.

    Returns the step's final result (the edit pass may leave it blocked) along
    with one record per review iteration.
    """
    step_id = result.step_id
    max_iterations = config.review.max_iterations
    current = result
    reviews: list[dict[str, Any]] = []
    approved = False
    invoke_kwargs: dict[str, Any] = {"log_dir": log_dir, "on_output": on_output, "env": env, "source_plan": source_plan}

    for iteration in range(1, max_iterations + 1):
        logger.info("Review iteration {}/{} for step {}", iteration, max_iterations, step_id)
        verdict = invoke_review_agent(config, plan_file, [step_id], cwd, **invoke_kwargs)
        if verdict.error:
            logger.warning("Review output parse issue for step {}: {}", step_id, verdict.error)

        if verdict.approved:
            logger.info("Review approved for step {}", step_id)
            reviews.append({"iteration": iteration, "approved": True, "feedback": []})
            approved = True
            break

        logger.info("Review needs changes for step {}: {} issue(s)", step_id, len(verdict.feedback))
        for item in verdict.feedback:
            location = f"  {item.file}{f':{item.line}' if item.line is not None else ''}" if item.file else ""
            logger.info("  [{}]{}: {}", item.severity, location, item.comment)
        reviews.append(
            {"iteration": iteration, "approved": False, "feedback": [item.to_dict() for item in verdict.feedback]}
        )
        if iteration >= max_iterations:
            break

        edited = invoke_edit_agent(config, plan_file, step_id, verdict.feedback, cwd, **invoke_kwargs)
        if result.commit_message:
            edited = replace(edited, commit_message=result.commit_message)
        current = edited
        if current.status is not StepStatus.COMPLETE:
            logger.warning("Edit agent reported {} for step {}", current.status.value, step_id)
            break

    if not approved and current.ok:
        logger.warning("Review max iterations reached for step {}. Proceeding without approval.", step_id)
    return ReviewOutcome(result=current, approved=approved, reviews=reviews)
