"""Extract structured step results from free-form worker output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from loguru import logger

from ..models import StepResult, StepStatus

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_DECODER = json.JSONDecoder()


@dataclass
class ParseOutcome:
    results: list[StepResult] = field(default_factory=list)
    skipped: int = 0


def validate_agent_output(data: Any) -> StepResult:
    """Normalise one reported result.

    Raises:
        ValueError: If required fields are missing or invalid.
    """
    if not isinstance(data, dict):
        raise ValueError("report must be an object")
    step_id = data.get("stepId")
    if isinstance(step_id, bool) or not isinstance(step_id, (str, int)) or str(step_id).strip() == "":
        raise ValueError("report missing required field: stepId")
    step_id = str(step_id)
    status = data.get("status")
    if status not in (StepStatus.COMPLETE.value, StepStatus.BLOCKED.value):
        raise ValueError(f"invalid status {status!r}; must be 'complete' or 'blocked'")
    blocked_reason = data.get("blockedReason")
    if status == StepStatus.BLOCKED.value and not blocked_reason:
        raise ValueError("report with status 'blocked' must include 'blockedReason'")

    artifacts = data.get("artifacts")
    return StepResult(
        step_id=step_id,
        status=StepStatus(status),
        summary=str(data.get("summary") or ("Step blocked" if status == "blocked" else "Step completed")),
        artifacts=[str(item) for item in artifacts] if isinstance(artifacts, list) else [],
        blocked_reason=str(blocked_reason) if blocked_reason else None,
        test_results=data.get("testResults") or None,
        commit_message=str(data.get("commitMessage") or f"feat: complete step {step_id}"),
    )


def _collect(parsed: Any, outcome: ParseOutcome) -> None:
    items = parsed if isinstance(parsed, list) else [parsed]
    for item in items:
        try:
            outcome.results.append(validate_agent_output(item))
        except ValueError as exc:
            outcome.skipped += 1
            logger.debug("Skipping invalid result: {}", exc)


def _scan_raw(text: str, outcome: ParseOutcome) -> None:
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char not in "{[":
            index += 1
            continue
        try:
            parsed, end = _DECODER.raw_decode(text, index)
        except json.JSONDecodeError:
            if char == "{":
                outcome.skipped += 1
            index += 1
            continue
        if isinstance(parsed, dict) or (isinstance(parsed, list) and any(isinstance(i, dict) for i in parsed)):
            _collect(parsed, outcome)
        index = end


def parse_agent_results(text: str) -> ParseOutcome:
    """Find result objects in worker output.

    Fenced ```json blocks take precedence. Without any valid fenced result the
    whole text is scanned for raw JSON objects or arrays. Malformed fragments
    are counted in `skipped` and never raise.
    """
    outcome = ParseOutcome()
    if not text:
        return outcome

    for match in _FENCED_BLOCK_RE.finditer(text):
        try:
            parsed = json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            outcome.skipped += 1
            continue
        _collect(parsed, outcome)
    if outcome.results:
        return outcome

    raw = ParseOutcome(skipped=outcome.skipped)
    _scan_raw(text, raw)
    return raw


def default_result(step_id: str, exit_code: Optional[int], error_output: str = "") -> StepResult:
    """Synthesize a result for a step the worker did not report on."""
    if exit_code == 0:
        return StepResult(
            step_id=step_id,
            status=StepStatus.COMPLETE,
            summary="Step completed (no detailed report from agent)",
            commit_message=f"feat: complete step {step_id}",
            synthesized=True,
        )
    reason = (error_output or "").strip() or f"Agent exited with code {exit_code}"
    return StepResult(
        step_id=step_id,
        status=StepStatus.BLOCKED,
        summary="Step failed",
        blocked_reason=reason,
        commit_message=f"wip: attempt step {step_id}",
        synthesized=True,
    )


def resolve_step_results(
    step_ids: Sequence[str],
    parsed: Iterable[StepResult],
    exit_code: Optional[int],
    error_output: str = "",
) -> list[StepResult]:
    """Return exactly one result per dispatched id, in dispatch order.

    The first reported result for an id wins; ids the worker was not asked
    about are ignored; missing ids fall back to `default_result`.
    """
    wanted = [str(step_id) for step_id in step_ids]
    by_id: dict[str, StepResult] = {}
    for result in parsed:
        if result.step_id not in wanted:
            logger.warning("Ignoring result for undispatched step {}", result.step_id)
            continue
        by_id.setdefault(result.step_id, result)
    return [by_id.get(step_id) or default_result(step_id, exit_code, error_output) for step_id in dict.fromkeys(wanted)]
