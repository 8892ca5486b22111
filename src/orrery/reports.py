"""Write step reports and append worker failure/timeout logs."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Sequence

from loguru import logger

from .io_utils import _append_event, _dump_yaml, _write_once
from .models import StepReport, StepResult
from .utils import _sanitize_fragment


def report_path(reports_dir: Path, plan_name: str, step_id: str, attempt: int = 1) -> Path:
    stem = f"{Path(plan_name).stem}-{_sanitize_fragment(step_id)}-report"
    if attempt > 1:
        stem += f"-{attempt}"
    return reports_dir / f"{stem}.yaml"


def write_step_report(
    reports_dir: Path,
    plan_name: str,
    result: StepResult,
    *,
    agent: Optional[str] = None,
    reviews: Optional[list[dict[str, Any]]] = None,
) -> Path:
    """Persist one report for a step-completion event.

    Reports are never overwritten; a step that completes again after a resume
    gets a numbered sibling file.
    """
    report = StepReport.from_result(result, agent=agent, reviews=reviews)
    text = _dump_yaml(report.to_dict())
    attempt = 1
    while True:
        path = report_path(reports_dir, plan_name, result.step_id, attempt)
        if _write_once(path, text):
            logger.debug("Wrote report {}", path.name)
            return path
        attempt += 1


def _log_path(log_dir: Path, name: Optional[str]) -> Optional[Path]:
    if not name:
        return None
    path = Path(name)
    return path if path.is_absolute() else log_dir / path


def log_failure(
    log_dir: Path,
    log_name: Optional[str],
    *,
    plan_file: Path,
    step_ids: Sequence[str],
    agent: str,
    exit_code: Optional[int],
    stdout: str,
    stderr: str,
) -> None:
    """Append a failed worker invocation (both streams) to the failure log."""
    path = _log_path(log_dir, log_name)
    if path is None:
        return
    _append_event(
        path,
        {
            "planFile": plan_file.name,
            "stepIds": list(step_ids),
            "agent": agent,
            "exitCode": exit_code,
            "stdout": stdout or "",
            "stderr": stderr or "",
        },
    )


def log_timeout(
    log_dir: Path,
    log_name: Optional[str],
    *,
    plan_file: Path,
    step_ids: Sequence[str],
    agent: str,
    timeout_seconds: Optional[float],
    reason: str = "timeout",
) -> None:
    path = _log_path(log_dir, log_name)
    if path is None:
        return
    _append_event(
        path,
        {
            "planFile": plan_file.name,
            "stepIds": list(step_ids),
            "agent": agent,
            "reason": reason,
            "timeoutSeconds": timeout_seconds,
        },
    )
