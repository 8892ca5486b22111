"""Load, validate, and persist plan documents.

The plan file is the single source of truth for step status. Every write goes
through an atomic replace so a crash mid-save never leaves a truncated plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from loguru import logger

from .constants import PLAN_SUFFIXES
from .io_utils import _atomic_write_yaml
from .models import Plan, PlanValidationError, Step, StepStatus
from .resolver import find_cycle


@dataclass
class StepUpdate:
    step_id: str
    status: StepStatus
    extras: dict[str, Any] = field(default_factory=dict)


def validate_plan_data(data: Any) -> list[str]:
    """Return a list of structural problems with a raw plan mapping (empty when valid)."""
    if not isinstance(data, dict):
        return ["plan document must be a mapping"]

    errors: list[str] = []
    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        errors.append("'metadata' must be a mapping")

    steps = data.get("steps")
    if steps is None:
        return errors + ["missing required 'steps' array"]
    if not isinstance(steps, list):
        return errors + ["'steps' must be an array"]

    seen: set[str] = set()
    for index, raw in enumerate(steps):
        label = f"steps[{index}]"
        if not isinstance(raw, dict):
            errors.append(f"{label}: step must be a mapping")
            continue
        step_id = raw.get("id")
        if step_id is None or str(step_id).strip() == "":
            errors.append(f"{label}: missing required field 'id'")
            continue
        step_id = str(step_id)
        label = f"step {step_id}"
        if step_id in seen:
            errors.append(f"{label}: duplicate step id")
        seen.add(step_id)
        if not str(raw.get("description") or "").strip():
            errors.append(f"{label}: missing required field 'description'")
        status = raw.get("status", StepStatus.PENDING.value)
        if str(status) not in {s.value for s in StepStatus}:
            errors.append(f"{label}: invalid status {status!r}")
        deps = raw.get("deps")
        if deps is not None and not isinstance(deps, list):
            errors.append(f"{label}: 'deps' must be an array")
        elif deps:
            dep_ids = [str(dep) for dep in deps]
            if len(set(dep_ids)) != len(dep_ids):
                errors.append(f"{label}: duplicate entries in 'deps'")
            if step_id in dep_ids:
                errors.append(f"{label}: step depends on itself")
        parallel = raw.get("parallel")
        if parallel is not None and not isinstance(parallel, bool):
            errors.append(f"{label}: 'parallel' must be a boolean")

    if errors:
        return errors

    for raw in steps:
        for dep in raw.get("deps") or []:
            if str(dep) not in seen:
                errors.append(f"step {raw.get('id')}: unknown dependency {dep!r}")
    if errors:
        return errors

    graph = [(str(raw["id"]), [str(dep) for dep in raw.get("deps") or []]) for raw in steps]
    cycle = find_cycle(graph)
    if cycle:
        errors.append(f"circular dependency: {' -> '.join(cycle)}")
    return errors


def plan_from_data(path: Path, data: dict[str, Any]) -> Plan:
    errors = validate_plan_data(data)
    if errors:
        raise PlanValidationError(path, errors)
    return Plan(
        path=path,
        metadata=dict(data.get("metadata") or {}),
        steps=[Step.from_dict(raw) for raw in data["steps"]],
        extra={key: value for key, value in data.items() if key not in ("metadata", "steps")},
        key_order=list(data),
    )


def load_plan(path: Path) -> Plan:
    """Load and validate a plan file.

    Raises:
        PlanValidationError: If the file cannot be parsed or is structurally invalid.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise PlanValidationError(path, [f"cannot read plan: {exc}"]) from exc
    except yaml.YAMLError as exc:
        raise PlanValidationError(path, [f"invalid YAML: {exc}"]) from exc
    return plan_from_data(path, data)


def save_plan(plan: Plan) -> None:
    _atomic_write_yaml(plan.path, plan.to_dict())


def apply_updates(plan: Plan, updates: Iterable[StepUpdate]) -> list[str]:
    """Apply status updates to an in-memory plan; returns the ids that were updated."""
    by_id = {update.step_id: update for update in updates}
    applied: list[str] = []
    for step in plan.steps:
        update = by_id.get(step.id)
        if update is None:
            continue
        step.status = StepStatus(update.status)
        extras = dict(update.extras)
        reason = extras.pop("blocked_reason", None)
        if step.status is StepStatus.BLOCKED:
            step.blocked_reason = str(reason) if reason else (step.blocked_reason or "blocked")
        else:
            step.blocked_reason = None
        step.extra.update(extras)
        applied.append(step.id)
    missing = set(by_id) - set(applied)
    if missing:
        logger.warning("Ignoring status update for unknown step(s): {}", ", ".join(sorted(missing)))
    return applied


def update_steps_status(plan_path: Path, updates: list[StepUpdate]) -> Plan:
    """Re-read the plan, apply all updates together, and write it back in one atomic save."""
    plan = load_plan(plan_path)
    apply_updates(plan, updates)
    save_plan(plan)
    return plan


def reset_in_progress(plan_path: Path) -> list[str]:
    """Return lingering `in_progress` steps to `pending` (used when resuming after a crash)."""
    plan = load_plan(plan_path)
    stale = [step.id for step in plan.steps if step.status is StepStatus.IN_PROGRESS]
    if stale:
        apply_updates(plan, [StepUpdate(step_id, StepStatus.PENDING) for step_id in stale])
        save_plan(plan)
    return stale


def get_plan_files(plans_dir: Path) -> list[Path]:
    if not plans_dir.exists():
        return []
    return sorted(
        path for path in plans_dir.iterdir() if path.is_file() and path.suffix in PLAN_SUFFIXES
    )


def get_completed_plan_names(completed_dir: Path) -> set[str]:
    return {path.name for path in get_plan_files(completed_dir)}


def move_plan_to_completed(plan_file: Path, completed_dir: Path) -> Path:
    completed_dir.mkdir(parents=True, exist_ok=True)
    dest = completed_dir / plan_file.name
    plan_file.replace(dest)
    return dest


def resolve_plan_file(plan_arg: Optional[str], plans_dir: Path, cwd: Optional[Path] = None) -> Optional[Path]:
    """Resolve `--plan` as an absolute path, a cwd-relative path, or a name under `plans/`."""
    if not plan_arg:
        return None
    candidate = Path(plan_arg).expanduser()
    candidates = [candidate] if candidate.is_absolute() else [(cwd or Path.cwd()) / candidate, plans_dir / candidate]
    for path in candidates:
        if path.exists():
            return path.resolve()
    return None
