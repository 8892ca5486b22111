"""Build trimmed plan copies that hold only what one worker needs."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from .io_utils import _atomic_write_yaml
from .models import Plan, Step, StepStatus
from .utils import _natural_key, _now_iso


def completed_dependencies(plan: Plan, step_ids: Sequence[str]) -> list[Step]:
    """Completed steps reachable through the deps of `step_ids` (recursively)."""
    by_id = {step.id: step for step in plan.steps}
    collected: dict[str, Step] = {}
    frontier = list(step_ids)
    while frontier:
        step = by_id.get(frontier.pop())
        if step is None:
            continue
        for dep_id in step.deps:
            dep = by_id.get(dep_id)
            if dep_id in collected or dep is None or dep.status is not StepStatus.COMPLETE:
                continue
            collected[dep_id] = dep
            frontier.append(dep_id)
    return list(collected.values())


def generate_condensed_plan(plan: Plan, step_ids: Sequence[str]) -> dict[str, Any]:
    wanted = set(step_ids)
    deps = completed_dependencies(plan, step_ids)
    dep_ids = {step.id for step in deps}
    steps = deps + [step for step in plan.steps if step.id in wanted and step.id not in dep_ids]
    steps.sort(key=lambda step: _natural_key(step.id))

    metadata = dict(plan.metadata)
    metadata.update(
        {
            "condensed": True,
            "source_plan": str(plan.path),
            "condensed_at": _now_iso(),
            "assigned_steps": list(step_ids),
        }
    )
    return {"metadata": metadata, "steps": [step.to_dict() for step in steps]}


def write_condensed_plan(condensed: dict[str, Any], plan_path: Path, step_ids: Sequence[str], temp_dir: Path) -> Path:
    suffix = "".join(ch if (ch.isalnum() or ch in ".-") else "_" for ch in "-".join(step_ids))
    path = temp_dir / f"{plan_path.stem}-{suffix}-{int(time.time() * 1000)}.yaml"
    _atomic_write_yaml(path, condensed)
    return path


def delete_condensed_plan(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to delete temp plan {}: {}", path, exc)
