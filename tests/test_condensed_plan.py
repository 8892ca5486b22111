"""Test the trimmed plan copies handed to workers."""

from __future__ import annotations

import sys
from pathlib import Path

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from orrery.condensed_plan import (
    completed_dependencies,
    delete_condensed_plan,
    generate_condensed_plan,
    write_condensed_plan,
)
from orrery.plan_store import plan_from_data


def _plan(tmp_path: Path):
    data = {
        "metadata": {"title": "Demo", "work_branch": "plan/demo"},
        "steps": [
            {"id": "step-1", "description": "base", "status": "complete"},
            {"id": "step-2", "description": "more", "status": "complete", "deps": ["step-1"]},
            {"id": "step-3", "description": "unrelated", "status": "complete"},
            {"id": "step-10", "description": "target", "deps": ["step-2"]},
            {"id": "step-4", "description": "other pending"},
        ],
    }
    return plan_from_data(tmp_path / "demo.yaml", data)


def test_completed_dependencies_are_transitive(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    ids = sorted(step.id for step in completed_dependencies(plan, ["step-10"]))
    assert ids == ["step-1", "step-2"]


def test_condensed_plan_keeps_only_assigned_steps_and_context(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    condensed = generate_condensed_plan(plan, ["step-10"])

    assert [step["id"] for step in condensed["steps"]] == ["step-1", "step-2", "step-10"]
    meta = condensed["metadata"]
    assert meta["condensed"] is True
    assert meta["source_plan"] == str(tmp_path / "demo.yaml")
    assert meta["assigned_steps"] == ["step-10"]
    assert meta["work_branch"] == "plan/demo"
    assert "condensed_at" in meta


def test_write_and_delete_condensed_plan(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    temp_dir = tmp_path / "temp"
    path = write_condensed_plan(generate_condensed_plan(plan, ["step-4"]), plan.path, ["step-4"], temp_dir)

    assert path.parent == temp_dir
    assert path.name.startswith("demo-step-4-")
    assert yaml.safe_load(path.read_text())["steps"][0]["id"] == "step-4"

    delete_condensed_plan(path)
    assert not path.exists()
    delete_condensed_plan(path)
