"""Test plan loading, validation, and atomic status updates."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from orrery.models import PlanValidationError, StepStatus
from orrery.plan_store import (
    StepUpdate,
    get_completed_plan_names,
    get_plan_files,
    load_plan,
    move_plan_to_completed,
    reset_in_progress,
    resolve_plan_file,
    save_plan,
    update_steps_status,
    validate_plan_data,
)


PLAN_TEXT = """\
metadata:
  title: Add login
  owner: team-a
steps:
- id: '1'
  description: Create the model
  files:
  - src/models.py
  notes: keep me
- id: '2'
  description: Wire the view
  deps:
  - '1'
  parallel: true
  acceptance:
  - view renders
notes: top-level extra
"""


def _write(tmp_path: Path, text: str = PLAN_TEXT, name: str = "2026-01-11-add-login.yaml") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_load_save_round_trip_is_idempotent(tmp_path: Path) -> None:
    """Loading and saving an untouched plan must not change its content."""
    path = _write(tmp_path)
    original = yaml.safe_load(path.read_text(encoding="utf-8"))

    save_plan(load_plan(path))
    first = path.read_text(encoding="utf-8")
    save_plan(load_plan(path))

    assert yaml.safe_load(first) == original
    assert path.read_text(encoding="utf-8") == first


def test_unknown_fields_and_key_order_survive(tmp_path: Path) -> None:
    path = _write(tmp_path)
    save_plan(load_plan(path))
    data = yaml.safe_load(path.read_text(encoding="utf-8"))

    assert list(data) == ["metadata", "steps", "notes"]
    assert data["metadata"]["owner"] == "team-a"
    assert data["steps"][0]["notes"] == "keep me"
    assert data["steps"][1]["acceptance"] == ["view renders"]
    assert "status" not in data["steps"][0]


def test_integer_step_ids_are_read_as_strings(tmp_path: Path) -> None:
    path = _write(tmp_path, "steps:\n- id: 1\n  description: a\n- id: 2\n  description: b\n  deps: [1]\n")
    plan = load_plan(path)
    assert [s.id for s in plan.steps] == ["1", "2"]
    assert plan.steps[1].deps == ["1"]

    save_plan(plan)
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data["steps"][0]["id"] == 1


@pytest.mark.parametrize(
    ("data", "expected"),
    [
        ({"metadata": {}}, "missing required 'steps'"),
        ({"steps": [{"description": "x"}]}, "missing required field 'id'"),
        ({"steps": [{"id": "a"}]}, "missing required field 'description'"),
        ({"steps": [{"id": "a", "description": "x", "status": "done"}]}, "invalid status"),
        ({"steps": [{"id": "a", "description": "x"}, {"id": "a", "description": "y"}]}, "duplicate step id"),
        ({"steps": [{"id": "a", "description": "x", "deps": ["zz"]}]}, "unknown dependency"),
        ({"steps": [{"id": "a", "description": "x", "deps": ["a"]}]}, "depends on itself"),
        ({"steps": [{"id": "a", "description": "x", "parallel": "yes"}]}, "'parallel' must be a boolean"),
    ],
)
def test_validate_plan_data_reports_structural_errors(data: dict, expected: str) -> None:
    errors = validate_plan_data(data)
    assert any(expected in error for error in errors), errors


def test_validate_plan_data_detects_cycles() -> None:
    data = {
        "steps": [
            {"id": "a", "description": "x", "deps": ["c"]},
            {"id": "b", "description": "y", "deps": ["a"]},
            {"id": "c", "description": "z", "deps": ["b"]},
        ]
    }
    errors = validate_plan_data(data)
    assert len(errors) == 1
    assert errors[0].startswith("circular dependency:")


def test_load_plan_raises_on_invalid_yaml(tmp_path: Path) -> None:
    path = _write(tmp_path, "steps: [unterminated\n")
    with pytest.raises(PlanValidationError) as excinfo:
        load_plan(path)
    assert excinfo.value.path == path
    assert "invalid YAML" in excinfo.value.errors[0]


def test_update_steps_status_applies_all_updates_in_one_write(tmp_path: Path) -> None:
    path = _write(tmp_path)
    update_steps_status(
        path,
        [
            StepUpdate("1", StepStatus.COMPLETE, {"agent": "codex"}),
            StepUpdate("2", StepStatus.BLOCKED, {"blocked_reason": "API down"}),
        ],
    )
    plan = load_plan(path)
    assert plan.step("1").status is StepStatus.COMPLETE
    assert plan.step("1").extra["agent"] == "codex"
    assert plan.step("2").status is StepStatus.BLOCKED
    assert plan.step("2").blocked_reason == "API down"
    assert not list(tmp_path.glob("*.tmp"))


def test_unblocking_clears_reason(tmp_path: Path) -> None:
    path = _write(tmp_path)
    update_steps_status(path, [StepUpdate("1", StepStatus.BLOCKED, {"blocked_reason": "nope"})])
    update_steps_status(path, [StepUpdate("1", StepStatus.PENDING)])

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data["steps"][0]["status"] == "pending"
    assert "blocked_reason" not in data["steps"][0]


def test_reset_in_progress_returns_steps_to_pending(tmp_path: Path) -> None:
    path = _write(tmp_path)
    update_steps_status(path, [StepUpdate("1", StepStatus.IN_PROGRESS)])

    assert reset_in_progress(path) == ["1"]
    assert load_plan(path).step("1").status is StepStatus.PENDING
    assert reset_in_progress(path) == []


def test_plan_discovery_and_archive(tmp_path: Path) -> None:
    plans = tmp_path / "plans"
    completed = tmp_path / "completed"
    plans.mkdir()
    b = _write(plans, name="b.yml")
    a = _write(plans, name="a.yaml")
    (plans / "notes.txt").write_text("ignored")

    assert get_plan_files(plans) == [a, b]
    dest = move_plan_to_completed(a, completed)
    assert dest == completed / "a.yaml"
    assert not a.exists()
    assert get_completed_plan_names(completed) == {"a.yaml"}


def test_resolve_plan_file_accepts_names_and_paths(tmp_path: Path) -> None:
    plans = tmp_path / "plans"
    plans.mkdir()
    path = _write(plans, name="feature.yaml")

    assert resolve_plan_file("feature.yaml", plans, cwd=tmp_path) == path.resolve()
    assert resolve_plan_file(str(path), plans) == path.resolve()
    assert resolve_plan_file("plans/feature.yaml", plans, cwd=tmp_path) == path.resolve()
    assert resolve_plan_file("missing.yaml", plans, cwd=tmp_path) is None
