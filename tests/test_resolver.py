"""Test ready-step selection, the serial barrier, and dependency grouping."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from orrery.models import Step, StepStatus
from orrery.resolver import (
    blocked_dependents,
    find_cycle,
    partition_steps,
    ready_steps,
    resolve_execution_groups,
)


def _step(step_id: str, *deps: str, status: StepStatus = StepStatus.PENDING, parallel: bool = False) -> Step:
    return Step(id=step_id, description=f"step {step_id}", status=status, deps=list(deps), parallel=parallel)


def _ids(steps: list[Step]) -> list[str]:
    return [step.id for step in steps]


def test_ready_steps_requires_complete_dependencies() -> None:
    steps = [
        _step("1", status=StepStatus.COMPLETE),
        _step("2", "1"),
        _step("3", "2"),
        _step("4", status=StepStatus.BLOCKED),
        _step("5", "4"),
        _step("6", status=StepStatus.IN_PROGRESS),
    ]
    assert _ids(ready_steps(steps)) == ["2"]


def test_ready_steps_ignores_unknown_dependencies() -> None:
    assert ready_steps([_step("1", "ghost")]) == []


def test_serial_step_is_a_barrier() -> None:
    """[A(parallel), B(serial), C(parallel)] dispatches A and B, never C past the barrier."""
    ready = [_step("A", parallel=True), _step("B"), _step("C", parallel=True)]
    partition = partition_steps(ready, max_parallel=3)

    assert _ids(partition.parallel) == ["A"]
    assert _ids(partition.serial) == ["B"]
    assert _ids(partition.selected) == ["A", "B"]
    assert partition.deferred == []


def test_second_serial_step_defers_the_rest() -> None:
    ready = [_step("A"), _step("B"), _step("C", parallel=True)]
    partition = partition_steps(ready, max_parallel=5)

    assert _ids(partition.selected) == ["A"]
    assert _ids(partition.deferred) == ["B", "C"]


def test_no_serial_step_while_one_is_running() -> None:
    ready = [_step("A", parallel=True), _step("B"), _step("C", parallel=True)]
    partition = partition_steps(ready, max_parallel=4, running=1, serial_running=True)

    assert _ids(partition.selected) == ["A"]
    assert _ids(partition.deferred) == ["B", "C"]


def test_slots_limit_selection() -> None:
    ready = [_step(str(n), parallel=True) for n in range(1, 6)]
    partition = partition_steps(ready, max_parallel=3, running=1)

    assert _ids(partition.selected) == ["1", "2"]
    assert _ids(partition.deferred) == ["3", "4", "5"]
    assert not partition_steps(ready, max_parallel=2, running=2)


def test_without_isolation_parallel_steps_run_serially() -> None:
    ready = [_step("A", parallel=True), _step("B", parallel=True)]
    partition = partition_steps(ready, max_parallel=3, isolation=False)

    assert partition.parallel == []
    assert _ids(partition.serial) == ["A"]
    assert _ids(partition.deferred) == ["B"]


def test_blocked_dependents_are_transitive_and_in_plan_order() -> None:
    steps = [
        _step("1"),
        _step("4", "3"),
        _step("2", "1"),
        _step("3", "2"),
        _step("5"),
    ]
    assert blocked_dependents(steps, "1") == ["4", "2", "3"]
    assert blocked_dependents(steps, "5") == []


def test_resolve_execution_groups_levels() -> None:
    steps = [_step("1"), _step("2"), _step("3", "1", "2"), _step("4", "3"), _step("5", "1")]
    assert resolve_execution_groups(steps) == [["1", "2"], ["3", "5"], ["4"]]


def test_resolve_execution_groups_skips_cycles() -> None:
    steps = [_step("1"), _step("2", "3"), _step("3", "2")]
    assert resolve_execution_groups(steps) == [["1"]]


def test_find_cycle_returns_closed_path() -> None:
    assert find_cycle([("a", ["b"]), ("b", ["c"]), ("c", ["a"])]) == ["a", "b", "c", "a"]
    assert find_cycle([("a", []), ("b", ["a"])]) is None
