"""Pure dependency queries over a plan's step list.

Nothing here touches the filesystem or mutates steps. A cyclic or dangling
dependency simply keeps the affected steps out of the ready set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Union

from .models import Plan, Step, StepStatus


StepsLike = Union[Plan, Sequence[Step]]


def _steps_of(source: StepsLike) -> Sequence[Step]:
    return source.steps if isinstance(source, Plan) else source


@dataclass
class Partition:
    """Steps selected for the next dispatch, split by how they will run."""

    parallel: list[Step] = field(default_factory=list)
    serial: list[Step] = field(default_factory=list)
    deferred: list[Step] = field(default_factory=list)
    # Selected steps (parallel and serial) in plan order.
    selected: list[Step] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.selected)


def ready_steps(source: StepsLike) -> list[Step]:
    """Pending steps whose every dependency is complete, in plan order."""
    steps = _steps_of(source)
    status = {step.id: step.status for step in steps}
    return [
        step
        for step in steps
        if step.status is StepStatus.PENDING
        and all(status.get(dep) is StepStatus.COMPLETE for dep in step.deps)
    ]


def partition_steps(
    ready: Sequence[Step],
    max_parallel: int,
    running: int = 0,
    *,
    serial_running: bool = False,
    isolation: bool = True,
) -> Partition:
    """Choose which ready steps start now.

    Walks `ready` in plan order with `max(0, max_parallel - running)` free
    slots. Parallel-eligible steps take a slot each. At most one serial step
    is selected, and only when no serial worker is already in flight. A serial
    step that cannot start yet is a barrier: nothing after it in plan order is
    selected. Without isolation every step is treated as serial.
    """
    result = Partition()
    slots = max(0, max_parallel - running)
    for index, step in enumerate(ready):
        if slots <= 0:
            result.deferred.extend(ready[index:])
            break
        if step.parallel and isolation:
            result.parallel.append(step)
        else:
            if serial_running or result.serial:
                result.deferred.extend(ready[index:])
                break
            result.serial.append(step)
        result.selected.append(step)
        slots -= 1
    return result


def blocked_dependents(source: StepsLike, step_id: str) -> list[str]:
    """Ids of every step that depends on `step_id` directly or transitively, in plan order."""
    steps = _steps_of(source)
    dependents: dict[str, list[str]] = {}
    for step in steps:
        for dep in step.deps:
            dependents.setdefault(dep, []).append(step.id)

    affected: set[str] = set()
    frontier = [step_id]
    while frontier:
        current = frontier.pop()
        for child in dependents.get(current, []):
            if child not in affected and child != step_id:
                affected.add(child)
                frontier.append(child)
    return [step.id for step in steps if step.id in affected]


def resolve_execution_groups(source: StepsLike) -> list[list[str]]:
    """Group step ids into dependency levels (Kahn's algorithm).

    Each group only depends on earlier groups. Steps that sit on a cycle or
    behind an unknown dependency are left out.
    """
    steps = _steps_of(source)
    known = {step.id for step in steps}
    remaining = {step.id: {dep for dep in step.deps} for step in steps}
    order = [step.id for step in steps]

    groups: list[list[str]] = []
    done: set[str] = set()
    while True:
        group = [
            step_id
            for step_id in order
            if step_id in remaining and remaining[step_id] <= done and remaining[step_id] <= known
        ]
        if not group:
            break
        groups.append(group)
        for step_id in group:
            remaining.pop(step_id)
            done.add(step_id)
    return groups


def find_cycle(graph: Iterable[tuple[str, Sequence[str]]]) -> Optional[list[str]]:
    """Return one dependency cycle as `[a, b, ..., a]`, or None when the graph is acyclic."""
    edges: dict[str, list[str]] = {}
    for node, deps in graph:
        edges[node] = list(deps)

    visiting: list[str] = []
    state: dict[str, int] = {}  # 1 = on stack, 2 = done

    def visit(node: str) -> Optional[list[str]]:
        state[node] = 1
        visiting.append(node)
        for dep in edges.get(node, []):
            if dep not in edges:
                continue
            mark = state.get(dep)
            if mark == 1:
                return visiting[visiting.index(dep):] + [dep]
            if mark is None:
                found = visit(dep)
                if found:
                    return found
        visiting.pop()
        state[node] = 2
        return None

    for node in edges:
        if node not in state:
            found = visit(node)
            if found:
                return found
    return None
