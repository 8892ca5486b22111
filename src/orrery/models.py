"""Define plan, step, worker-result, and report models used by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .constants import OUTCOME_SUCCESS
from .utils import _now_iso


class StepStatus(str, Enum):
    """Lifecycle of a plan step: pending -> in_progress -> complete | blocked."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETE, StepStatus.BLOCKED)


class PlanValidationError(ValueError):
    """Raised when a plan document is structurally invalid."""

    def __init__(self, path: Optional[Path], errors: list[str]):
        self.path = path
        self.errors = list(errors)
        where = f"{path.name}: " if path else ""
        super().__init__(where + "; ".join(self.errors))


_STEP_FIELDS = ("id", "description", "status", "deps", "parallel", "files", "context_files", "blocked_reason")
_OMIT = object()


@dataclass
class Step:
    """One unit of work inside a plan.

    Unknown keys are preserved in `extra` and written back untouched. Optional
    keys absent from the source document are only introduced on save once they
    hold a non-default value, so a load/save cycle never grows the document.
    """

    id: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    deps: list[str] = field(default_factory=list)
    parallel: bool = False
    files: list[Any] = field(default_factory=list)
    context_files: list[Any] = field(default_factory=list)
    blocked_reason: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)
    _source: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Step":
        """Build a step from its raw mapping.

        Raises:
            ValueError: If `status` is not a known step status.
        """
        raw_status = data.get("status", StepStatus.PENDING.value)
        try:
            status = StepStatus(str(raw_status))
        except ValueError:
            raise ValueError(f"step {data.get('id')!r}: invalid status {raw_status!r}") from None

        blocked_reason = data.get("blocked_reason")
        return cls(
            id=str(data.get("id")),
            description=str(data.get("description") or ""),
            status=status,
            deps=[str(dep) for dep in (data.get("deps") or [])],
            parallel=data.get("parallel") is True,
            files=list(data.get("files") or []),
            context_files=list(data.get("context_files") or []),
            blocked_reason=str(blocked_reason) if blocked_reason is not None else None,
            extra={key: value for key, value in data.items() if key not in _STEP_FIELDS},
            _source=dict(data),
        )

    def _field_value(self, key: str) -> Any:
        src = self._source
        present = key in src
        if key == "id":
            return src["id"] if present and str(src["id"]) == self.id else self.id
        if key == "description":
            if present and str(src.get("description") or "") == self.description:
                return src["description"]
            return self.description if (present or self.description) else _OMIT
        if key == "status":
            if not present and self.status is StepStatus.PENDING:
                return _OMIT
            return self.status.value
        if key == "deps":
            raw = src.get("deps")
            if present and [str(d) for d in (raw or [])] == self.deps:
                return raw
            return list(self.deps) if (present or self.deps) else _OMIT
        if key == "parallel":
            if present and (src.get("parallel") is True) == self.parallel:
                return src["parallel"]
            return self.parallel if (present or self.parallel) else _OMIT
        if key in ("files", "context_files"):
            value = getattr(self, key)
            if present and list(src.get(key) or []) == value:
                return src[key]
            return list(value) if (present or value) else _OMIT
        if key == "blocked_reason":
            return self.blocked_reason if self.blocked_reason is not None else _OMIT
        return self.extra.get(key, _OMIT)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        # Source key order first, then newly introduced fields.
        keys = list(self._source)
        keys += [key for key in _STEP_FIELDS if key not in keys]
        keys += [key for key in self.extra if key not in keys]
        for key in keys:
            value = self._field_value(key)
            if value is not _OMIT:
                out[key] = value
        return out


@dataclass
class Plan:
    """A loaded plan document bound to its file path."""

    path: Path
    metadata: dict[str, Any] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    key_order: list[str] = field(default_factory=list, repr=False)

    @property
    def file_name(self) -> str:
        return self.path.name

    @property
    def plan_id(self) -> str:
        """Stable identifier used for per-plan locks and report names."""
        return self.path.stem

    def step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def completed_ids(self) -> set[str]:
        return {s.id for s in self.steps if s.status is StepStatus.COMPLETE}

    def blocked_ids(self) -> set[str]:
        return {s.id for s in self.steps if s.status is StepStatus.BLOCKED}

    def is_complete(self) -> bool:
        """Every step has reached a terminal status (complete or blocked)."""
        return all(s.status.is_terminal for s in self.steps)

    def is_successful(self) -> bool:
        return all(s.status is StepStatus.COMPLETE for s in self.steps)

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = dict(self.extra)
        body["metadata"] = self.metadata
        body["steps"] = [step.to_dict() for step in self.steps]
        data = {key: body[key] for key in self.key_order if key in body}
        data.update({key: value for key, value in body.items() if key not in data})
        return data


@dataclass
class StepResult:
    """Normalised outcome for one step id from one worker invocation."""

    step_id: str
    status: StepStatus
    summary: str = ""
    artifacts: list[str] = field(default_factory=list)
    blocked_reason: Optional[str] = None
    test_results: Any = None
    commit_message: Optional[str] = None
    synthesized: bool = False

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.COMPLETE


@dataclass(frozen=True)
class StepReport:
    """Append-only audit record written once per step-completion event."""

    step_id: str
    outcome: str
    details: str
    timestamp: str
    artifacts: list[str]
    blocked_reason: Optional[str]
    test_results: Any
    agent: Optional[str] = None
    # One entry per review iteration; None when the step was not reviewed.
    reviews: Optional[list[dict[str, Any]]] = None

    @classmethod
    def from_result(
        cls,
        result: StepResult,
        *,
        agent: Optional[str] = None,
        reviews: Optional[list[dict[str, Any]]] = None,
    ) -> "StepReport":
        return cls(
            step_id=result.step_id,
            outcome=OUTCOME_SUCCESS if result.ok else "failure",
            details=result.summary or "",
            timestamp=_now_iso(),
            artifacts=list(result.artifacts),
            blocked_reason=result.blocked_reason,
            test_results=result.test_results,
            agent=agent,
            reviews=reviews,
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "step_id": self.step_id,
            "agent": self.agent,
            "outcome": self.outcome,
            "details": self.details,
            "timestamp": self.timestamp,
            "artifacts": list(self.artifacts),
            "blocked_reason": self.blocked_reason,
            "test_results": self.test_results,
        }
        if self.reviews is not None:
            data["reviews"] = [dict(review) for review in self.reviews]
        return data
