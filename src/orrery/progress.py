"""Track step completion, elapsed time, and ETA for one plan run."""

from __future__ import annotations

import time
from typing import Optional, Sequence

from loguru import logger

from .models import Plan, StepStatus


def format_duration(seconds: float) -> str:
    """`2m 30s`, `1h 5m`, or `<1s`."""
    if seconds < 1:
        return "<1s"
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ProgressTracker:
    def __init__(self, total_steps: int, plan_name: str, clock=time.monotonic) -> None:
        self.total_steps = total_steps
        self.plan_name = plan_name
        self.completed = 0
        self.blocked = 0
        self._clock = clock
        self._started = clock()
        self._step_started: dict[str, float] = {}
        self._durations: list[float] = []

    @classmethod
    def from_plan(cls, plan: Plan, **kwargs) -> "ProgressTracker":
        tracker = cls(len(plan.steps), plan.file_name, **kwargs)
        tracker.completed = sum(1 for s in plan.steps if s.status is StepStatus.COMPLETE)
        tracker.blocked = sum(1 for s in plan.steps if s.status is StepStatus.BLOCKED)
        return tracker

    @property
    def processed(self) -> int:
        return self.completed + self.blocked

    def record_start(self, step_ids: Sequence[str]) -> None:
        now = self._clock()
        for step_id in step_ids:
            self._step_started[step_id] = now

    def record_complete(self, step_id: str) -> None:
        self.completed += 1
        started = self._step_started.pop(step_id, None)
        if started is not None:
            self._durations.append(self._clock() - started)

    def record_blocked(self, step_id: str) -> None:
        self.blocked += 1
        self._step_started.pop(step_id, None)

    def elapsed(self) -> float:
        return self._clock() - self._started

    def estimated_remaining(self) -> Optional[float]:
        if not self._durations:
            return None
        average = sum(self._durations) / len(self._durations)
        return average * max(0, self.total_steps - self.processed)

    def percent_complete(self) -> int:
        if not self.total_steps:
            return 100
        return round(self.processed / self.total_steps * 100)

    def log_start(self) -> None:
        pending = self.total_steps - self.processed
        logger.info("[Progress] Starting plan: {}", self.plan_name)
        logger.info(
            "[Progress] Total steps: {} ({} pending, {} complete, {} blocked)",
            self.total_steps,
            pending,
            self.completed,
            self.blocked,
        )

    def log_step_start(self, step_ids: Sequence[str]) -> None:
        self.record_start(step_ids)
        first = self.processed + 1
        if len(step_ids) == 1:
            logger.info("[Progress] Starting {} ({} of {})", step_ids[0], first, self.total_steps)
        else:
            logger.info(
                "[Progress] Starting {} steps: {} ({}-{} of {})",
                len(step_ids),
                ", ".join(step_ids),
                first,
                self.processed + len(step_ids),
                self.total_steps,
            )

    def log_progress(self) -> None:
        eta = self.estimated_remaining()
        logger.info(
            "[Progress] {}/{} steps ({}%) | Elapsed: {} | ETA: {}",
            self.processed,
            self.total_steps,
            self.percent_complete(),
            format_duration(self.elapsed()),
            format_duration(eta) if eta is not None else "Calculating...",
        )

    def log_summary(self) -> None:
        average = format_duration(sum(self._durations) / len(self._durations)) if self._durations else "N/A"
        logger.info("[Progress] === Summary ===")
        logger.info(
            "[Progress] Total: {} steps ({} complete, {} blocked)", self.total_steps, self.completed, self.blocked
        )
        logger.info("[Progress] Time: {}", format_duration(self.elapsed()))
        logger.info("[Progress] Avg step time: {}", average)
