"""Provide the public `orrery` package exports."""

from __future__ import annotations

from .orchestrator import orchestrate, resume_plan, unblock_plan

__all__ = ["orchestrate", "resume_plan", "unblock_plan"]
