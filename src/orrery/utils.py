"""Provide small helpers for timestamps, coercion, and process liveness."""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _pid_is_running(pid_value: Any) -> bool:
    pid = _coerce_int(pid_value, 0)
    if pid <= 0:
        return False

    try:
        os.kill(pid, 0)
    except PermissionError:
        # Alive, owned by another user.
        return True
    except OSError:
        return False
    return True


_NATURAL_SPLIT_RE = re.compile(r"(\d+)")


def _natural_key(value: Any) -> list[Any]:
    """Sort key that orders `step-2` before `step-10`."""
    parts = _NATURAL_SPLIT_RE.split(str(value))
    return [int(part) if part.isdigit() else part.lower() for part in parts]


def _sanitize_fragment(value: str) -> str:
    value = "".join(ch if (ch.isalnum() or ch in {"-", "_", "."}) else "-" for ch in (value or "").strip())
    value = value.strip("-").strip(".")
    return value or "run"
