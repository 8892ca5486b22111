"""File-backed execution locks.

A global lock (`<work_dir>/exec.lock`) serializes whole-repository runs. A
per-plan lock (`<work_dir>/locks/<plan_id>.lock`) lets distinct plans run side
by side while still rejecting a second run of the same plan.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from .constants import LOCK_FILE, LOCK_WRITE_GRACE_SECONDS, LOCKS_DIR, PROCESS_MARKER
from .utils import _coerce_int, _now_iso, _pid_is_running, _sanitize_fragment

_ACQUIRE_ATTEMPTS = 3


class LockContentionError(RuntimeError):
    """Raised when a live run of this tool already holds the lock."""

    def __init__(self, reason: str, pid: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.pid = pid


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    reason: Optional[str] = None
    pid: Optional[int] = None


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    stale: bool
    pid: Optional[int] = None
    started_at: Optional[str] = None
    plan_id: Optional[str] = None


def _is_tool_process(pid: int, marker: str = PROCESS_MARKER) -> bool:
    """Return True when `pid` looks like one of our own processes.

    Anything we cannot inspect is treated as foreign, which makes the lock
    stale rather than wedging future runs.
    """
    cmdline_path = Path(f"/proc/{pid}/cmdline")
    try:
        if cmdline_path.exists():
            cmdline = cmdline_path.read_bytes().replace(b"\0", b" ").decode("utf-8", "replace")
            return marker in cmdline
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "args="],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return False
    if result.returncode != 0:
        return False
    return marker in result.stdout


def lock_path_for(work_dir: Path, plan_id: Optional[str] = None) -> Path:
    if plan_id:
        return work_dir / LOCKS_DIR / f"{_sanitize_fragment(plan_id)}.lock"
    return work_dir / LOCK_FILE


def _read_token(path: Path) -> Optional[dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _same_token(current: Optional[dict[str, Any]], expected: Optional[dict[str, Any]]) -> bool:
    if current is None or expected is None:
        return current is None and expected is None
    return current.get("pid") == expected.get("pid") and current.get("startedAt") == expected.get("startedAt")


def _age_seconds(path: Path) -> Optional[float]:
    try:
        return time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return None


class ExecutionLock:
    """Ownership token for one orchestration run.

    Example:
        lock = ExecutionLock(paths.work_dir)
        with lock.held():
            ...
    """

    def __init__(
        self,
        work_dir: Path,
        plan_id: Optional[str] = None,
        *,
        command: Optional[str] = None,
        worktree_path: Optional[Path] = None,
        marker: str = PROCESS_MARKER,
    ) -> None:
        self.work_dir = work_dir
        self.plan_id = plan_id
        self.path = lock_path_for(work_dir, plan_id)
        self.command = command if command is not None else " ".join(sys.argv[1:])
        self.worktree_path = worktree_path
        self.marker = marker
        self._started_at: Optional[str] = None

    def _is_live_owner(self, token: dict[str, Any]) -> bool:
        pid = _coerce_int(token.get("pid"), 0)
        return _pid_is_running(pid) and _is_tool_process(pid, self.marker)

    def _token(self) -> dict[str, Any]:
        self._started_at = _now_iso()
        token: dict[str, Any] = {
            "pid": os.getpid(),
            "startedAt": self._started_at,
            "command": self.command,
        }
        if self.plan_id:
            token["planId"] = self.plan_id
        if self.worktree_path:
            token["worktreePath"] = str(self.worktree_path)
        return token

    def _publish(self) -> bool:
        """Create the lock file with its full token in one step.

        The token is written to a private file first and then hard-linked into
        place, so a reader never sees a half-written lock. Returns False when a
        lock file already exists.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        tmp_path.write_text(json.dumps(self._token(), indent=2) + "\n", encoding="utf-8")
        try:
            os.link(tmp_path, self.path)
        except FileExistsError:
            self._started_at = None
            return False
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def _remove_if_unchanged(self, expected: Optional[dict[str, Any]]) -> bool:
        """Delete the lock only if it still carries the token judged stale.

        The file is renamed aside before it is inspected. If the token found
        there differs from `expected`, another run published it in the
        meantime and it is linked back into place.
        """
        aside = self.path.with_name(f".{self.path.name}.{os.getpid()}.{threading.get_ident()}.stale")
        try:
            os.replace(self.path, aside)
        except FileNotFoundError:
            return True
        current = _read_token(aside)
        if _same_token(current, expected):
            aside.unlink(missing_ok=True)
            return True
        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.warning("Lock {} changed hands during stale recovery", self.path)
        finally:
            aside.unlink(missing_ok=True)
        return False

    def _busy(self, existing: Optional[dict[str, Any]], reason: str) -> LockResult:
        pid = _coerce_int((existing or {}).get("pid"), 0) or None
        return LockResult(acquired=False, reason=reason, pid=pid)

    def acquire(self) -> LockResult:
        for _ in range(_ACQUIRE_ATTEMPTS):
            existing = _read_token(self.path)
            if existing is None and self.path.exists():
                age = _age_seconds(self.path)
                if age is not None and age < LOCK_WRITE_GRACE_SECONDS:
                    return self._busy(None, f"Lock file {self.path.name} is being written by another run")
                logger.warning("Discarding unreadable lock file {}", self.path)
                if not self._remove_if_unchanged(None):
                    continue
            elif existing is not None:
                pid = _coerce_int(existing.get("pid"), 0)
                if self._is_live_owner(existing):
                    return self._busy(
                        existing,
                        f"Another {self.marker} process is running "
                        f"(PID {pid}, started {existing.get('startedAt', 'unknown')})",
                    )
                logger.info("Recovering stale lock {} (PID {} no longer running)", self.path.name, pid)
                if not self._remove_if_unchanged(existing):
                    continue

            try:
                if self._publish():
                    logger.debug("Acquired lock {}", self.path)
                    return LockResult(acquired=True)
            except OSError as exc:
                return LockResult(acquired=False, reason=f"Failed to create lock file: {exc}")
        winner = _read_token(self.path)
        pid = _coerce_int((winner or {}).get("pid"), 0)
        return self._busy(winner, f"Another {self.marker} process just started (PID {pid or 'unknown'})")

    def release(self) -> bool:
        """Remove the lock file if (and only if) this process owns it."""
        existing = _read_token(self.path)
        if not existing or _coerce_int(existing.get("pid"), 0) != os.getpid():
            return False
        if self._started_at and existing.get("startedAt") != self._started_at:
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        self._started_at = None
        logger.debug("Released lock {}", self.path)
        return True

    def status(self) -> LockStatus:
        existing = _read_token(self.path)
        if existing is None:
            age = _age_seconds(self.path)
            if age is None:
                return LockStatus(locked=False, stale=False)
            fresh = age < LOCK_WRITE_GRACE_SECONDS
            return LockStatus(locked=fresh, stale=not fresh)
        live = self._is_live_owner(existing)
        return LockStatus(
            locked=live,
            stale=not live,
            pid=_coerce_int(existing.get("pid"), 0) or None,
            started_at=existing.get("startedAt"),
            plan_id=existing.get("planId"),
        )

    @contextmanager
    def held(self) -> Iterator["ExecutionLock"]:
        """Hold the lock for the duration of the block.

        Raises:
            LockContentionError: If another live run owns the lock.
        """
        result = self.acquire()
        if not result.acquired:
            raise LockContentionError(result.reason or "lock is held", result.pid)
        try:
            yield self
        finally:
            self.release()
