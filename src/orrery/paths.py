"""Resolve the orchestrator's working directories for a repository."""

from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .constants import (
    COMPLETED_DIR,
    LOCK_FILE,
    LOCKS_DIR,
    PLANS_DIR,
    REPO_ROOT_ENV,
    REPORTS_DIR,
    TEMP_DIR,
    WORK_DIR_ENV,
    WORK_DIR_NAME,
)


_RUNTIME_IGNORES = (LOCK_FILE, f"{LOCKS_DIR}/", f"{TEMP_DIR}/", "*.log")


@dataclass(frozen=True)
class RepoPaths:
    repo_root: Path
    work_dir: Path
    plans: Path
    completed: Path
    reports: Path
    temp: Path
    locks: Path

    def ensure(self) -> "RepoPaths":
        for path in (self.work_dir, self.plans, self.completed, self.reports, self.temp, self.locks):
            path.mkdir(parents=True, exist_ok=True)
        # Keep run-local files out of "git add -A" commits.
        ignore_file = self.work_dir / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("\n".join(_RUNTIME_IGNORES) + "\n", encoding="utf-8")
        return self


def effective_root(cwd: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Path:
    """Return the repo root, honouring `ORRERY_REPO_ROOT` for workers inside a worktree."""
    env = os.environ if env is None else env
    env_root = str(env.get(REPO_ROOT_ENV) or "").strip()
    if env_root:
        return Path(env_root).resolve()
    return (cwd or Path.cwd()).resolve()


def project_id(root: Path) -> str:
    """Deterministic `<basename>-<hash8>` identifier for a repository root."""
    resolved = str(root.resolve())
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", root.resolve().name or "root")
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:8]
    return f"{sanitized}-{digest}"


def resolve_paths(repo_root: Path, env: Optional[Mapping[str, str]] = None) -> RepoPaths:
    env = os.environ if env is None else env
    repo_root = repo_root.resolve()
    env_dir = str(env.get(WORK_DIR_ENV) or "").strip()
    if env_dir:
        work_dir = Path(env_dir).expanduser().resolve() / project_id(repo_root)
    else:
        work_dir = repo_root / WORK_DIR_NAME
    return RepoPaths(
        repo_root=repo_root,
        work_dir=work_dir,
        plans=work_dir / PLANS_DIR,
        completed=work_dir / COMPLETED_DIR,
        reports=work_dir / REPORTS_DIR,
        temp=work_dir / TEMP_DIR,
        locks=work_dir / LOCKS_DIR,
    )
