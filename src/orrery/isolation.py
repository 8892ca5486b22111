"""Run parallel steps in private git worktrees and replay their commits.

Each parallel batch gets a worktree on its own branch cut from the work
branch. Once the worker finishes, the branch's new commits are cherry-picked
onto the work branch one at a time under a lock. A replay conflict rolls the
work branch back to where it was and leaves the private branch in place so a
human can recover the work.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from . import git_utils
from .constants import WORKTREES_DIR
from .git_utils import GitError
from .utils import _now_iso, _sanitize_fragment

_counter = itertools.count(1)


@dataclass
class Workspace:
    path: Path
    branch: str
    base_sha: str
    step_ids: list[str]
    created_at: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class OrphanedWorkspace:
    path: Path
    branch: Optional[str]
    registered: bool


@dataclass
class ReintegrationResult:
    ok: bool
    applied: list[str] = field(default_factory=list)
    conflict_files: list[str] = field(default_factory=list)
    reason: Optional[str] = None


class IsolationManager:
    """Create, reintegrate, and discard isolated workspaces for one repository."""

    def __init__(self, repo_root: Path, root: Optional[Path] = None) -> None:
        self.repo_root = repo_root
        self._root = root
        self._lock = threading.RLock()
        self._active: dict[Path, Workspace] = {}

    @property
    def root(self) -> Path:
        if self._root is None:
            self._root = git_utils.git_common_dir(self.repo_root) / WORKTREES_DIR
        return self._root

    def create(self, step_ids: Sequence[str]) -> Workspace:
        """Add a worktree on a fresh branch derived from the current work branch.

        Raises:
            GitError: If the worktree cannot be created.
        """
        with self._lock:
            work_branch = git_utils.current_branch(self.repo_root)
            base = git_utils.head_sha(self.repo_root)
            suffix = f"{int(time.time() * 1000)}-{next(_counter)}"
            ids = _sanitize_fragment("-".join(step_ids))
            branch = f"{work_branch}-wt-{ids}-{suffix}"
            path = self.root / _sanitize_fragment(branch.replace("/", "-"))
            git_utils.add_worktree(self.repo_root, path, branch, base)
            workspace = Workspace(path=path, branch=branch, base_sha=base, step_ids=list(step_ids))
            self._active[path] = workspace
        logger.info("Created worktree for {}: {}", ",".join(step_ids), path)
        return workspace

    def _cleanup(self, workspace: Workspace, *, delete_branch: bool) -> None:
        git_utils.remove_worktree(self.repo_root, workspace.path)
        if delete_branch:
            git_utils.delete_branch(self.repo_root, workspace.branch)
        self._active.pop(workspace.path, None)

    def reintegrate(self, workspace: Workspace, commit_message: str) -> ReintegrationResult:
        """Replay the workspace's commits onto the shared work branch.

        Uncommitted changes left in the worktree are committed first. The
        worktree directory is removed afterwards either way; the private branch
        is deleted only when every commit applied cleanly.
        """
        with self._lock:
            try:
                if git_utils.has_uncommitted_changes(workspace.path, include_untracked=True):
                    git_utils.commit(workspace.path, commit_message)
                commits = git_utils.commit_range(self.repo_root, workspace.base_sha, workspace.branch)
                pre_head = git_utils.head_sha(self.repo_root)
            except GitError as exc:
                self._cleanup(workspace, delete_branch=False)
                return ReintegrationResult(
                    ok=False,
                    reason=f"Could not read work from {workspace.branch}: {exc.stderr or exc}",
                )

            applied: list[str] = []
            for sha in commits:
                try:
                    git_utils.cherry_pick(self.repo_root, sha)
                except GitError as exc:
                    files = git_utils.conflicted_files(self.repo_root)
                    git_utils.cherry_pick_abort(self.repo_root)
                    if applied:
                        try:
                            git_utils.reset_keep(self.repo_root, pre_head)
                        except GitError as reset_exc:
                            logger.error(
                                "Could not roll back partial replay of {}: {}", workspace.branch, reset_exc.stderr
                            )
                    self._cleanup(workspace, delete_branch=False)
                    detail = ", ".join(files) if files else (exc.stderr.splitlines() or ["cherry-pick failed"])[0]
                    reason = (
                        f"Reintegration conflict replaying {sha[:7]} ({detail}); "
                        f"work preserved on branch {workspace.branch}"
                    )
                    logger.warning("{}", reason)
                    return ReintegrationResult(ok=False, applied=[], conflict_files=files, reason=reason)
                applied.append(sha)

            self._cleanup(workspace, delete_branch=True)
        if applied:
            logger.info("Reintegrated {} commit(s) from {}", len(applied), workspace.branch)
        return ReintegrationResult(ok=True, applied=applied)

    def discard(self, workspace: Workspace) -> None:
        """Drop a workspace whose worker failed, leaving the work branch untouched."""
        with self._lock:
            self._cleanup(workspace, delete_branch=True)
        logger.info("Discarded worktree {}", workspace.path)

    def orphaned_workspaces(self) -> list[OrphanedWorkspace]:
        """Worktrees left behind by an earlier crashed run (never deleted here).

        Covers directories under the workspace root as well as worktrees git
        still has registered there whose directory is gone.
        """
        root = self.root.resolve()
        active = {path.resolve() for path in self._active}
        registered = {
            path: branch for path, branch in git_utils.list_worktrees(self.repo_root).items() if path.parent == root
        }
        found = set(registered)
        if root.exists():
            found.update(child.resolve() for child in root.iterdir() if child.is_dir())
        return [
            OrphanedWorkspace(path=path, branch=registered.get(path), registered=path in registered)
            for path in sorted(found - active)
        ]
