"""Provide small git helpers used by the orchestrator."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence
from urllib.parse import quote

from loguru import logger


class GitError(RuntimeError):
    """Raised when a git command exits non-zero."""

    def __init__(self, command: Sequence[str], stderr: str, returncode: int = 1):
        self.command = list(command)
        self.stderr = (stderr or "").strip()
        self.returncode = returncode
        super().__init__(f"{' '.join(self.command)} failed: {self.stderr or f'exit {returncode}'}")


def _git(repo: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess:
    command = ["git", *args]
    result = subprocess.run(
        command,
        cwd=repo,
        capture_output=True,
        text=True,
        check=False,
    )
    if check and result.returncode != 0:
        raise GitError(command, result.stderr or result.stdout, result.returncode)
    return result


def _git_out(repo: Path, *args: str) -> str:
    return _git(repo, *args).stdout.strip()


def is_git_repo(repo: Path) -> bool:
    result = _git(repo, "rev-parse", "--is-inside-work-tree", check=False)
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def current_branch(repo: Path) -> str:
    return _git_out(repo, "rev-parse", "--abbrev-ref", "HEAD")


def head_sha(repo: Path) -> str:
    return _git_out(repo, "rev-parse", "HEAD")


def git_common_dir(repo: Path) -> Path:
    """The shared `.git` directory, also correct when `repo` is itself a worktree."""
    path = Path(_git_out(repo, "rev-parse", "--git-common-dir"))
    return path if path.is_absolute() else (repo / path).resolve()


def branch_exists(repo: Path, branch: str) -> bool:
    result = _git(repo, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
    if result.returncode == 0:
        return True
    remote = _git(repo, "show-ref", "--verify", "--quiet", f"refs/remotes/origin/{branch}", check=False)
    return remote.returncode == 0


def create_branch(repo: Path, branch: str) -> None:
    _git(repo, "checkout", "-b", branch)


def checkout_branch(repo: Path, branch: str) -> None:
    _git(repo, "checkout", branch)


def has_uncommitted_changes(repo: Path, *, include_untracked: bool = False) -> bool:
    if include_untracked:
        return bool(_git_out(repo, "status", "--porcelain"))
    unstaged = _git(repo, "diff", "--quiet", check=False).returncode != 0
    staged = _git(repo, "diff", "--cached", "--quiet", check=False).returncode != 0
    return unstaged or staged


def commit(repo: Path, message: str, files: Optional[Sequence[Path | str]] = None) -> Optional[str]:
    """Stage `files` (or everything) and commit.

    Returns:
        The new commit sha, or None when there was nothing to commit.
    """
    if files:
        _git(repo, "add", "--", *[str(f) for f in files])
    else:
        _git(repo, "add", "-A")
    if _git(repo, "diff", "--cached", "--quiet", check=False).returncode == 0:
        return None
    _git(repo, "commit", "-m", message)
    return head_sha(repo)


def derive_branch_name(plan_file_name: str) -> str:
    """`2026-01-11-add-dummy-script.yaml` -> `plan/add-dummy-script`."""
    name = re.sub(r"\.ya?ml$", "", plan_file_name)
    name = re.sub(r"^\d{4}-\d{2}-\d{2}-", "", name)
    name = re.sub(r"[^a-z0-9-]", "-", name.lower())
    name = re.sub(r"-+", "-", name).strip("-")
    return f"plan/{name}"


def add_worktree(repo: Path, path: Path, branch: str, base: str = "HEAD") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    _git(repo, "worktree", "add", str(path), "-b", branch, base)


def remove_worktree(repo: Path, path: Path) -> bool:
    result = _git(repo, "worktree", "remove", str(path), "--force", check=False)
    if result.returncode != 0:
        logger.warning("Failed to remove worktree {}: {}", path, result.stderr.strip())
        return False
    return True


def list_worktrees(repo: Path) -> dict[Path, Optional[str]]:
    """Registered worktrees mapped to their checked-out branch (None when detached)."""
    worktrees: dict[Path, Optional[str]] = {}
    current: Optional[Path] = None
    for line in _git_out(repo, "worktree", "list", "--porcelain").splitlines():
        if line.startswith("worktree "):
            current = Path(line[len("worktree "):]).resolve()
            worktrees[current] = None
        elif line.startswith("branch ") and current is not None:
            worktrees[current] = line[len("branch "):].removeprefix("refs/heads/")
    return worktrees


def delete_branch(repo: Path, branch: str) -> bool:
    return _git(repo, "branch", "-D", branch, check=False).returncode == 0


def commit_range(repo: Path, base: str, head: str) -> list[str]:
    """Commits reachable from `head` but not `base`, oldest first."""
    out = _git_out(repo, "rev-list", "--reverse", f"{base}..{head}")
    return [line for line in out.splitlines() if line]


def cherry_pick(repo: Path, sha: str) -> None:
    _git(repo, "cherry-pick", "--allow-empty", "--keep-redundant-commits", sha)


def cherry_pick_abort(repo: Path) -> None:
    _git(repo, "cherry-pick", "--abort", check=False)


def conflicted_files(repo: Path) -> list[str]:
    out = _git(repo, "diff", "--name-only", "--diff-filter=U", check=False).stdout
    return [line for line in out.splitlines() if line.strip()]


def reset_keep(repo: Path, sha: str) -> None:
    """Move HEAD back to `sha`, keeping unrelated local modifications."""
    _git(repo, "reset", "--keep", sha)


def push(repo: Path, branch: Optional[str] = None, set_upstream: bool = True) -> None:
    branch = branch or current_branch(repo)
    if set_upstream:
        _git(repo, "push", "-u", "origin", branch)
    else:
        _git(repo, "push")


def repo_url(repo: Path) -> Optional[str]:
    """HTTPS URL of `origin` (ssh remotes are converted), or None."""
    result = _git(repo, "remote", "get-url", "origin", check=False)
    url = result.stdout.strip()
    if result.returncode != 0 or not url:
        return None
    match = re.match(r"^git@([^:]+):(.+?)(?:\.git)?$", url)
    if match:
        url = f"https://{match.group(1)}/{match.group(2)}"
    url = re.sub(r"\.git$", "", url)
    url = re.sub(r"^git\+", "", url)
    return url


@dataclass(frozen=True)
class PullRequestInfo:
    url: str
    title: str
    body: str
    head_branch: str
    base_branch: str
    pushed: bool


def create_pull_request(repo: Path, title: str, body: str, base_branch: str) -> PullRequestInfo:
    """Push the current branch and build a compare URL for opening a PR by hand."""
    head = current_branch(repo)
    pushed = False
    try:
        push(repo, head)
        pushed = True
    except GitError as exc:
        logger.warning("Could not push {}: {}", head, exc.stderr)

    url = ""
    base_url = repo_url(repo)
    if base_url:
        url = (
            f"{base_url}/compare/{base_branch}...{head}"
            f"?expand=1&title={quote(title, safe='')}&body={quote(body, safe='')}"
        )
    return PullRequestInfo(url=url, title=title, body=body, head_branch=head, base_branch=base_branch, pushed=pushed)
