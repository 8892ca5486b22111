"""Test the plan run loop end to end with stand-in worker processes."""

from __future__ import annotations

import subprocess
import sys
import textwrap
from pathlib import Path

import yaml
from loguru import logger

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from orrery.config import AgentSpec, ConcurrencyConfig, OrchestratorConfig, RetryConfig
from orrery.models import StepStatus
from orrery.paths import RepoPaths, resolve_paths
from orrery.plan_store import load_plan
from orrery.scheduler import PlanRunner, RunState

# argv: <step_ids> <ids to report blocked>
WORKER = textwrap.dedent(
    """
    import json, pathlib, sys
    blocked = set(filter(None, sys.argv[2].split(",")))
    for step_id in sys.argv[1].split(","):
        if step_id in blocked:
            print(json.dumps({"stepId": step_id, "status": "blocked", "blockedReason": "tests fail"}))
            continue
        pathlib.Path("out-" + step_id + ".txt").write_text(step_id + "\\n")
        print(json.dumps({"stepId": step_id, "status": "complete", "summary": "wrote out-" + step_id}))
    """
)

# argv: <step_ids> <file to write, or "" for out-<id>.txt> <ids that take a while>
WRITER = textwrap.dedent(
    """
    import json, pathlib, sys, time
    slow = set(filter(None, sys.argv[3].split(",")))
    for step_id in sys.argv[1].split(","):
        if step_id in slow:
            time.sleep(3)
        pathlib.Path(sys.argv[2] or "out-" + step_id + ".txt").write_text("written by " + step_id + "\\n")
        print(json.dumps({"stepId": step_id, "status": "complete", "summary": "wrote"}))
    """
)


def _git_init(path: Path) -> None:
    """Initialize a git repo with an initial commit."""
    subprocess.run(["git", "init", "-b", "main"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)
    (path / "README.md").write_text("# init\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)


def _config(
    blocked: str = "",
    *,
    parallel: bool = False,
    max_parallel: int = 3,
    args: tuple[str, ...] = (),
) -> OrchestratorConfig:
    agent = AgentSpec(name="fake", command=sys.executable, args=args or ("-c", WORKER, "{step_ids}", blocked))
    return OrchestratorConfig(
        agents={"fake": agent},
        default_agent="fake",
        agent_priority=("fake",),
        concurrency=ConcurrencyConfig(max_parallel=max_parallel, poll_interval_seconds=0.1, parallel_enabled=parallel),
        retry=RetryConfig(max_attempts=1, backoff_seconds=0),
    )


def _setup(tmp_path: Path, steps: list[dict], name: str = "2026-01-11-demo.yaml") -> tuple[RepoPaths, Path]:
    paths = resolve_paths(tmp_path, env={}).ensure()
    plan_file = paths.plans / name
    plan_file.write_text(yaml.safe_dump({"metadata": {"title": "Demo"}, "steps": steps}, sort_keys=False))
    return paths, plan_file


def _log(repo: Path) -> list[str]:
    out = subprocess.run(["git", "log", "--format=%s"], cwd=repo, check=True, capture_output=True, text=True).stdout
    return out.splitlines()


def test_serial_chain_completes_and_archives(tmp_path: Path) -> None:
    paths, plan_file = _setup(
        tmp_path,
        [
            {"id": "1", "description": "first"},
            {"id": "2", "description": "second", "deps": ["1"]},
        ],
    )
    outcome = PlanRunner(plan_file, paths, _config()).run()

    assert outcome.state is RunState.ARCHIVING
    assert outcome.successful
    assert outcome.completed == ["1", "2"]
    assert outcome.archived_path == paths.completed / plan_file.name
    assert not plan_file.exists()
    assert (tmp_path / "out-1.txt").exists() and (tmp_path / "out-2.txt").exists()

    archived = load_plan(outcome.archived_path)
    assert archived.metadata["outcome"] == "success"
    assert "completed_at" in archived.metadata
    assert archived.step("1").extra["agent"] == "fake"
    assert (paths.reports / "2026-01-11-demo-1-report.yaml").exists()
    assert not list(paths.temp.iterdir())
    assert outcome.history[0] is RunState.SCANNING
    assert RunState.AWAITING in outcome.history


def test_blocked_step_stops_its_dependents(tmp_path: Path) -> None:
    paths, plan_file = _setup(
        tmp_path,
        [
            {"id": "1", "description": "first"},
            {"id": "2", "description": "second", "deps": ["1"]},
        ],
    )
    outcome = PlanRunner(plan_file, paths, _config(blocked="1")).run()

    assert outcome.state is RunState.BLOCKED_TERMINAL
    assert outcome.blocked == {"1": "tests fail"}
    assert outcome.pending == ["2"]
    assert not outcome.archived
    plan = load_plan(plan_file)
    assert plan.step("1").status is StepStatus.BLOCKED
    assert plan.step("2").status is StepStatus.PENDING

    report = yaml.safe_load((paths.reports / "2026-01-11-demo-1-report.yaml").read_text())
    assert report["outcome"] == "failure"
    assert report["blocked_reason"] == "tests fail"


def test_independent_blocked_step_archives_as_partial(tmp_path: Path) -> None:
    paths, plan_file = _setup(
        tmp_path,
        [
            {"id": "1", "description": "first"},
            {"id": "2", "description": "second"},
        ],
    )
    messages: list[str] = []
    handler = logger.add(messages.append, level="WARNING", format="{message}")
    try:
        outcome = PlanRunner(plan_file, paths, _config(blocked="2")).run()
    finally:
        logger.remove(handler)

    assert outcome.archived
    assert outcome.outcome == "partial"
    assert not outcome.successful
    assert outcome.blocked == {"2": "tests fail"}
    lines = [message.strip() for message in messages]
    assert "Plan 2026-01-11-demo.yaml finished with blocked steps:" in lines
    assert "2: tests fail" in lines


def test_interrupted_steps_are_retried(tmp_path: Path) -> None:
    paths, plan_file = _setup(
        tmp_path,
        [
            {"id": "1", "description": "first", "status": "complete"},
            {"id": "2", "description": "second", "status": "in_progress", "deps": ["1"]},
        ],
    )
    outcome = PlanRunner(plan_file, paths, _config(), archive=False).run()

    assert outcome.completed == ["1", "2"]
    assert not (tmp_path / "out-1.txt").exists()
    assert (tmp_path / "out-2.txt").exists()
    assert plan_file.exists()


def test_serial_step_is_committed_in_git_repo(tmp_path: Path) -> None:
    _git_init(tmp_path)
    paths, plan_file = _setup(tmp_path, [{"id": "1", "description": "first"}])

    outcome = PlanRunner(plan_file, paths, _config()).run()

    assert outcome.successful
    assert _log(tmp_path)[0] == "feat: complete step 1"
    tracked = subprocess.run(["git", "ls-files"], cwd=tmp_path, check=True, capture_output=True, text=True).stdout
    assert "out-1.txt" in tracked
    assert ".agent-work/temp" not in tracked


def test_parallel_steps_run_in_worktrees_and_reintegrate(tmp_path: Path) -> None:
    _git_init(tmp_path)
    paths, plan_file = _setup(
        tmp_path,
        [
            {"id": "1", "description": "first", "parallel": True},
            {"id": "2", "description": "second", "parallel": True},
            {"id": "3", "description": "third", "deps": ["1", "2"]},
        ],
    )
    outcome = PlanRunner(plan_file, paths, _config(parallel=True, max_parallel=2)).run()

    assert outcome.successful
    assert outcome.completed == ["1", "2", "3"]
    for step_id in ("1", "2", "3"):
        assert (tmp_path / f"out-{step_id}.txt").read_text() == f"{step_id}\n"
    log = _log(tmp_path)
    assert "feat: complete step 1" in log
    assert "feat: complete step 2" in log
    worktrees = tmp_path / ".git" / "orrery-worktrees"
    assert not worktrees.exists() or not list(worktrees.iterdir())
    branches = subprocess.run(["git", "branch"], cwd=tmp_path, check=True, capture_output=True, text=True).stdout
    assert "-wt-" not in branches


def test_overlapping_parallel_steps_block_the_one_that_lands_second(tmp_path: Path) -> None:
    _git_init(tmp_path)
    paths, plan_file = _setup(
        tmp_path,
        [
            {"id": "1", "description": "first", "parallel": True},
            {"id": "2", "description": "second", "parallel": True},
        ],
    )
    config = _config(parallel=True, max_parallel=2, args=("-c", WRITER, "{step_ids}", "README.md", "2"))

    outcome = PlanRunner(plan_file, paths, config).run()

    assert outcome.archived
    assert outcome.outcome == "partial"
    assert outcome.completed == ["1"]
    assert list(outcome.blocked) == ["2"]
    assert outcome.blocked["2"].startswith("Reintegration conflict replaying")
    assert "README.md" in outcome.blocked["2"]
    assert (tmp_path / "README.md").read_text() == "written by 1\n"
    assert not subprocess.run(
        ["git", "status", "--porcelain", "--untracked-files=no"], cwd=tmp_path, check=True, capture_output=True, text=True
    ).stdout.strip()
    branches = subprocess.run(["git", "branch"], cwd=tmp_path, check=True, capture_output=True, text=True).stdout
    assert "main-wt-2-" in branches
    assert "main-wt-1-" not in branches


def test_parallel_step_waits_for_running_serial_step_before_landing(tmp_path: Path) -> None:
    _git_init(tmp_path)
    paths, plan_file = _setup(
        tmp_path,
        [
            {"id": "1", "description": "quick", "parallel": True},
            {"id": "2", "description": "slow"},
        ],
    )
    config = _config(parallel=True, max_parallel=2, args=("-c", WRITER, "{step_ids}", "", "2"))
    messages: list[str] = []
    handler = logger.add(messages.append, level="DEBUG", format="{message}")
    try:
        outcome = PlanRunner(plan_file, paths, config).run()
    finally:
        logger.remove(handler)

    assert outcome.successful
    assert (tmp_path / "out-1.txt").read_text() == "written by 1\n"
    assert (tmp_path / "out-2.txt").read_text() == "written by 2\n"
    assert any("Deferring reintegration of ['1']" in message for message in messages)
    # The serial step's commit lands first; the parallel step is replayed on top of it.
    assert _log(tmp_path)[:2] == ["feat: complete step 1", "feat: complete step 2"]
