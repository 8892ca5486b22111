"""Test worker invocation and backend failover with stand-in agent processes."""

from __future__ import annotations

import sys
import textwrap
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from orrery.config import AgentSpec, FailoverConfig, LoggingConfig, OrchestratorConfig, RetryConfig
from orrery.constants import (
    FAILOVER_REASON_API_ERROR,
    FAILOVER_REASON_COMMAND_NOT_FOUND,
    FAILOVER_REASON_IDLE,
    FAILOVER_REASON_TIMEOUT,
    TIMEOUT_EXIT_CODE,
)
from orrery.io_utils import _read_ndjson
from orrery.models import StepStatus
from orrery.workers import BatchHandle, format_args, invoke_agent, invoke_with_failover, submit_batch, wait_for_any

REPORT_OK = """
import json, sys
for step_id in sys.argv[1].split(","):
    print(json.dumps({"stepId": step_id, "status": "complete", "summary": "done by " + sys.argv[2]}))
"""

API_ERROR = """
import sys
sys.stderr.write("API error: 503 Service Unavailable\\n")
sys.exit(1)
"""

BLOCKED = """
import json, sys
print(json.dumps({"stepId": sys.argv[1], "status": "blocked", "blockedReason": "tests fail"}))
sys.exit(1)
"""

SLEEPER = """
import time
time.sleep(30)
"""


def _agent(name: str, script: str) -> AgentSpec:
    return AgentSpec(name=name, command=sys.executable, args=("-c", textwrap.dedent(script), "{step_ids}", name))


def _config(*agents: AgentSpec, **failover: object) -> OrchestratorConfig:
    return OrchestratorConfig(
        agents={agent.name: agent for agent in agents},
        default_agent=agents[0].name,
        agent_priority=tuple(agent.name for agent in agents),
        failover=FailoverConfig(**failover),
        retry=RetryConfig(max_attempts=1, backoff_seconds=0),
        logging=LoggingConfig(),
    )


def test_format_args_substitutes_placeholders_only() -> None:
    args = format_args(("--plan={plan_file}", 'emit {"stepId": "{step_ids}"}'), Path("/tmp/p.yaml"), ["1", "2"])
    assert args == ["--plan=/tmp/p.yaml", 'emit {"stepId": "1,2"}']


def test_invoke_agent_captures_output(tmp_path: Path) -> None:
    seen: list[tuple[str, str]] = []
    handle = invoke_agent(
        _agent("alpha", REPORT_OK),
        tmp_path / "plan.yaml",
        ["1"],
        tmp_path,
        on_output=lambda agent, stream, text: seen.append((agent, stream)),
    )
    result = handle.wait(timeout_seconds=30)

    assert result.succeeded
    assert '"stepId": "1"' in result.stdout
    assert ("alpha", "stdout") in seen


def test_first_healthy_agent_handles_the_batch(tmp_path: Path) -> None:
    config = _config(_agent("alpha", REPORT_OK), _agent("beta", REPORT_OK))
    outcome = invoke_with_failover(config, tmp_path / "plan.yaml", ["1", "2"], tmp_path, log_dir=tmp_path)

    assert outcome.agent == "alpha"
    assert outcome.attempts == []
    assert [r.summary for r in outcome.results] == ["done by alpha", "done by alpha"]


def test_missing_command_fails_over(tmp_path: Path) -> None:
    missing = AgentSpec(name="ghost", command="orrery-no-such-binary-xyz", args=("{step_ids}",))
    config = _config(missing, _agent("beta", REPORT_OK))
    outcome = invoke_with_failover(config, tmp_path / "plan.yaml", ["1"], tmp_path, log_dir=tmp_path)

    assert outcome.agent == "beta"
    assert [(a.agent, a.reason) for a in outcome.attempts] == [("ghost", FAILOVER_REASON_COMMAND_NOT_FOUND)]
    assert outcome.results[0].ok


def test_api_error_fails_over_and_logs_failure(tmp_path: Path) -> None:
    config = _config(_agent("alpha", API_ERROR), _agent("beta", REPORT_OK))
    outcome = invoke_with_failover(config, tmp_path / "plan.yaml", ["1"], tmp_path, log_dir=tmp_path)

    assert outcome.agent == "beta"
    assert outcome.attempts[0].reason == FAILOVER_REASON_API_ERROR
    entries = _read_ndjson(tmp_path / "failures.log")
    assert entries[0]["agent"] == "alpha"
    assert entries[0]["exitCode"] == 1
    assert "API error" in entries[0]["stderr"]


def test_blocked_report_does_not_fail_over(tmp_path: Path) -> None:
    config = _config(_agent("alpha", BLOCKED), _agent("beta", REPORT_OK))
    outcome = invoke_with_failover(config, tmp_path / "plan.yaml", ["1"], tmp_path, log_dir=tmp_path)

    assert outcome.agent == "alpha"
    assert outcome.results[0].status is StepStatus.BLOCKED
    assert outcome.results[0].blocked_reason == "tests fail"


def test_timeout_kills_worker_and_fails_over(tmp_path: Path) -> None:
    config = _config(_agent("slow", SLEEPER), _agent("beta", REPORT_OK), timeout_seconds=0.5)
    started = time.monotonic()
    outcome = invoke_with_failover(config, tmp_path / "plan.yaml", ["1"], tmp_path, log_dir=tmp_path)

    assert time.monotonic() - started < 20
    assert outcome.agent == "beta"
    assert outcome.attempts[0].reason == FAILOVER_REASON_TIMEOUT
    assert outcome.attempts[0].exit_code == TIMEOUT_EXIT_CODE
    timeouts = _read_ndjson(tmp_path / "timeouts.log")
    assert timeouts[0]["agent"] == "slow"
    assert timeouts[0]["reason"] == FAILOVER_REASON_TIMEOUT


def test_idle_timeout_fails_over(tmp_path: Path) -> None:
    config = _config(_agent("quiet", SLEEPER), _agent("beta", REPORT_OK), idle_timeout_seconds=0.5)
    outcome = invoke_with_failover(config, tmp_path / "plan.yaml", ["1"], tmp_path, log_dir=tmp_path)

    assert outcome.agent == "beta"
    assert outcome.attempts[0].reason == FAILOVER_REASON_IDLE


def test_all_agents_failing_blocks_every_step(tmp_path: Path) -> None:
    config = _config(
        AgentSpec(name="ghost", command="orrery-no-such-binary-xyz"),
        _agent("alpha", API_ERROR),
    )
    outcome = invoke_with_failover(config, tmp_path / "plan.yaml", ["1", "2"], tmp_path, log_dir=tmp_path)

    assert outcome.agent is None
    assert [r.step_id for r in outcome.results] == ["1", "2"]
    for result in outcome.results:
        assert result.status is StepStatus.BLOCKED
        assert result.blocked_reason == "All agents failed (ghost: command_not_found; alpha: api_error)"


def test_cancel_stops_a_running_batch(tmp_path: Path) -> None:
    config = _config(_agent("slow", SLEEPER))
    with ThreadPoolExecutor(max_workers=1) as executor:
        handle = submit_batch(executor, config, tmp_path / "plan.yaml", ["1"], tmp_path, log_dir=tmp_path)
        time.sleep(0.5)
        handle.cancel()
        outcome = handle.future.result(timeout=20)

    assert outcome.cancelled
    assert outcome.results[0].status is StepStatus.BLOCKED


def test_wait_for_any_returns_one_finished_handle(tmp_path: Path) -> None:
    config = _config(_agent("alpha", REPORT_OK))
    slow = _config(_agent("slow", SLEEPER))
    with ThreadPoolExecutor(max_workers=2) as executor:
        stuck = submit_batch(executor, slow, tmp_path / "plan.yaml", ["9"], tmp_path, log_dir=tmp_path)
        quick = submit_batch(executor, config, tmp_path / "plan.yaml", ["1"], tmp_path, log_dir=tmp_path)

        assert wait_for_any([stuck, quick], timeout=20) is quick
        assert not stuck.done
        stuck.cancel()

    assert wait_for_any([], timeout=0.1) is None
    assert quick.result().results[0].ok


def test_logs_name_the_source_plan_not_the_condensed_copy(tmp_path: Path) -> None:
    config = _config(_agent("alpha", API_ERROR), _agent("slow", SLEEPER), timeout_seconds=0.5)
    condensed = tmp_path / ".orrery-plan-1a2b.yaml"
    with ThreadPoolExecutor(max_workers=1) as executor:
        handle = submit_batch(
            executor,
            config,
            condensed,
            ["1"],
            tmp_path,
            log_dir=tmp_path,
            source_plan=tmp_path / "2026-01-11-add-login.yaml",
        )
        handle.result()

    assert _read_ndjson(tmp_path / "failures.log")[0]["planFile"] == "2026-01-11-add-login.yaml"
    assert _read_ndjson(tmp_path / "timeouts.log")[0]["planFile"] == "2026-01-11-add-login.yaml"


def test_result_before_submission_is_an_error() -> None:
    with pytest.raises(RuntimeError, match="never submitted"):
        BatchHandle(["1"]).result()
