"""Load orchestrator configuration from defaults, `config.yaml`, and the environment."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .constants import (
    AGENT_TIMEOUT_ENV,
    CONFIG_FILE,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_API_ERROR_PATTERNS,
    DEFAULT_MAX_PARALLEL,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    DEFAULT_REVIEW_MAX_ITERATIONS,
    DEFAULT_TOKEN_LIMIT_PATTERNS,
    PARALLEL_ENABLED_ENV,
    PARALLEL_MAX_ENV,
    REVIEW_ENABLED_ENV,
    REVIEW_MAX_ITERATIONS_ENV,
)
from .io_utils import _load_data_with_error

REPORT_FORMAT_INSTRUCTIONS = """## Output Contract

Output one JSON object per step to stdout. You may output multiple objects if processing multiple steps.

Success Example:
{"stepId": "step-1", "status": "complete", "summary": "Implemented login", "artifacts": ["src/auth.py"], "testResults": "5/5 passed", "commitMessage": "feat: add user authentication"}

Blocked Example:
{"stepId": "step-2", "status": "blocked", "blockedReason": "API is down", "summary": "Could not verify"}

Rules:
- JSON must be valid and on a single line.
- Do not wrap in markdown blocks (just raw JSON).
- Each step result must be a separate JSON object."""

WORKER_PROMPT = f"""You are a Worker Agent executing plan steps.

Plan file: {{plan_file}}
Steps to execute: {{step_ids}}

## Workflow

For each step:

1. Read the plan file to understand the step's requirements, criteria, and files
2. Execute: Implement the changes following project conventions. Commit your work.
3. Verify: Run tests and confirm acceptance criteria are met. Fix issues before proceeding.
4. Report: Output a JSON result for the step (see format below)

{REPORT_FORMAT_INSTRUCTIONS}

## Exit Codes

- Exit 0: All steps completed successfully
- Exit 1: One or more steps blocked

## Rules

- The plan file is READ-ONLY, never modify it
- Complete each step fully before starting the next
- Output clean JSON to stdout with no extra text or markdown wrapping"""

REVIEW_PROMPT = """You are a Review Agent checking work another agent just finished.

Plan file: {plan_file}
Steps to review: {step_ids}

## Workflow

1. Read the plan file for each step's requirements and acceptance criteria
2. Inspect the changes made for those steps (git diff, new files, tests)
3. Decide whether the work meets the criteria and project conventions

## Output Contract

Output exactly one JSON object to stdout:
{"status": "approved", "feedback": []}
or
{"status": "needs_changes", "feedback": [{"severity": "blocking", "file": "src/auth.py", "line": 42, "comment": "Password is logged in plain text"}]}

Rules:
- severity is "blocking" or "suggestion"; file and line are optional.
- Do not modify any files.
- Output clean JSON with no extra text."""


@dataclass(frozen=True)
class AgentSpec:
    """One worker backend: an executable plus an argument template."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    # Backend writes progress chatter to stderr and the final report to stdout.
    stderr_is_progress: bool = False


@dataclass(frozen=True)
class FailoverConfig:
    enabled: bool = True
    timeout_seconds: Optional[float] = DEFAULT_AGENT_TIMEOUT_SECONDS
    idle_timeout_seconds: Optional[float] = None
    api_error_patterns: tuple[str, ...] = DEFAULT_API_ERROR_PATTERNS
    token_limit_patterns: tuple[str, ...] = DEFAULT_TOKEN_LIMIT_PATTERNS

    def compiled(self) -> dict[str, list[re.Pattern[str]]]:
        return {
            "api_error": [re.compile(p) for p in self.api_error_patterns],
            "token_limit": [re.compile(p) for p in self.token_limit_patterns],
        }


@dataclass(frozen=True)
class ConcurrencyConfig:
    max_parallel: int = DEFAULT_MAX_PARALLEL
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    parallel_enabled: bool = False


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS


@dataclass(frozen=True)
class ReviewConfig:
    """Optional review/edit pass run on each step a worker reports complete."""

    enabled: bool = False
    max_iterations: int = DEFAULT_REVIEW_MAX_ITERATIONS
    prompt: str = REVIEW_PROMPT


@dataclass(frozen=True)
class LoggingConfig:
    stream_output: bool = False
    failure_log: Optional[str] = "failures.log"
    timeout_log: Optional[str] = "timeouts.log"


def _default_agents() -> dict[str, AgentSpec]:
    return {
        "claude": AgentSpec(
            name="claude",
            command="claude",
            args=("--model", "sonnet", "--dangerously-skip-permissions", "-p", WORKER_PROMPT),
        ),
        "codex": AgentSpec(
            name="codex",
            command="codex",
            args=("exec", "--yolo", WORKER_PROMPT),
            stderr_is_progress=True,
        ),
        "gemini": AgentSpec(
            name="gemini",
            command="gemini",
            args=("--yolo", "-p", WORKER_PROMPT),
            stderr_is_progress=True,
        ),
    }


@dataclass(frozen=True)
class OrchestratorConfig:
    """Resolved configuration for one orchestration run."""

    agents: dict[str, AgentSpec] = field(default_factory=_default_agents)
    default_agent: str = "codex"
    agent_priority: tuple[str, ...] = ("codex", "gemini", "claude")
    failover: FailoverConfig = field(default_factory=FailoverConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)

    def agent_chain(self) -> list[AgentSpec]:
        """Backends to try, in order, for one batch."""
        if not self.failover.enabled:
            name = self.default_agent if self.default_agent in self.agents else next(iter(self.agents), "")
            if not name:
                raise ValueError("No agents configured")
            return [self.agents[name]]
        names = list(self.agent_priority) or [self.default_agent]
        chain: list[AgentSpec] = []
        seen: set[str] = set()
        for name in names:
            if name in self.agents and name not in seen:
                seen.add(name)
                chain.append(self.agents[name])
        if not chain:
            raise ValueError("No agents configured")
        return chain


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str_tuple(value: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    if not isinstance(value, list):
        return default
    return tuple(str(item) for item in value if isinstance(item, (str, int, float)))


def _positive_number(value: Any, default: Optional[float]) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value) if value > 0 else default


def parse_env_boolean(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    return None


def parse_env_integer(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _parse_agents(raw: dict[str, Any], base: dict[str, AgentSpec]) -> dict[str, AgentSpec]:
    agents = dict(base)
    for name, item in raw.items():
        if not isinstance(name, str) or not name.strip():
            continue
        item = _as_dict(item)
        existing = agents.get(name)
        command = str(item.get("command") or (existing.command if existing else "")).strip()
        if not command:
            logger.warning("Ignoring agent '{}' without a command", name)
            continue
        args = _as_str_tuple(item.get("args"), existing.args if existing else ())
        stderr_is_progress = item.get("stderr_is_progress")
        if not isinstance(stderr_is_progress, bool):
            stderr_is_progress = existing.stderr_is_progress if existing else False
        agents[name] = AgentSpec(name=name, command=command, args=args, stderr_is_progress=stderr_is_progress)
    return agents


def config_from_dict(data: dict[str, Any], base: Optional[OrchestratorConfig] = None) -> OrchestratorConfig:
    """Overlay a nested config mapping (as found in `config.yaml`) on `base`."""
    base = base or OrchestratorConfig()
    agents = _parse_agents(_as_dict(data.get("agents")), base.agents)

    default_agent = str(data.get("default_agent") or base.default_agent).strip() or base.default_agent
    agent_priority = _as_str_tuple(data.get("agent_priority"), base.agent_priority)

    fo = _as_dict(data.get("failover"))
    failover = FailoverConfig(
        enabled=fo["enabled"] if isinstance(fo.get("enabled"), bool) else base.failover.enabled,
        timeout_seconds=_positive_number(fo.get("timeout_seconds"), base.failover.timeout_seconds),
        idle_timeout_seconds=_positive_number(fo.get("idle_timeout_seconds"), base.failover.idle_timeout_seconds),
        api_error_patterns=_as_str_tuple(
            _as_dict(fo.get("error_patterns")).get("api_error"), base.failover.api_error_patterns
        ),
        token_limit_patterns=_as_str_tuple(
            _as_dict(fo.get("error_patterns")).get("token_limit"), base.failover.token_limit_patterns
        ),
    )

    cc = _as_dict(data.get("concurrency"))
    max_parallel = cc.get("max_parallel")
    concurrency = ConcurrencyConfig(
        max_parallel=int(max_parallel) if isinstance(max_parallel, int) and max_parallel > 0 else base.concurrency.max_parallel,
        poll_interval_seconds=_positive_number(cc.get("poll_interval_seconds"), base.concurrency.poll_interval_seconds)
        or base.concurrency.poll_interval_seconds,
        parallel_enabled=cc["parallel_enabled"]
        if isinstance(cc.get("parallel_enabled"), bool)
        else base.concurrency.parallel_enabled,
    )

    rt = _as_dict(data.get("retry"))
    max_attempts = rt.get("max_attempts")
    backoff = rt.get("backoff_seconds")
    retry = RetryConfig(
        max_attempts=int(max_attempts) if isinstance(max_attempts, int) and max_attempts > 0 else base.retry.max_attempts,
        backoff_seconds=float(backoff) if isinstance(backoff, (int, float)) and backoff >= 0 else base.retry.backoff_seconds,
    )

    lg = _as_dict(data.get("logging"))
    logging_cfg = LoggingConfig(
        stream_output=lg["stream_output"] if isinstance(lg.get("stream_output"), bool) else base.logging.stream_output,
        failure_log=str(lg["failure_log"]) if lg.get("failure_log") else base.logging.failure_log,
        timeout_log=str(lg["timeout_log"]) if lg.get("timeout_log") else base.logging.timeout_log,
    )

    rv = _as_dict(data.get("review"))
    review_iterations = rv.get("max_iterations")
    review = ReviewConfig(
        enabled=rv["enabled"] if isinstance(rv.get("enabled"), bool) else base.review.enabled,
        max_iterations=int(review_iterations)
        if isinstance(review_iterations, int) and not isinstance(review_iterations, bool) and review_iterations > 0
        else base.review.max_iterations,
        prompt=str(rv["prompt"]) if isinstance(rv.get("prompt"), str) and rv["prompt"].strip() else base.review.prompt,
    )

    return OrchestratorConfig(
        agents=agents,
        default_agent=default_agent,
        agent_priority=agent_priority,
        failover=failover,
        concurrency=concurrency,
        retry=retry,
        logging=logging_cfg,
        review=review,
    )


def apply_env_overrides(config: OrchestratorConfig, env: Optional[Mapping[str, str]] = None) -> OrchestratorConfig:
    env = os.environ if env is None else env
    concurrency = config.concurrency
    failover = config.failover
    review = config.review

    parallel_enabled = parse_env_boolean(env.get(PARALLEL_ENABLED_ENV))
    if parallel_enabled is not None:
        concurrency = replace(concurrency, parallel_enabled=parallel_enabled)
    parallel_max = parse_env_integer(env.get(PARALLEL_MAX_ENV))
    if parallel_max is not None:
        concurrency = replace(concurrency, max_parallel=parallel_max)
    timeout = parse_env_integer(env.get(AGENT_TIMEOUT_ENV))
    if timeout is not None:
        failover = replace(failover, timeout_seconds=float(timeout))

    review_enabled = parse_env_boolean(env.get(REVIEW_ENABLED_ENV))
    if review_enabled is not None:
        review = replace(review, enabled=review_enabled)
    review_iterations = parse_env_integer(env.get(REVIEW_MAX_ITERATIONS_ENV))
    if review_iterations is not None:
        review = replace(review, max_iterations=review_iterations)

    return replace(config, concurrency=concurrency, failover=failover, review=review)


def load_config(
    work_dir: Path,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> tuple[OrchestratorConfig, str | None]:
    """Load defaults, then `<work_dir>/config.yaml`, then environment overrides.

    Args:
        work_dir: Orchestrator work directory (holds `config.yaml`).
        env: Environment mapping; defaults to `os.environ`.

    Returns:
        A tuple of `(config, error_message)`. A config file that fails to parse
        is reported and ignored so a typo never silently changes behaviour.
    """
    path = work_dir / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    config = config_from_dict(data) if not err else OrchestratorConfig()
    return apply_env_overrides(config, env), err
