"""Start one worker backend process and watch it to completion.

Both pipes are captured and streamed to a callback line by line. A process
that outlives its timeouts or is cancelled gets killed.
"""

from __future__ import annotations

import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from loguru import logger

from ..config import AgentSpec
from ..constants import (
    DEFAULT_KILL_GRACE_SECONDS,
    FAILOVER_REASON_COMMAND_NOT_FOUND,
    FAILOVER_REASON_SPAWN_ERROR,
    TIMEOUT_EXIT_CODE,
)

# (agent_name, stream, text) -> None; stream is "stdout" or "stderr".
OutputCallback = Callable[[str, str, str], None]

_WAIT_POLL_SECONDS = 0.2


class WorkerSpawnError(RuntimeError):
    """Raised when the worker executable cannot be started at all."""

    def __init__(self, agent: str, reason: str, error: OSError):
        super().__init__(f"{agent}: failed to start ({reason}): {error}")
        self.agent = agent
        self.reason = reason
        self.error = error


@dataclass
class InvocationResult:
    agent: str
    step_ids: list[str]
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    idle_timed_out: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0
    command: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not (self.timed_out or self.idle_timed_out or self.cancelled)


def format_args(args: Sequence[str], plan_file: Path, step_ids: Sequence[str]) -> list[str]:
    """Substitute `{plan_file}` and `{step_ids}` into an argument template.

    Plain string replacement so prompts carrying literal JSON braces pass through.
    """
    joined = ",".join(step_ids)
    return [str(arg).replace("{plan_file}", str(plan_file)).replace("{step_ids}", joined) for arg in args]


class WorkerHandle:
    """A running worker process with buffered, streamed output."""

    def __init__(
        self,
        agent: AgentSpec,
        process: subprocess.Popen,
        step_ids: list[str],
        command: list[str],
        on_output: Optional[OutputCallback] = None,
    ) -> None:
        self.agent = agent
        self.process = process
        self.step_ids = step_ids
        self.command = command
        self._on_output = on_output
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._started = time.monotonic()
        self.last_output = self._started
        self._killed_for: Optional[str] = None
        self._threads = [
            threading.Thread(target=self._pump, args=(process.stdout, self._stdout, "stdout"), daemon=True),
            threading.Thread(target=self._pump, args=(process.stderr, self._stderr, "stderr"), daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def done(self) -> bool:
        return self.process.poll() is not None

    def _pump(self, pipe: Any, buffer: list[str], stream: str) -> None:
        for line in iter(pipe.readline, ""):
            buffer.append(line)
            self.last_output = time.monotonic()
            if self._on_output:
                try:
                    self._on_output(self.agent.name, stream, line)
                except Exception as exc:
                    logger.debug("Output callback failed: {}", exc)
        try:
            pipe.close()
        except OSError:
            pass

    def kill(self, reason: str = "cancelled", grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS) -> None:
        if self.done:
            return
        self._killed_for = self._killed_for or reason
        self.process.terminate()
        try:
            self.process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()

    def wait(
        self,
        timeout_seconds: Optional[float] = None,
        idle_timeout_seconds: Optional[float] = None,
    ) -> InvocationResult:
        """Block until the process exits, killing it on total or idle timeout."""
        while True:
            now = time.monotonic()
            if timeout_seconds and now - self._started > timeout_seconds:
                logger.warning("{} exceeded {}s for steps {}; killing", self.agent.name, timeout_seconds, self.step_ids)
                self.kill("timeout")
                break
            if idle_timeout_seconds and now - self.last_output > idle_timeout_seconds:
                logger.warning(
                    "{} produced no output for {}s on steps {}; killing",
                    self.agent.name,
                    idle_timeout_seconds,
                    self.step_ids,
                )
                self.kill("idle")
                break
            try:
                self.process.wait(timeout=_WAIT_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                continue

        for thread in self._threads:
            thread.join(timeout=5)

        exit_code = self.process.poll()
        if self._killed_for in ("timeout", "idle"):
            exit_code = TIMEOUT_EXIT_CODE
        return InvocationResult(
            agent=self.agent.name,
            step_ids=list(self.step_ids),
            exit_code=exit_code,
            stdout="".join(self._stdout),
            stderr="".join(self._stderr),
            timed_out=self._killed_for == "timeout",
            idle_timed_out=self._killed_for == "idle",
            cancelled=self._killed_for == "cancelled",
            duration_seconds=time.monotonic() - self._started,
            command=list(self.command),
        )


def invoke_agent(
    agent: AgentSpec,
    plan_file: Path,
    step_ids: Sequence[str],
    cwd: Path,
    *,
    on_output: Optional[OutputCallback] = None,
    env: Optional[Mapping[str, str]] = None,
) -> WorkerHandle:
    """Start one worker process for `step_ids`.

    Raises:
        WorkerSpawnError: If the executable is missing or cannot be started.
    """
    step_ids = [str(step_id) for step_id in step_ids]
    command = [agent.command, *format_args(agent.args, plan_file, step_ids)]
    process_env = dict(os.environ)
    if env:
        process_env.update(env)
    try:
        process = subprocess.Popen(
            command,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=process_env,
        )
    except FileNotFoundError as exc:
        raise WorkerSpawnError(agent.name, FAILOVER_REASON_COMMAND_NOT_FOUND, exc) from exc
    except OSError as exc:
        raise WorkerSpawnError(agent.name, FAILOVER_REASON_SPAWN_ERROR, exc) from exc
    logger.debug("Started {} (pid {}) for steps {} in {}", agent.name, process.pid, step_ids, cwd)
    return WorkerHandle(agent, process, step_ids, command, on_output)
