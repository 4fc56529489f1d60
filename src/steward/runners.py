"""Execution capabilities that run a prompt inside a workspace.

Each provider is its own class exposing ``provider``, ``capabilities`` and
``execute``; the worker only depends on that shape.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Protocol

from pydantic import ValidationError

from . import exec as exec_util
from . import log
from .errors import ConfigurationError
from .models import GitCredentials, Provider, RunnerConfig

FULL_ACCESS_EXECUTION = "full_access_execution"
GIT_OPERATIONS = "git_operations"
FILE_OPERATIONS = "file_operations"
SHELL_EXECUTION = "shell_execution"
NETWORK_ACCESS = "network_access"
STREAMING_LOGS = "streaming_logs"

_CODEX_SANDBOX_ENV = ("CODEX_SANDBOX", "CODEX_SANDBOX_NETWORK_DISABLED", "CODEX_SANDBOX_POLICY")
_WORKER_SECRET_ENV = ("STEWARD_API_TOKEN", "STEWARD_GIT_TOKEN")


@dataclass(frozen=True)
class ExecutionRequest:
    prompt: str
    working_directory: Path
    credentials: GitCredentials | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    action_id: str | None = None


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    timed_out: bool = False


class ExecutionCapability(Protocol):
    provider: str
    capabilities: frozenset[str]

    def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


def child_environment(
    request: ExecutionRequest, *, drop: Iterable[str] = ()
) -> dict[str, str]:
    """Environment for the child process.

    The git token is exported for ``git push``/``gh``; the worker's own API
    secrets are removed.
    """
    env = {key: value for key, value in os.environ.items() if key not in _WORKER_SECRET_ENV}
    for key in drop:
        env.pop(key, None)
    if request.credentials is not None:
        token = request.credentials.secret
        env["GITHUB_TOKEN"] = token
        env["GH_TOKEN"] = token
    env.update(request.env)
    return env


def _run(
    argv: list[str],
    env: dict[str, str],
    *,
    cwd: Path | None,
    timeout: float | None,
    runner: exec_util.CommandRunner | None,
) -> ExecutionResult:
    result = exec_util.run_required(
        exec_util.CommandRequest(
            argv=tuple(argv),
            cwd=cwd,
            env=env,
            capture_output=False,
            timeout_seconds=timeout,
        ),
        runner=runner,
    )
    if result.timed_out:
        log.error(f"{argv[0]} timed out after {timeout}s")
    else:
        log.debug(f"{argv[0]} exited {result.returncode} after {result.duration_seconds:.0f}s")
    return ExecutionResult(exit_code=result.returncode, timed_out=result.timed_out)


class ClaudeRunner:
    """Run the ``claude`` CLI non-interactively in the workspace."""

    provider = "claude"
    capabilities = frozenset(
        {
            FULL_ACCESS_EXECUTION,
            GIT_OPERATIONS,
            FILE_OPERATIONS,
            SHELL_EXECUTION,
            NETWORK_ACCESS,
            STREAMING_LOGS,
        }
    )

    def __init__(
        self,
        config: RunnerConfig | None = None,
        *,
        runner: exec_util.CommandRunner | None = None,
    ) -> None:
        self.config = config or RunnerConfig(provider="claude")
        self._runner = runner

    def build_command(self, request: ExecutionRequest) -> list[str]:
        cmd = ["claude", "-p", "--output-format", "stream-json", "--verbose"]
        if self.config.model:
            cmd.extend(["--model", self.config.model])
        cmd.extend(self.config.options)
        cmd.append(request.prompt)
        return cmd

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        return _run(
            self.build_command(request),
            child_environment(request),
            cwd=request.working_directory,
            timeout=self.config.timeout,
            runner=self._runner,
        )


class CodexRunner:
    """Run ``codex exec`` with a workspace-write sandbox."""

    provider = "codex"
    capabilities = frozenset(
        {GIT_OPERATIONS, FILE_OPERATIONS, SHELL_EXECUTION, STREAMING_LOGS}
    )

    def __init__(
        self,
        config: RunnerConfig | None = None,
        *,
        runner: exec_util.CommandRunner | None = None,
    ) -> None:
        self.config = config or RunnerConfig(provider="codex")
        self._runner = runner

    def build_command(self, request: ExecutionRequest) -> list[str]:
        cmd = [
            "codex",
            "exec",
            "--json",
            "--sandbox",
            "workspace-write",
            "--full-auto",
            "--skip-git-repo-check",
            "--cd",
            str(request.working_directory),
        ]
        if self.config.model:
            cmd.extend(["--model", self.config.model])
        cmd.extend(self.config.options)
        cmd.append(request.prompt)
        return cmd

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        return _run(
            self.build_command(request),
            child_environment(request, drop=_CODEX_SANDBOX_ENV),
            cwd=None,
            timeout=self.config.timeout,
            runner=self._runner,
        )


def create_runner(
    config: RunnerConfig | Provider | None = None,
    *,
    runner: exec_util.CommandRunner | None = None,
) -> ExecutionCapability:
    """Return the execution capability for a provider name or config."""
    if config is None:
        config = RunnerConfig()
    elif isinstance(config, str):
        try:
            config = RunnerConfig(provider=config)
        except ValidationError as exc:
            raise ConfigurationError(f"unsupported provider: {config}") from exc
    if config.provider == "claude":
        return ClaudeRunner(config, runner=runner)
    if config.provider == "codex":
        return CodexRunner(config, runner=runner)
    raise ConfigurationError(f"unsupported provider: {config.provider}")


def require_capabilities(
    capability: ExecutionCapability, required: Iterable[str], *, context: str
) -> None:
    """Raise when ``capability`` lacks any of ``required``."""
    missing = sorted(set(required) - set(capability.capabilities))
    if missing:
        raise ConfigurationError(
            f"{context} requires {', '.join(missing)}, "
            f"but provider {capability.provider!r} does not support it"
        )
