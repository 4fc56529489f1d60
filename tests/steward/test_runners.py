from __future__ import annotations

from pathlib import Path

import pytest

from steward import runners
from steward.errors import ConfigurationError
from steward.exec import CommandExecutionError, CommandRequest, CommandResult
from steward.models import GitCredentials, RunnerConfig
from steward.runners import (
    ClaudeRunner,
    CodexRunner,
    ExecutionRequest,
    child_environment,
    create_runner,
    require_capabilities,
)
from tests.steward.helpers import MissingExecutableRunner, make_credentials


class CapturingRunner:
    def __init__(self, returncode: int = 0, *, timed_out: bool = False) -> None:
        self.returncode = returncode
        self.timed_out = timed_out
        self.requests: list[CommandRequest] = []

    def run(self, request: CommandRequest) -> CommandResult:
        self.requests.append(request)
        return CommandResult(request.argv, self.returncode, timed_out=self.timed_out)


DEFAULT_CREDENTIALS = make_credentials()


def make_request(
    tmp_path: Path,
    *,
    credentials: GitCredentials | None = DEFAULT_CREDENTIALS,
    env: dict[str, str] | None = None,
) -> ExecutionRequest:
    return ExecutionRequest(
        prompt="Execute action act-1",
        working_directory=tmp_path,
        credentials=credentials,
        env=env or {},
    )


def test_claude_runner_command(tmp_path: Path) -> None:
    capture = CapturingRunner()
    runner = ClaudeRunner(
        RunnerConfig(provider="claude", model="opus", options=("--max-turns", "40"), timeout=60),
        runner=capture,
    )

    result = runner.execute(make_request(tmp_path))

    assert result.exit_code == 0
    request = capture.requests[0]
    assert request.argv == (
        "claude",
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        "opus",
        "--max-turns",
        "40",
        "Execute action act-1",
    )
    assert request.cwd == tmp_path
    assert request.capture_output is False
    assert request.timeout_seconds == 60


def test_codex_runner_command(tmp_path: Path) -> None:
    capture = CapturingRunner(returncode=2)
    runner = CodexRunner(RunnerConfig(provider="codex"), runner=capture)

    result = runner.execute(make_request(tmp_path))

    assert result.exit_code == 2
    request = capture.requests[0]
    assert request.argv[:2] == ("codex", "exec")
    assert request.argv[request.argv.index("--cd") + 1] == str(tmp_path)
    assert request.argv[-1] == "Execute action act-1"
    assert request.cwd is None


def test_timeout_is_reported(tmp_path: Path) -> None:
    runner = ClaudeRunner(runner=CapturingRunner(returncode=124, timed_out=True))

    result = runner.execute(make_request(tmp_path))

    assert result.timed_out
    assert result.exit_code == 124


def test_missing_cli_raises(tmp_path: Path) -> None:
    runner = ClaudeRunner(runner=MissingExecutableRunner())

    with pytest.raises(CommandExecutionError, match="claude"):
        runner.execute(make_request(tmp_path))


def test_child_environment_exports_git_token(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("STEWARD_API_TOKEN", "worker-secret")
    monkeypatch.setenv("STEWARD_GIT_TOKEN", "worker-git")
    monkeypatch.setenv("CODEX_SANDBOX", "seatbelt")
    monkeypatch.setenv("PATH", "/usr/bin")

    env = child_environment(make_request(tmp_path, env={"EXTRA": "1"}))

    assert env["GITHUB_TOKEN"] == "ghs_secret"
    assert env["GH_TOKEN"] == "ghs_secret"
    assert env["EXTRA"] == "1"
    assert env["PATH"] == "/usr/bin"
    assert "STEWARD_API_TOKEN" not in env
    assert "STEWARD_GIT_TOKEN" not in env
    assert env["CODEX_SANDBOX"] == "seatbelt"


def test_codex_drops_sandbox_markers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CODEX_SANDBOX", "seatbelt")
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    capture = CapturingRunner()

    CodexRunner(runner=capture).execute(make_request(tmp_path, credentials=None))

    env = capture.requests[0].env
    assert env is not None
    assert "CODEX_SANDBOX" not in env
    assert "GITHUB_TOKEN" not in env


def test_create_runner_selects_provider() -> None:
    assert isinstance(create_runner(), ClaudeRunner)
    assert isinstance(create_runner("codex"), CodexRunner)
    assert create_runner(RunnerConfig(provider="codex")).provider == "codex"


def test_create_runner_rejects_unknown_provider() -> None:
    with pytest.raises(ConfigurationError, match="unsupported provider"):
        create_runner("gemini")  # type: ignore[arg-type]


def test_require_capabilities() -> None:
    codex = create_runner("codex")

    require_capabilities(codex, [runners.GIT_OPERATIONS], context="action a")
    with pytest.raises(ConfigurationError, match="full_access_execution"):
        require_capabilities(codex, [runners.FULL_ACCESS_EXECUTION], context="action a")
