"""Subprocess boundary for git and the execution capabilities.

Everything that spawns a process goes through a ``CommandRunner`` so tests
can script results without touching the system.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol

TIMEOUT_RETURNCODE = 124


@dataclass(frozen=True)
class CommandRequest:
    """One process invocation.

    ``env`` replaces the inherited environment when set. With
    ``capture_output`` off the child writes straight to the worker's
    terminal, which is how agent runs stream their logs.
    """

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    capture_output: bool = True
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Diagnostic text: stderr when present, otherwise stdout."""
        return (self.stderr or self.stdout or "").strip()


class CommandRunner(Protocol):
    """Runs a request; ``None`` means the executable does not exist."""

    def run(self, request: CommandRequest) -> CommandResult | None: ...


def _text(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else ""


class SubprocessCommandRunner:
    """``CommandRunner`` backed by ``subprocess.run``.

    A timeout kills the child and is reported as exit code 124 with
    ``timed_out`` set rather than raised.
    """

    def run(self, request: CommandRequest) -> CommandResult | None:
        started = time.monotonic()
        try:
            completed = subprocess.run(
                list(request.argv),
                cwd=request.cwd,
                env=dict(request.env) if request.env is not None else None,
                capture_output=request.capture_output,
                text=request.capture_output or None,
                timeout=request.timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return None
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                argv=request.argv,
                returncode=TIMEOUT_RETURNCODE,
                stdout=_text(exc.stdout),
                stderr=_text(exc.stderr) or f"timed out after {request.timeout_seconds}s",
                timed_out=True,
                duration_seconds=time.monotonic() - started,
            )
        return CommandResult(
            argv=request.argv,
            returncode=completed.returncode,
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
            duration_seconds=time.monotonic() - started,
        )


_DEFAULT_COMMAND_RUNNER: CommandRunner = SubprocessCommandRunner()


@dataclass(frozen=True)
class CommandExecutionError(RuntimeError):
    """Raised when a command cannot be started at all."""

    request: CommandRequest
    detail: str

    def __str__(self) -> str:
        return self.detail


def run_with_runner(
    request: CommandRequest, *, runner: CommandRunner | None = None
) -> CommandResult | None:
    return (runner or _DEFAULT_COMMAND_RUNNER).run(request)


def run_required(
    request: CommandRequest, *, runner: CommandRunner | None = None
) -> CommandResult:
    """Run ``request``; a missing executable raises ``CommandExecutionError``.

    Non-zero exits are returned as-is for the caller to map onto its own
    error types.
    """
    result = run_with_runner(request, runner=runner)
    if result is None:
        name = request.argv[0] if request.argv else "<empty>"
        raise CommandExecutionError(request=request, detail=f"missing required command: {name}")
    return result
