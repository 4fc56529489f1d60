"""Error taxonomy for the steward worker.

Components raise typed errors on expected failures. Every error carries a
stable ``category`` and a ``recoverable`` flag so the worker loop and the
retry executor can decide between retrying, skipping the claim, or stopping
the process. Programmer bugs raise normal exceptions.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Sequence

ErrorCategory = Literal[
    "configuration",
    "authentication",
    "network",
    "workspace",
    "git",
    "tree",
    "execution",
]


class StewardError(Exception):
    """Base class for expected worker failures."""

    category: ErrorCategory = "execution"
    recoverable: bool = False

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__(message)
        self.recovery_hint = recovery_hint


class ConfigurationError(StewardError):
    """Configuration is missing or invalid; fatal at startup."""

    category = "configuration"


class AuthenticationError(StewardError):
    """Credentials were rejected, expired, or never linked. Never retried."""

    category = "authentication"


class RemoteApiError(StewardError):
    """The remote task queue answered with an error status."""

    category = "network"

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"remote API error {status_code}: {message}")
        self.status_code = status_code
        self.recoverable = status_code >= 500


class GitCommandError(StewardError):
    """A git invocation exited non-zero."""

    category = "git"

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str) -> None:
        command = " ".join(argv)
        detail = stderr.strip()
        message = f"git command failed ({returncode}): {command}"
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(message)
        self.argv = tuple(argv)
        self.returncode = returncode
        self.stderr = stderr


class WorkspaceError(StewardError):
    """Base for workspace provisioning and cache failures."""

    category = "workspace"


class CloneError(WorkspaceError):
    """Cloning a repository failed."""

    def __init__(self, repository_url: str, detail: str) -> None:
        super().__init__(f"failed to clone {repository_url}: {detail}")
        self.repository_url = repository_url
        self.detail = detail


class BranchResolutionError(WorkspaceError):
    """Probing or checking out the target branch failed."""

    def __init__(self, repository_url: str, branch: str, detail: str) -> None:
        super().__init__(f"failed to resolve branch {branch!r} in {repository_url}: {detail}")
        self.repository_url = repository_url
        self.branch = branch
        self.detail = detail


class UpdateError(WorkspaceError):
    """Refreshing a cached working tree in place failed."""

    recoverable = True

    def __init__(self, workspace_path: Path, detail: str) -> None:
        super().__init__(f"failed to update {workspace_path}: {detail}")
        self.workspace_path = workspace_path
        self.detail = detail


class CorruptedWorkspaceError(WorkspaceError):
    """A cache entry exists but is not a usable working tree."""

    recoverable = True

    def __init__(self, workspace_path: Path, reason: str) -> None:
        super().__init__(f"corrupted workspace {workspace_path}: {reason}")
        self.workspace_path = workspace_path
        self.reason = reason


class MultiRepoCloneError(WorkspaceError):
    """One repository of a multi-repo workspace failed to provision."""

    def __init__(self, repository_url: str, cause: BaseException) -> None:
        super().__init__(f"multi-repo workspace failed on {repository_url}: {cause}")
        self.repository_url = repository_url
        self.cause = cause


class UnsafeWorkspacePathError(WorkspaceError):
    """Refused to remove a path that is not a direct child of the cache root."""

    def __init__(self, path: Path, root: Path) -> None:
        super().__init__(f"refusing to remove {path}: not a workspace under {root}")
        self.path = path
        self.root = root


class InsufficientDiskSpaceError(WorkspaceError):
    """Not enough free space on the target filesystem to clone."""

    def __init__(self, path: Path, required_bytes: int, available_bytes: int) -> None:
        super().__init__(
            f"insufficient disk space at {path}: "
            f"{available_bytes} bytes free, {required_bytes} required",
            recovery_hint="free disk space or lower workspace.min_free_bytes",
        )
        self.path = path
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class TreeResolutionError(StewardError):
    """The task tree could not be resolved to an actionable node."""

    category = "tree"

    def __init__(self, action_id: str, detail: str) -> None:
        super().__init__(f"cannot resolve tree at {action_id}: {detail}")
        self.action_id = action_id
        self.detail = detail


class ExecutionError(StewardError):
    """The external execution capability exited non-zero."""

    category = "execution"

    def __init__(self, provider: str, exit_code: int) -> None:
        super().__init__(f"{provider} execution failed with exit code {exit_code}")
        self.provider = provider
        self.exit_code = exit_code


def is_fatal(error: BaseException) -> bool:
    """Return whether an error must stop the worker process."""
    return isinstance(error, (AuthenticationError, ConfigurationError))
