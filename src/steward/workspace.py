"""Provision fresh git workspaces for claimed actions."""

from __future__ import annotations

import dataclasses
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable

from . import exec as exec_util
from . import git, log
from .errors import (
    BranchResolutionError,
    CloneError,
    GitCommandError,
    InsufficientDiskSpaceError,
)
from .models import DEFAULT_EXCLUDE_PATTERNS, GitCredentials, RetryConfig
from .paths import WORKSPACE_PREFIX
from .retry import RetryAttempt, with_retry


@dataclass(frozen=True)
class ProvisionOptions:
    """How a checkout is populated.

    Attributes:
        branch: Target branch; checked out if it exists on the remote,
            otherwise created locally.
        credentials: Token and identity; ``None`` clones anonymously.
        exclude_patterns: Paths added to ``.git/info/exclude``.
        git_path: Git executable override.
        retry: Retry policy for clones that fail for transient reasons.
        min_free_bytes: Free space required before cloning; 0 skips the check.
    """

    branch: str | None = None
    credentials: GitCredentials | None = None
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    git_path: str | None = None
    retry: RetryConfig = field(default_factory=RetryConfig)
    min_free_bytes: int = 0

    def with_branch(self, branch: str | None) -> ProvisionOptions:
        return dataclasses.replace(self, branch=branch)


class WorkspaceCleanup:
    """Idempotent, thread-safe cleanup callable.

    Steps run once, in order. A failing step is logged and does not stop
    the remaining steps or raise to the caller.
    """

    def __init__(self, *steps: Callable[[], None], description: str = "workspace") -> None:
        self._steps = steps
        self._description = description
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def __call__(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        for step in self._steps:
            try:
                step()
            except Exception as exc:
                log.warning(f"cleanup of {self._description} failed: {exc}")


def remove_tree(path: Path) -> None:
    """Remove ``path`` recursively; a missing path is not an error.

    A file or symlink left where a directory is expected is unlinked.
    """
    if path.is_symlink() or (path.exists() and not path.is_dir()):
        path.unlink(missing_ok=True)
        return
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return


def removal_cleanup(path: Path) -> WorkspaceCleanup:
    return WorkspaceCleanup(partial(remove_tree, path), description=str(path))


@dataclass(frozen=True)
class WorkspaceResult:
    """A provisioned workspace owned by the caller until ``cleanup`` runs."""

    path: Path
    starting_commit: str | None
    cleanup: WorkspaceCleanup
    repository_url: str | None = None
    branch: str | None = None


def clone_url_for(repo_url: str, credentials: GitCredentials | None) -> str:
    if credentials is None:
        return repo_url
    return git.authenticated_url(repo_url, credentials.secret, credentials.username)


def ensure_disk_space(path: Path, required_bytes: int) -> None:
    """Raise ``InsufficientDiskSpaceError`` when ``path`` has too little room.

    ``path`` need not exist yet; its nearest existing parent is measured.
    """
    if required_bytes <= 0:
        return
    measured = path
    while not measured.exists() and measured != measured.parent:
        measured = measured.parent
    available = shutil.disk_usage(measured).free
    if available < required_bytes:
        raise InsufficientDiskSpaceError(path, required_bytes, available)


def clone_into(
    target: Path,
    repo_url: str,
    options: ProvisionOptions,
    *,
    runner: exec_util.CommandRunner | None = None,
) -> None:
    """Clone ``repo_url`` into ``target``, raising ``CloneError`` on failure.

    Transient failures are retried under ``options.retry``; whatever a
    failed attempt left in ``target`` is removed before the next one.
    """
    redacted = git.redact_url(repo_url)
    ensure_disk_space(target, options.min_free_bytes)
    log.info(f"Cloning {redacted}")
    log.debug(f"   {target}")
    existed = target.is_dir()

    def attempt() -> None:
        try:
            git.clone(
                clone_url_for(repo_url, options.credentials),
                target,
                git_path=options.git_path,
                runner=runner,
            )
        except GitCommandError as exc:
            raise CloneError(redacted, exc.stderr.strip() or str(exc)) from exc

    def discard_partial(_: RetryAttempt) -> None:
        remove_tree(target)
        if existed:
            target.mkdir(parents=True, exist_ok=True)

    with_retry(attempt, options.retry, description=f"clone {redacted}", on_retry=discard_partial)


def resolve_branch(
    repo_dir: Path,
    repo_url: str,
    branch: str,
    *,
    reset: bool = False,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> None:
    """Check out ``branch``, tracking the remote branch when it exists.

    With ``reset`` the local branch is force-moved (``checkout -B``), which
    is what a reused checkout needs; a fresh clone uses plain checkout.
    """
    try:
        exists = git.remote_branch_exists(repo_dir, branch, git_path=git_path, runner=runner)
        if exists:
            log.info(f"Checking out branch: {branch}")
            git.checkout(
                repo_dir,
                branch,
                reset=reset,
                start_point=f"origin/{branch}" if reset else None,
                git_path=git_path,
                runner=runner,
            )
        else:
            log.info(f"Creating new branch: {branch}")
            git.checkout(
                repo_dir,
                branch,
                create=True,
                reset=reset,
                git_path=git_path,
                runner=runner,
            )
    except GitCommandError as exc:
        raise BranchResolutionError(
            git.redact_url(repo_url), branch, exc.stderr.strip() or str(exc)
        ) from exc


def configure_checkout(
    repo_dir: Path,
    repo_url: str,
    options: ProvisionOptions,
    *,
    reset_branch: bool = False,
    runner: exec_util.CommandRunner | None = None,
) -> str:
    """Apply identity, exclude rules and branch; return the HEAD commit."""
    credentials = options.credentials
    if credentials is not None:
        git.set_identity(
            repo_dir,
            name=credentials.name,
            email=credentials.email,
            git_path=options.git_path,
            runner=runner,
        )
    git.append_exclude(repo_dir, options.exclude_patterns)
    if options.branch:
        resolve_branch(
            repo_dir,
            repo_url,
            options.branch,
            reset=reset_branch,
            git_path=options.git_path,
            runner=runner,
        )
    return git.head_commit(repo_dir, git_path=options.git_path, runner=runner)


def populate_checkout(
    target: Path,
    repo_url: str,
    options: ProvisionOptions,
    *,
    runner: exec_util.CommandRunner | None = None,
) -> str:
    """Clone and configure a checkout in ``target``; return its HEAD commit."""
    clone_into(target, repo_url, options, runner=runner)
    return configure_checkout(target, repo_url, options, runner=runner)


def provision(
    repo_url: str,
    options: ProvisionOptions | None = None,
    *,
    root: Path | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> WorkspaceResult:
    """Create a fresh, isolated checkout of ``repo_url``.

    Args:
        repo_url: Repository to clone.
        options: Branch, credentials and exclude settings.
        root: Parent for the temporary directory; system temp by default.
        runner: Command runner override.

    Returns:
        ``WorkspaceResult`` whose ``cleanup`` removes the directory.

    Raises:
        CloneError: Clone failed.
        InsufficientDiskSpaceError: Less than ``min_free_bytes`` free at ``root``.
        BranchResolutionError: Branch lookup or checkout failed.

    The directory is removed before any error propagates.
    """
    active = options or ProvisionOptions()
    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=root))
    cleanup = removal_cleanup(path)
    try:
        starting_commit = populate_checkout(path, repo_url, active, runner=runner)
    except BaseException:
        cleanup()
        raise
    log.success(f"Workspace ready at {path}")
    return WorkspaceResult(
        path=path,
        starting_commit=starting_commit,
        cleanup=cleanup,
        repository_url=repo_url,
        branch=active.branch,
    )


def blank_workspace(root: Path | None = None) -> WorkspaceResult:
    """Create an empty temporary workspace for actions without a repository."""
    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=root))
    log.info("No repository for this action; using a blank workspace")
    log.debug(f"   {path}")
    return WorkspaceResult(path=path, starting_commit=None, cleanup=removal_cleanup(path))
