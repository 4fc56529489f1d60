"""Provision one workspace root holding several repositories."""

from __future__ import annotations

import concurrent.futures
import tempfile
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from . import exec as exec_util
from . import git, log
from .errors import MultiRepoCloneError
from .models import RepoSpec
from .paths import WORKSPACE_PREFIX, short_hash
from .workspace import ProvisionOptions, WorkspaceCleanup, populate_checkout, removal_cleanup


@dataclass(frozen=True)
class NamedWorkspace:
    """One repository checked out under the shared root."""

    name: str
    path: Path
    repository_url: str
    branch: str | None
    starting_commit: str


@dataclass(frozen=True)
class MultiRepoWorkspace:
    """All repositories of an action; ``cleanup`` removes the whole root."""

    root_path: Path
    repos: tuple[NamedWorkspace, ...]
    cleanup: WorkspaceCleanup

    @property
    def starting_commits(self) -> dict[str, str]:
        return {repo.name: repo.starting_commit for repo in self.repos}


def repo_directory_names(urls: Sequence[str]) -> list[str]:
    """Return a unique checkout directory name per URL, in input order.

    Names are the URL basenames; colliding basenames get a short hash of the
    normalized URL appended. A URL listed more than once (for example two
    branches of one repository) gets a numeric suffix on each repeat.

    Example:
        >>> repo_directory_names(["https://h/a/api.git", "https://h/b/web"])
        ['api', 'web']
        >>> repo_directory_names(["https://h/a/api", "https://h/a/api"])[1].endswith("-2")
        True
    """
    base_names = [git.repo_name(url) for url in urls]
    counts = Counter(base_names)
    names: list[str] = []
    used: set[str] = set()
    for url, name in zip(urls, base_names):
        if counts[name] > 1:
            name = f"{name}-{short_hash(git.normalize_repo_url(url))}"
        unique = name
        suffix = 2
        while unique in used:
            unique = f"{name}-{suffix}"
            suffix += 1
        used.add(unique)
        names.append(unique)
    return names


def _populate_one(
    target: Path,
    spec: RepoSpec,
    options: ProvisionOptions,
    runner: exec_util.CommandRunner | None,
) -> str:
    branch = spec.branch if spec.branch is not None else options.branch
    return populate_checkout(target, spec.url, options.with_branch(branch), runner=runner)


def provision_many(
    repos: Sequence[RepoSpec],
    options: ProvisionOptions | None = None,
    *,
    root: Path | None = None,
    runner: exec_util.CommandRunner | None = None,
    max_parallel: int = 4,
) -> MultiRepoWorkspace:
    """Clone every repository into ``<root>/<name>`` concurrently.

    All repositories share one credentials object. Either every repository
    is provisioned or none is: on the first failure pending clones are
    cancelled, running ones are awaited, and the whole root is removed.

    Raises:
        MultiRepoCloneError: Names the first failing repository in input order.
        ValueError: When ``repos`` is empty.
    """
    if not repos:
        raise ValueError("provision_many requires at least one repository")
    active = options or ProvisionOptions()
    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    root_path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=root))
    cleanup = removal_cleanup(root_path)
    names = repo_directory_names([spec.url for spec in repos])
    log.info(f"Provisioning {len(repos)} repositories in {root_path}")

    try:
        commits = _clone_all(root_path, repos, names, active, runner, max_parallel)
    except BaseException:
        cleanup()
        raise

    workspaces = tuple(
        NamedWorkspace(
            name=name,
            path=root_path / name,
            repository_url=spec.url,
            branch=spec.branch if spec.branch is not None else active.branch,
            starting_commit=commit,
        )
        for spec, name, commit in zip(repos, names, commits)
    )
    log.success(f"Multi-repo workspace ready at {root_path}")
    return MultiRepoWorkspace(root_path=root_path, repos=workspaces, cleanup=cleanup)


def _clone_all(
    root_path: Path,
    repos: Sequence[RepoSpec],
    names: Sequence[str],
    options: ProvisionOptions,
    runner: exec_util.CommandRunner | None,
    max_parallel: int,
) -> list[str]:
    workers = max(1, min(max_parallel, len(repos)))
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="steward-clone"
    ) as executor:
        futures = [
            executor.submit(_populate_one, root_path / name, spec, options, runner)
            for spec, name in zip(repos, names)
        ]
        done, _pending = concurrent.futures.wait(
            futures, return_when=concurrent.futures.FIRST_EXCEPTION
        )
        if any(future.exception() is not None for future in done):
            for future in futures:
                future.cancel()
            concurrent.futures.wait(futures)

    for spec, future in zip(repos, futures):
        if future.cancelled():
            continue
        error = future.exception()
        if error is not None:
            raise MultiRepoCloneError(git.redact_url(spec.url), error) from error
    return [future.result() for future in futures]
