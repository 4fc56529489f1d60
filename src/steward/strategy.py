"""Choose and acquire the workspace a claimed action runs in."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Literal, Sequence

from . import exec as exec_util
from . import git, log
from .cache import PersistentWorkspaceCache
from .models import GitCredentials, RepoSpec, WorkspaceConfig, WorkspaceStrategy
from .multi_repo import provision_many
from .workspace import (
    ProvisionOptions,
    WorkspaceCleanup,
    blank_workspace,
    provision,
)

ResolvedStrategy = Literal["blank", "ephemeral", "persistent", "multi"]


@dataclass(frozen=True)
class AcquiredWorkspace:
    """Workspace handed to the execution capability.

    ``cleanup`` removes ephemeral directories; for a cached workspace it only
    releases the lease and leaves the directory for reuse.
    """

    path: Path
    strategy: ResolvedStrategy
    cleanup: WorkspaceCleanup
    starting_commits: dict[str, str]
    branch: str | None = None
    is_new: bool = True
    repo_names: tuple[str, ...] = ()


def choose_strategy(
    spec: RepoSpec,
    configured: WorkspaceStrategy,
    *,
    cache: PersistentWorkspaceCache | None,
) -> Literal["ephemeral", "persistent"]:
    """Resolve the configured strategy for one repository.

    Hybrid uses the cache when the repository is already cached or its size
    hint reaches the cache's size threshold. Without a cache every strategy
    falls back to ephemeral.
    """
    if cache is None or configured == "ephemeral":
        return "ephemeral"
    if configured == "persistent":
        return "persistent"
    if cache.contains(spec.url):
        return "persistent"
    if spec.size_hint is not None and spec.size_hint >= cache.config.size_threshold:
        return "persistent"
    return "ephemeral"


class WorkspaceProvider:
    """Acquire blank, ephemeral, cached, or multi-repo workspaces."""

    def __init__(
        self,
        config: WorkspaceConfig | None = None,
        *,
        cache: PersistentWorkspaceCache | None = None,
        runner: exec_util.CommandRunner | None = None,
    ) -> None:
        self.config = config or WorkspaceConfig()
        self._cache = cache
        self._runner = runner

    def options(
        self, *, branch: str | None, credentials: GitCredentials | None
    ) -> ProvisionOptions:
        return ProvisionOptions(
            branch=branch,
            credentials=credentials,
            exclude_patterns=self.config.exclude_patterns,
            git_path=self.config.git_path,
            retry=self.config.clone_retry,
            min_free_bytes=self.config.min_free_bytes,
        )

    def acquire(
        self, repos: Sequence[RepoSpec], options: ProvisionOptions
    ) -> AcquiredWorkspace:
        if not repos:
            blank = blank_workspace(self.config.root)
            return AcquiredWorkspace(
                path=blank.path,
                strategy="blank",
                cleanup=blank.cleanup,
                starting_commits={},
            )
        if len(repos) > 1:
            multi = provision_many(
                repos,
                options,
                root=self.config.root,
                runner=self._runner,
                max_parallel=self.config.max_parallel_clones,
            )
            return AcquiredWorkspace(
                path=multi.root_path,
                strategy="multi",
                cleanup=multi.cleanup,
                starting_commits=multi.starting_commits,
                branch=options.branch,
                repo_names=tuple(repo.name for repo in multi.repos),
            )

        spec = repos[0]
        branch = spec.branch if spec.branch is not None else options.branch
        single = options.with_branch(branch)
        strategy = choose_strategy(spec, self.config.strategy, cache=self._cache)
        log.debug(f"workspace strategy for {spec.url}: {strategy}")
        if strategy == "persistent" and self._cache is not None:
            return self._acquire_cached(self._cache, spec, single)
        result = provision(spec.url, single, root=self.config.root, runner=self._runner)
        return AcquiredWorkspace(
            path=result.path,
            strategy="ephemeral",
            cleanup=result.cleanup,
            starting_commits={git.repo_name(spec.url): result.starting_commit or ""},
            branch=branch,
        )

    def _acquire_cached(
        self, cache: PersistentWorkspaceCache, spec: RepoSpec, options: ProvisionOptions
    ) -> AcquiredWorkspace:
        path = cache.path_for(spec.url)
        cache.acquire(path)
        try:
            workspace = cache.get_or_create(spec.url, options)
        except BaseException:
            cache.release(path)
            raise
        steps: list[Callable[[], None]] = []
        if options.credentials is not None:
            steps.append(
                partial(cache.clear_credentials, path, spec.url, git_path=options.git_path)
            )
        steps.append(partial(cache.release, path))
        return AcquiredWorkspace(
            path=workspace.path,
            strategy="persistent",
            cleanup=WorkspaceCleanup(*steps, description=f"lease on {path}"),
            starting_commits={git.repo_name(spec.url): workspace.starting_commit},
            branch=options.branch,
            is_new=workspace.is_new,
        )
