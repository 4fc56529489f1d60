from __future__ import annotations

from pathlib import Path

import pytest

from steward.cache import PersistentWorkspaceCache
from steward.errors import CloneError
from steward.models import CacheConfig, RepoSpec, RetryConfig, WorkspaceConfig
from steward.strategy import WorkspaceProvider, choose_strategy
from tests.steward.helpers import HEAD_COMMIT, FakeGitRunner, make_credentials

REPO = "https://github.com/acme/widgets.git"


@pytest.fixture
def runner() -> FakeGitRunner:
    return FakeGitRunner()


@pytest.fixture
def cache(tmp_path: Path, runner: FakeGitRunner) -> PersistentWorkspaceCache:
    return PersistentWorkspaceCache(
        CacheConfig(root=tmp_path / "cache", size_threshold=1000), runner=runner
    )


def test_choose_strategy_without_cache_is_ephemeral() -> None:
    spec = RepoSpec(url=REPO, size_hint=10**9)

    assert choose_strategy(spec, "persistent", cache=None) == "ephemeral"
    assert choose_strategy(spec, "hybrid", cache=None) == "ephemeral"


def test_choose_strategy_fixed_modes(cache: PersistentWorkspaceCache) -> None:
    spec = RepoSpec(url=REPO)

    assert choose_strategy(spec, "ephemeral", cache=cache) == "ephemeral"
    assert choose_strategy(spec, "persistent", cache=cache) == "persistent"


@pytest.mark.parametrize(
    ("size_hint", "expected"),
    [(None, "ephemeral"), (999, "ephemeral"), (1000, "persistent"), (10**9, "persistent")],
)
def test_hybrid_uses_cache_for_large_repositories(
    cache: PersistentWorkspaceCache, size_hint: int | None, expected: str
) -> None:
    spec = RepoSpec(url=REPO, size_hint=size_hint)

    assert choose_strategy(spec, "hybrid", cache=cache) == expected


def test_hybrid_reuses_existing_cache_entry(cache: PersistentWorkspaceCache) -> None:
    cache.path_for(REPO).mkdir(parents=True)

    assert choose_strategy(RepoSpec(url=REPO), "hybrid", cache=cache) == "persistent"


def test_acquire_blank_workspace(tmp_path: Path) -> None:
    provider = WorkspaceProvider(WorkspaceConfig(root=tmp_path))

    workspace = provider.acquire([], provider.options(branch=None, credentials=None))

    assert workspace.strategy == "blank"
    assert workspace.path.parent == tmp_path
    assert workspace.starting_commits == {}
    workspace.cleanup()
    assert not workspace.path.exists()


def test_acquire_ephemeral_workspace(tmp_path: Path, runner: FakeGitRunner) -> None:
    provider = WorkspaceProvider(
        WorkspaceConfig(root=tmp_path / "work", exclude_patterns=("AGENTS.md",)), runner=runner
    )
    options = provider.options(branch="steward/t1", credentials=make_credentials())

    workspace = provider.acquire([RepoSpec(url=REPO)], options)

    assert workspace.strategy == "ephemeral"
    assert workspace.branch == "steward/t1"
    assert workspace.starting_commits == {"widgets": HEAD_COMMIT}
    exclude = workspace.path / ".git" / "info" / "exclude"
    assert exclude.read_text(encoding="utf-8").splitlines() == ["AGENTS.md"]
    workspace.cleanup()
    assert not workspace.path.exists()


def test_repo_branch_overrides_action_branch(tmp_path: Path, runner: FakeGitRunner) -> None:
    provider = WorkspaceProvider(WorkspaceConfig(root=tmp_path), runner=runner)
    options = provider.options(branch="steward/t1", credentials=None)

    workspace = provider.acquire([RepoSpec(url=REPO, branch="release")], options)

    assert workspace.branch == "release"
    assert ("checkout", "-b", "release") in runner.calls


def test_acquire_persistent_workspace_holds_lease(
    cache: PersistentWorkspaceCache, runner: FakeGitRunner
) -> None:
    provider = WorkspaceProvider(WorkspaceConfig(strategy="persistent"), cache=cache, runner=runner)
    options = provider.options(branch=None, credentials=None)

    workspace = provider.acquire([RepoSpec(url=REPO)], options)

    assert workspace.strategy == "persistent"
    assert workspace.is_new
    assert cache.is_leased(workspace.path)
    workspace.cleanup()
    assert not cache.is_leased(workspace.path)
    assert workspace.path.exists()


def test_persistent_cleanup_removes_token_from_origin(
    cache: PersistentWorkspaceCache, runner: FakeGitRunner
) -> None:
    provider = WorkspaceProvider(WorkspaceConfig(strategy="persistent"), cache=cache, runner=runner)
    options = provider.options(branch=None, credentials=make_credentials())

    workspace = provider.acquire([RepoSpec(url=REPO)], options)
    workspace.cleanup()

    assert runner.commands("remote")[-1] == ("remote", "set-url", "origin", REPO)
    assert not cache.is_leased(workspace.path)


def test_options_carry_clone_retry_and_disk_settings() -> None:
    retry = RetryConfig(max_attempts=7, initial_delay=0)
    provider = WorkspaceProvider(WorkspaceConfig(clone_retry=retry, min_free_bytes=0))

    options = provider.options(branch="b", credentials=None)

    assert options.retry == retry
    assert options.min_free_bytes == 0
    assert options.git_path == "git"


def test_failed_persistent_acquire_releases_lease(tmp_path: Path) -> None:
    cache = PersistentWorkspaceCache(
        CacheConfig(root=tmp_path), runner=FakeGitRunner(fail_clone=("widgets",))
    )
    provider = WorkspaceProvider(WorkspaceConfig(strategy="persistent"), cache=cache)

    with pytest.raises(CloneError):
        provider.acquire([RepoSpec(url=REPO)], provider.options(branch=None, credentials=None))

    assert not cache.is_leased(cache.path_for(REPO))


def test_acquire_multi_repo_workspace(
    tmp_path: Path, cache: PersistentWorkspaceCache, runner: FakeGitRunner
) -> None:
    provider = WorkspaceProvider(
        WorkspaceConfig(strategy="persistent", root=tmp_path / "work"), cache=cache, runner=runner
    )
    repos = [RepoSpec(url=REPO), RepoSpec(url="https://github.com/acme/site.git")]

    workspace = provider.acquire(repos, provider.options(branch=None, credentials=None))

    assert workspace.strategy == "multi"
    assert workspace.repo_names == ("widgets", "site")
    assert set(workspace.starting_commits) == {"widgets", "site"}
    assert not cache.root.exists()
    workspace.cleanup()
    assert not workspace.path.exists()
