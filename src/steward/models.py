"""Pydantic models for worker configuration and task-queue data."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

WORKSPACE_STRATEGY_VALUES = ("ephemeral", "persistent", "hybrid")
WorkspaceStrategy = Literal["ephemeral", "persistent", "hybrid"]

CLEANUP_TIMING_VALUES = ("immediate", "deferred", "background")
CleanupTiming = Literal["immediate", "deferred", "background"]

PROVIDER_VALUES = ("claude", "codex")
Provider = Literal["claude", "codex"]

ActionPhase = Literal["prepare", "execute"]

DEFAULT_EXCLUDE_PATTERNS = (".claude/skills/",)
DEFAULT_SIZE_THRESHOLD = 100 * 1024 * 1024
DEFAULT_MIN_FREE_BYTES = 500 * 1024 * 1024


class RetryConfig(BaseModel):
    """Retry policy for transient failures.

    Attributes:
        max_attempts: Total attempts including the first (bounded variant).
        initial_delay: Seconds to wait after the first failure.
        backoff_multiplier: Factor applied to the delay after each retry.
        max_delay: Upper bound for any single delay.
        only_retryable: Retry only errors classified as transient.
        warn_after_attempts: Failure count after which the unbounded variant
            escalates its log level.

    Example:
        >>> RetryConfig(max_attempts=5).max_delay
        10.0
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=10.0, ge=0)
    only_retryable: bool = True
    warn_after_attempts: int = Field(default=10, ge=1)


class CacheConfig(BaseModel):
    """Persistent workspace cache settings.

    Attributes:
        root: Cache directory; defaults to the platform data directory.
        max_workspaces: Entry count eviction keeps the cache at or below.
        size_threshold: Repository size (bytes) at which the hybrid strategy
            prefers the cache.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    root: Path | None = None
    max_workspaces: int = Field(default=10, ge=0)
    size_threshold: int = Field(default=DEFAULT_SIZE_THRESHOLD, ge=0)


class CleanupConfig(BaseModel):
    """When cache eviction runs relative to task completion."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    timing: CleanupTiming = "deferred"
    background_interval: float = Field(default=300.0, gt=0)

    @field_validator("timing", mode="before")
    @classmethod
    def normalize_timing(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class PollingConfig(BaseModel):
    """Adaptive polling interval used while the queue is empty."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    initial_interval: float = Field(default=5.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_interval: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "PollingConfig":
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must be >= initial_interval")
        return self


class WorkspaceConfig(BaseModel):
    """How workspaces are provisioned for claimed actions.

    Attributes:
        clone_retry: Retry policy for clones that fail for transient reasons.
        min_free_bytes: Free space required before cloning; 0 disables the check.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    strategy: WorkspaceStrategy = "ephemeral"
    root: Path | None = None
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    max_parallel_clones: int = Field(default=4, ge=1)
    git_path: str = "git"
    clone_retry: RetryConfig = Field(default_factory=RetryConfig)
    min_free_bytes: int = Field(default=DEFAULT_MIN_FREE_BYTES, ge=0)

    @field_validator("strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("git_path", mode="before")
    @classmethod
    def normalize_git_path(cls, value: object) -> object:
        if value is None:
            return "git"
        if isinstance(value, str):
            return value.strip() or "git"
        return value


class TreeConfig(BaseModel):
    """Tree-walk mode: resolve the claimed node's subtree to a leaf."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = False
    fetch_depth: int = Field(default=10, ge=1)
    max_refetches: int = Field(default=5, ge=0)


class QueueConfig(BaseModel):
    """Remote task-queue connection settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str | None = None
    token: SecretStr | None = None
    timeout: float = Field(default=30.0, gt=0)

    @field_validator("base_url", mode="before")
    @classmethod
    def normalize_base_url(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip().rstrip("/")
            return stripped or None
        return value


class RunnerConfig(BaseModel):
    """Which execution capability runs claimed actions."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    provider: Provider = "claude"
    options: tuple[str, ...] = ()
    model: str | None = None
    timeout: float | None = Field(default=20 * 60.0, gt=0)


def _default_claim_retry() -> RetryConfig:
    return RetryConfig(initial_delay=1.0, max_delay=30.0, warn_after_attempts=10)


class WorkerConfig(BaseModel):
    """Complete worker configuration, built once and passed to components.

    Example:
        >>> WorkerConfig().workspace.strategy
        'ephemeral'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    worker_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    claim_retry: RetryConfig = Field(default_factory=_default_claim_retry)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    tree: TreeConfig = Field(default_factory=TreeConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    max_cycles: int | None = Field(default=None, ge=1)
    stop_on_error: bool = False

    @field_validator("worker_id", mode="before")
    @classmethod
    def normalize_worker_id(cls, value: object) -> object:
        if value is None:
            return uuid.uuid4().hex
        if isinstance(value, str):
            return value.strip() or uuid.uuid4().hex
        return value


class GitCredentials(BaseModel):
    """Credentials used for clone/fetch and commit identity.

    ``username`` authenticates the clone URL; ``name`` and ``email`` become
    the commit identity inside the workspace.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    token: SecretStr = Field(alias="githubToken")
    username: str | None = Field(default=None, alias="gitCredentialsUsername")
    name: str | None = Field(default=None, alias="githubUsername")
    email: str | None = Field(default=None, alias="githubEmail")

    @property
    def secret(self) -> str:
        return self.token.get_secret_value()


class RepoSpec(BaseModel):
    """One repository an action needs checked out."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str
    branch: str | None = None
    size_hint: int | None = Field(default=None, alias="sizeHint")


class ActionDependency(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    title: str = ""
    done: bool = False


class ActionNode(BaseModel):
    """A node of the remote task tree.

    ``children`` may be shorter than the real child list when the server
    truncated the tree; ``has_children`` is authoritative for whether
    children exist.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    title: str = ""
    done: bool = False
    prepared: bool | None = None
    has_children: bool = Field(default=False, alias="hasChildren")
    children: tuple[ActionNode, ...] = ()
    dependencies: tuple[ActionDependency, ...] = ()
    repository_url: str | None = Field(default=None, alias="repositoryUrl")
    resolved_repository_url: str | None = Field(default=None, alias="resolvedRepositoryUrl")
    branch: str | None = None
    resolved_branch: str | None = Field(default=None, alias="resolvedBranch")
    repositories: tuple[RepoSpec, ...] = ()
    size_hint: int | None = Field(default=None, alias="sizeHint")

    @model_validator(mode="before")
    @classmethod
    def infer_has_children(cls, data: object) -> object:
        if isinstance(data, dict):
            if "hasChildren" not in data and "has_children" not in data:
                children = data.get("children")
                if children:
                    data = {**data, "has_children": True}
        return data

    @property
    def effective_repository_url(self) -> str | None:
        return self.resolved_repository_url or self.repository_url

    @property
    def effective_branch(self) -> str | None:
        return self.resolved_branch or self.branch

    def repo_specs(self) -> list[RepoSpec]:
        """Return the repositories this action needs, in declared order."""
        if self.repositories:
            return list(self.repositories)
        url = self.effective_repository_url
        if not url:
            return []
        return [RepoSpec(url=url, branch=self.effective_branch, size_hint=self.size_hint)]


ActionNode.model_rebuild()
