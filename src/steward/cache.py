"""Persistent, content-addressed workspace cache with LRU eviction.

Each repository identity maps to one directory under the cache root named by
a hash of its normalized URL. Reuse refreshes the checkout in place; any
entry that cannot be refreshed is deleted and re-cloned. Clones and
refreshes run under a sibling ``<entry>.lock`` marker, so an entry left by a
killed process is recognised and re-cloned. Entries leased by an in-flight
task are never evicted. Leases are tracked in-process only.
"""

from __future__ import annotations

import dataclasses
import json
import os
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from . import exec as exec_util
from . import git, log
from .errors import (
    CloneError,
    CorruptedWorkspaceError,
    GitCommandError,
    InsufficientDiskSpaceError,
    UnsafeWorkspacePathError,
    UpdateError,
)
from .models import CacheConfig
from .paths import cache_key, workspace_cache_dir
from .workspace import (
    ProvisionOptions,
    clone_into,
    clone_url_for,
    configure_checkout,
    remove_tree,
)

OPERATION_MARKER_SUFFIX = ".lock"
GIT_REQUIRED_ENTRIES = ("HEAD", "refs", "objects", "config")


@dataclass(frozen=True)
class PersistentWorkspace:
    """A cache entry prepared for use."""

    path: Path
    is_new: bool
    starting_commit: str
    repository_url: str
    branch: str | None = None


@dataclass(frozen=True)
class PersistentWorkspaceRecord:
    """Metadata describing one cache entry."""

    path: Path
    last_accessed: float
    size_bytes: int | None = None
    leased: bool = False


@dataclass(frozen=True)
class EvictionReport:
    evicted: tuple[Path, ...] = ()
    skipped: tuple[Path, ...] = ()
    failed: tuple[Path, ...] = ()
    remaining: int = 0


def directory_size(path: Path) -> int:
    """Return the total size in bytes of regular files under ``path``."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += (Path(dirpath) / filename).lstat().st_size
            except OSError:
                continue
    return total


@dataclass
class _LeaseTable:
    counts: Counter[Path] = field(default_factory=Counter)
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class _EntryLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


def _marker_operation(marker: Path) -> str:
    try:
        payload = json.loads(marker.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return "operation"
    if isinstance(payload, dict) and isinstance(payload.get("operation"), str):
        return payload["operation"]
    return "operation"


class PersistentWorkspaceCache:
    """Reusable per-repository checkouts under a single cache root."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        runner: exec_util.CommandRunner | None = None,
        git_path: str | None = None,
    ) -> None:
        self.config = config or CacheConfig()
        self.root = (self.config.root or workspace_cache_dir()).expanduser()
        self._runner = runner
        self._git_path = git_path
        self._leases = _LeaseTable()
        self._entry_locks: dict[Path, _EntryLock] = {}
        self._entry_locks_guard = threading.Lock()

    def identity_hash(self, repo_url: str) -> str:
        return cache_key(git.normalize_repo_url(repo_url))

    def path_for(self, repo_url: str) -> Path:
        """Return the deterministic cache directory for a repository."""
        return self.root / self.identity_hash(repo_url)

    def contains(self, repo_url: str) -> bool:
        return self.path_for(repo_url).is_dir()

    def marker_path(self, path: Path) -> Path:
        """Return the sibling file marking an unfinished clone or refresh."""
        return path.with_name(path.name + OPERATION_MARKER_SUFFIX)

    @contextmanager
    def _entry_lock(self, path: Path) -> Iterator[None]:
        with self._entry_locks_guard:
            entry = self._entry_locks.setdefault(path, _EntryLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._entry_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entry_locks[path]

    @contextmanager
    def _operation(self, path: Path, operation: str) -> Iterator[None]:
        """Mark ``path`` busy; the marker survives if the body does not finish."""
        marker = self.marker_path(path)
        payload = {"operation": operation, "started_at": time.time(), "pid": os.getpid()}
        marker.write_text(json.dumps(payload), encoding="utf-8")
        yield
        marker.unlink(missing_ok=True)

    def get_or_create(
        self, repo_url: str, options: ProvisionOptions | None = None
    ) -> PersistentWorkspace:
        """Return a ready checkout for ``repo_url``, reusing the cache entry.

        A missing entry is cloned. A valid entry is refreshed in place. An
        entry that is not a working tree, was left mid-operation by an
        earlier process, or whose refresh fails, is deleted and cloned again.

        Raises:
            CloneError: The (re-)clone failed; no partial directory remains.
            InsufficientDiskSpaceError: Too little free space to clone.
            BranchResolutionError: The target branch could not be checked out.
        """
        active = options or ProvisionOptions()
        if active.git_path is None and self._git_path is not None:
            active = dataclasses.replace(active, git_path=self._git_path)
        path = self.path_for(repo_url)
        with self._entry_lock(path):
            is_new = self._ensure_checkout(path, repo_url, active)
            starting_commit = configure_checkout(
                path, repo_url, active, reset_branch=True, runner=self._runner
            )
            self.touch(path)
        return PersistentWorkspace(
            path=path,
            is_new=is_new,
            starting_commit=starting_commit,
            repository_url=repo_url,
            branch=active.branch,
        )

    def _ensure_checkout(self, path: Path, repo_url: str, options: ProvisionOptions) -> bool:
        if not path.exists() and not path.is_symlink():
            self._clone_fresh(path, repo_url, options)
            return True
        try:
            self._check_integrity(path)
            with self._operation(path, "refresh"):
                self._refresh(path, repo_url, options)
        except (UpdateError, CorruptedWorkspaceError) as exc:
            log.warning(f"{exc}; re-cloning")
            remove_tree(path)
            self._clone_fresh(path, repo_url, options)
            return True
        log.info(f"Reusing cached workspace {path}")
        return False

    def _clone_fresh(self, path: Path, repo_url: str, options: ProvisionOptions) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            with self._operation(path, "clone"):
                clone_into(path, repo_url, options, runner=self._runner)
        except (CloneError, InsufficientDiskSpaceError):
            remove_tree(path)
            self.marker_path(path).unlink(missing_ok=True)
            raise

    def _check_integrity(self, path: Path) -> None:
        marker = self.marker_path(path)
        if marker.exists():
            raise CorruptedWorkspaceError(path, f"interrupted {_marker_operation(marker)}")
        if path.is_symlink() or not path.is_dir():
            raise CorruptedWorkspaceError(path, "not a directory")
        git_dir = path / ".git"
        missing = [name for name in GIT_REQUIRED_ENTRIES if not (git_dir / name).exists()]
        if missing:
            raise CorruptedWorkspaceError(path, f"incomplete .git (missing {', '.join(missing)})")

    def _refresh(self, path: Path, repo_url: str, options: ProvisionOptions) -> None:
        git_path = options.git_path
        if not git.is_work_tree(path, git_path=git_path, runner=self._runner):
            raise CorruptedWorkspaceError(path, "not a git working tree")
        try:
            git.set_remote_url(
                path,
                clone_url_for(repo_url, options.credentials),
                git_path=git_path,
                runner=self._runner,
            )
            git.discard_changes(path, git_path=git_path, runner=self._runner)
            base = git.default_branch(path, git_path=git_path, runner=self._runner)
            if base:
                git.checkout(path, base, git_path=git_path, runner=self._runner)
            git.pull_fast_forward(path, git_path=git_path, runner=self._runner)
        except GitCommandError as exc:
            raise UpdateError(path, exc.stderr.strip() or str(exc)) from exc

    def clear_credentials(self, path: Path, repo_url: str, *, git_path: str | None = None) -> None:
        """Point ``origin`` back at the token-free URL once a task is done."""
        with self._entry_lock(path):
            if not (path / ".git").is_dir():
                return
            git.set_remote_url(
                path, repo_url, git_path=git_path or self._git_path, runner=self._runner
            )

    def touch(self, path: Path) -> None:
        """Record an access; eviction orders entries by this timestamp."""
        now = time.time()
        os.utime(path, (now, now))

    def entries(self, *, include_size: bool = False) -> list[PersistentWorkspaceRecord]:
        """Return cache entries ordered from least to most recently used."""
        if not self.root.is_dir():
            return []
        records: list[PersistentWorkspaceRecord] = []
        for child in self.root.iterdir():
            if not child.is_dir() or child.is_symlink():
                continue
            try:
                accessed = child.stat().st_mtime
            except FileNotFoundError:
                continue
            records.append(
                PersistentWorkspaceRecord(
                    path=child,
                    last_accessed=accessed,
                    size_bytes=directory_size(child) if include_size else None,
                    leased=self.is_leased(child),
                )
            )
        records.sort(key=lambda record: (record.last_accessed, record.path.name))
        return records

    def acquire(self, path: Path) -> None:
        with self._leases.lock:
            self._leases.counts[path] += 1

    def release(self, path: Path) -> None:
        with self._leases.lock:
            if self._leases.counts[path] <= 1:
                self._leases.counts.pop(path, None)
            else:
                self._leases.counts[path] -= 1

    def is_leased(self, path: Path) -> bool:
        with self._leases.lock:
            return self._leases.counts.get(path, 0) > 0

    @contextmanager
    def lease(self, path: Path) -> Iterator[Path]:
        """Hold ``path`` so eviction skips it for the duration."""
        self.acquire(path)
        try:
            yield path
        finally:
            self.release(path)

    def remove_entry(self, path: Path) -> None:
        """Delete one cache entry; refuses anything outside the cache root."""
        resolved_root = self.root.resolve()
        resolved = path.resolve()
        if resolved.parent != resolved_root or path.is_symlink():
            raise UnsafeWorkspacePathError(path, self.root)
        remove_tree(resolved)
        self.marker_path(resolved).unlink(missing_ok=True)

    def evict(self, config: CacheConfig | None = None) -> EvictionReport:
        """Remove least-recently-used entries until the count limit holds.

        Leased entries are skipped and the next-oldest entry is removed
        instead. Removal failures are logged and reported, never raised.
        """
        limit = (config or self.config).max_workspaces
        records = self.entries()
        excess = len(records) - limit
        if excess <= 0:
            return EvictionReport(remaining=len(records))

        evicted: list[Path] = []
        skipped: list[Path] = []
        failed: list[Path] = []
        for record in records:
            if len(evicted) >= excess:
                break
            if self.is_leased(record.path):
                skipped.append(record.path)
                continue
            with self._entry_lock(record.path):
                if self.is_leased(record.path):
                    skipped.append(record.path)
                    continue
                try:
                    self.remove_entry(record.path)
                except (OSError, UnsafeWorkspacePathError) as exc:
                    log.warning(f"failed to evict {record.path}: {exc}")
                    failed.append(record.path)
                    continue
            log.debug(f"evicted cached workspace {record.path}")
            evicted.append(record.path)
        if evicted:
            log.info(f"Evicted {len(evicted)} cached workspace(s)")
        return EvictionReport(
            evicted=tuple(evicted),
            skipped=tuple(skipped),
            failed=tuple(failed),
            remaining=len(records) - len(evicted),
        )
