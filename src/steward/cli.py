"""Command-line entry point for the steward worker."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import typer

from . import __version__
from . import log as steward_log
from .api import ApiClient
from .cache import PersistentWorkspaceCache
from .config import load_config, parse_config
from .errors import StewardError
from .io import die, say, warn
from .models import WorkerConfig
from .queue import HttpTaskQueue
from .selection import phase_for, resolve_next_action
from .worker.models import WorkerState
from .worker.runtime import build_worker_loop, install_signal_handlers


class LogLevelName(str, Enum):
    trace = "trace"
    debug = "debug"
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Claim actions from the task queue and run them in prepared workspaces.",
)
cache_app = typer.Typer(no_args_is_help=True, help="Inspect and prune the workspace cache.")
app.add_typer(cache_app, name="cache")

ConfigOption = typer.Option(None, "--config", help="Path to the worker config JSON file.")


def _version_callback(value: bool) -> None:
    if value:
        say(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    log_level: Optional[LogLevelName] = typer.Option(
        None, "--log-level", help="Minimum level for log output.", case_sensitive=False
    ),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colored output."),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    if log_level is not None:
        steward_log.set_level(log_level.value)
    if no_color:
        steward_log.set_no_color(True)


def _load(config_path: Path | None, **overrides: Any) -> WorkerConfig:
    try:
        config = load_config(config_path)
        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return config
        payload = config.model_dump()
        for dotted, value in updates.items():
            section, _, key = dotted.partition("__")
            if key:
                payload[section] = {**payload[section], key: value}
            else:
                payload[section] = value
        return parse_config(payload)
    except StewardError as exc:
        die(str(exc))


def _client(config: WorkerConfig) -> ApiClient:
    queue = config.queue
    if not queue.base_url or queue.token is None:
        die("queue.base_url and queue.token must be configured (STEWARD_API_URL/STEWARD_API_TOKEN)")
    return ApiClient(queue.base_url, queue.token.get_secret_value(), timeout=queue.timeout)


@app.command("run")
def run_cmd(
    config_path: Optional[Path] = ConfigOption,
    worker_id: Optional[str] = typer.Option(None, "--worker-id", help="Stable worker id."),
    once: bool = typer.Option(False, "--once", help="Run a single claim cycle and exit."),
    max_cycles: Optional[int] = typer.Option(None, "--max-cycles", min=1),
    provider: Optional[str] = typer.Option(None, "--provider", help="claude or codex."),
    strategy: Optional[str] = typer.Option(
        None, "--strategy", help="ephemeral, persistent, or hybrid."
    ),
    tree: bool = typer.Option(False, "--tree", help="Walk the claimed action's subtree."),
) -> None:
    """Start the worker loop."""
    config = _load(
        config_path,
        worker_id=worker_id,
        max_cycles=1 if once else max_cycles,
        runner__provider=provider,
        workspace__strategy=strategy,
        tree__enabled=True if tree else None,
    )
    state = WorkerState()
    try:
        loop, client = build_worker_loop(config, state=state)
    except StewardError as exc:
        die(str(exc))
    restore = install_signal_handlers(state)
    try:
        with client:
            counters = loop.run()
    except StewardError as exc:
        hint = f" ({exc.recovery_hint})" if exc.recovery_hint else ""
        die(f"{exc}{hint}")
    finally:
        restore()
    if counters.errors and config.max_cycles == 1:
        raise typer.Exit(code=1)


@app.command("next")
def next_cmd(
    root_id: str = typer.Argument(..., help="Root action id of the tree to search."),
    config_path: Optional[Path] = ConfigOption,
    depth: Optional[int] = typer.Option(None, "--depth", min=1, help="Fetch depth."),
) -> None:
    """Show the next actionable node under a root action."""
    config = _load(config_path)
    fetch_depth = depth or config.tree.fetch_depth
    try:
        with _client(config) as client:
            queue = HttpTaskQueue(client)
            root = queue.fetch_subtree(root_id, fetch_depth)
            action = resolve_next_action(
                root,
                queue.fetch_subtree,
                fetch_depth=fetch_depth,
                max_refetches=config.tree.max_refetches,
            )
    except StewardError as exc:
        die(str(exc))
    if action is None:
        say(f"No actionable work under {root_id}.")
        return
    say(f"{action.id}\t{phase_for(action)}\t{action.title}")


def _format_size(size: int | None) -> str:
    if size is None:
        return "-"
    if size < 1024:
        return f"{size}B"
    value = size / 1024
    for unit in ("KiB", "MiB"):
        if value < 1024:
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}GiB"


@cache_app.command("list")
def cache_list_cmd(
    config_path: Optional[Path] = ConfigOption,
    sizes: bool = typer.Option(False, "--sizes", help="Compute on-disk sizes."),
) -> None:
    """List cached workspaces, least recently used first."""
    config = _load(config_path)
    cache = PersistentWorkspaceCache(config.cache, git_path=config.workspace.git_path)
    records = cache.entries(include_size=sizes)
    if not records:
        say(f"No cached workspaces in {cache.root}.")
        return
    for record in records:
        stamp = dt.datetime.fromtimestamp(record.last_accessed)
        accessed = stamp.isoformat(timespec="seconds")
        say(f"{record.path.name}\t{accessed}\t{_format_size(record.size_bytes)}")


@cache_app.command("evict")
def cache_evict_cmd(
    config_path: Optional[Path] = ConfigOption,
    max_workspaces: Optional[int] = typer.Option(
        None, "--max", min=0, help="Keep at most this many entries."
    ),
) -> None:
    """Evict least recently used workspaces beyond the limit."""
    config = _load(config_path, cache__max_workspaces=max_workspaces)
    cache = PersistentWorkspaceCache(config.cache, git_path=config.workspace.git_path)
    report = cache.evict()
    for path in report.failed:
        warn(f"could not remove {path}")
    say(
        f"Evicted {len(report.evicted)} workspace(s); "
        f"{report.remaining} remaining, {len(report.skipped)} in use, "
        f"{len(report.failed)} failed."
    )


def main() -> None:
    app()
