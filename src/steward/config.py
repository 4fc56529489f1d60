"""Worker configuration loading and persistence."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError

from . import paths
from .errors import ConfigurationError
from .models import WorkerConfig

ENV_API_URL = "STEWARD_API_URL"
ENV_API_TOKEN = "STEWARD_API_TOKEN"
ENV_WORKER_ID = "STEWARD_WORKER_ID"
ENV_WORKSPACE_STRATEGY = "STEWARD_WORKSPACE_STRATEGY"
ENV_CLEANUP_TIMING = "STEWARD_CLEANUP_TIMING"
ENV_CACHE_ROOT = "STEWARD_CACHE_ROOT"


def load_json(path: Path) -> dict | None:
    """Load a JSON file if it exists.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed payload as a dict, or ``None`` if the file does not exist.

    Example:
        >>> from pathlib import Path
        >>> load_json(Path("missing.json")) is None
        True
    """
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def write_json(path: Path, payload: dict | BaseModel) -> None:
    """Write a JSON payload to disk, creating parent directories.

    Args:
        path: Path to the JSON file to write.
        payload: Dict or Pydantic model to serialize.
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", exclude_none=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")


def _set_nested(payload: dict[str, Any], section: str, key: str, value: str) -> None:
    current = payload.get(section)
    if not isinstance(current, dict):
        current = {}
    payload[section] = {**current, key: value}


def apply_env_overrides(
    payload: Mapping[str, Any], env: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay environment variables onto a raw config payload.

    Example:
        >>> apply_env_overrides({}, {"STEWARD_WORKER_ID": "w-1"})
        {'worker_id': 'w-1'}
    """
    source = os.environ if env is None else env
    merged: dict[str, Any] = dict(payload)
    if value := source.get(ENV_API_URL, "").strip():
        _set_nested(merged, "queue", "base_url", value)
    if value := source.get(ENV_API_TOKEN, "").strip():
        _set_nested(merged, "queue", "token", value)
    if value := source.get(ENV_WORKER_ID, "").strip():
        merged["worker_id"] = value
    if value := source.get(ENV_WORKSPACE_STRATEGY, "").strip():
        _set_nested(merged, "workspace", "strategy", value)
    if value := source.get(ENV_CLEANUP_TIMING, "").strip():
        _set_nested(merged, "cleanup", "timing", value)
    if value := source.get(ENV_CACHE_ROOT, "").strip():
        _set_nested(merged, "cache", "root", value)
    return merged


def parse_config(payload: Mapping[str, Any]) -> WorkerConfig:
    try:
        return WorkerConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(
            f"invalid worker configuration: {exc}",
            recovery_hint="fix the configuration file or environment overrides",
        ) from exc


def load_config(
    path: Path | None = None, *, env: Mapping[str, str] | None = None
) -> WorkerConfig:
    """Load the worker configuration from disk and the environment.

    A missing file yields defaults; environment variables override file values.

    Args:
        path: Config file path; defaults to the platform config location.
        env: Environment mapping; defaults to ``os.environ``.

    Returns:
        Validated ``WorkerConfig``.

    Raises:
        ConfigurationError: When the file is unreadable or fails validation.
    """
    target = path or paths.config_path()
    try:
        payload = load_json(target)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"cannot read config {target}: {exc}") from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"config {target} must contain a JSON object")
    return parse_config(apply_env_overrides(payload, env))


def write_config(path: Path, config: WorkerConfig) -> None:
    """Persist a config, writing the queue token in clear text only if set."""
    payload = config.model_dump(mode="json", exclude_none=True)
    token = config.queue.token
    if token is not None:
        payload["queue"]["token"] = token.get_secret_value()
    write_json(path, payload)
