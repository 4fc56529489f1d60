"""Path helpers for locating steward data, cache, and config files."""

from __future__ import annotations

import hashlib
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

STEWARD_APP_NAME = "steward"
WORKSPACES_DIRNAME = "workspaces"
CONFIG_FILENAME = "config.json"
WORKSPACE_PREFIX = "steward-workspace-"
CACHE_KEY_LENGTH = 16


def steward_data_dir() -> Path:
    """Return the base steward data directory.

    Example:
        >>> isinstance(steward_data_dir(), Path)
        True
    """
    return Path(user_data_dir(STEWARD_APP_NAME))


def workspace_cache_dir() -> Path:
    """Return the default root directory for persistent workspaces.

    Example:
        >>> workspace_cache_dir().name == WORKSPACES_DIRNAME
        True
    """
    return steward_data_dir() / WORKSPACES_DIRNAME


def config_path() -> Path:
    """Return the default worker configuration file path.

    Example:
        >>> config_path().name == CONFIG_FILENAME
        True
    """
    return Path(user_config_dir(STEWARD_APP_NAME)) / CONFIG_FILENAME


def cache_key(identity: str) -> str:
    """Return the stable directory key for a normalized repository identity.

    Args:
        identity: Normalized repository URL.

    Returns:
        First sixteen hex characters of the SHA-256 digest.

    Example:
        >>> len(cache_key("github.com/org/repo"))
        16
    """
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:CACHE_KEY_LENGTH]


def short_hash(value: str, length: int = 8) -> str:
    """Return a short digest suffix used to disambiguate names.

    Example:
        >>> len(short_hash("github.com/org/repo"))
        8
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]
