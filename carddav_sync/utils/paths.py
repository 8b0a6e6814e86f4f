"""
Path utilities for configuration directory resolution.

Every module resolves the carddav-sync configuration directory through
resolve_config_dir() so the environment override is honored consistently.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".carddav-sync"

CONFIG_DIR_ENV_VAR = "CARDDAV_SYNC_CONFIG_DIR"

# File names inside the configuration directory
DEFAULT_DATABASE_FILE = "carddav_sync.db"
DEFAULT_PHOTO_DIR = "photos"
DEFAULT_PID_FILE = "daemon.pid"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter
        2. CARDDAV_SYNC_CONFIG_DIR environment variable
        3. ~/.carddav-sync

    Args:
        config_dir: Optional explicit directory, as a Path or string

    Returns:
        Absolute, user-expanded configuration directory
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_in_config_dir(value: Path | str | None, default: str, config_dir: Path) -> Path:
    """
    Resolve a configured path relative to the configuration directory.

    Absolute (or ~-prefixed) values are used as given; relative values and
    the default are placed under config_dir.
    """
    if value is None or value == "":
        return config_dir / default
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return config_dir / path
