"""
carddav_sync.utils - Utility module

Path resolution, string normalization and logging configuration.
"""

from carddav_sync.utils.normalization import (
    PLACEHOLDER_NAME,
    build_display_name,
    normalize_label,
)
from carddav_sync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = [
    "normalize_label",
    "build_display_name",
    "PLACEHOLDER_NAME",
    "resolve_config_dir",
    "DEFAULT_CONFIG_DIR",
]
