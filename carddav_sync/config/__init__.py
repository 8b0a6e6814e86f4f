"""
carddav_sync.config - Configuration management module

Contains YAML loading, validation, and the typed settings objects.
"""

from carddav_sync.config.loader import ConfigError, ConfigLoader
from carddav_sync.config.settings import ConnectionConfig, GuardSettings, Settings

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "ConnectionConfig",
    "GuardSettings",
    "Settings",
]
