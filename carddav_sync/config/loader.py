"""
Configuration loader for carddav-sync.

Provides YAML-based configuration file loading with support for:
- Loading configuration from the default or a custom directory
- Graceful handling of missing configuration files
- Type and range validation of known keys, including connection entries
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from carddav_sync.utils.paths import resolve_config_dir

DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Known top-level keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # Storage
    "database_path": str,
    "photo_dir": str,
    "import_photos": bool,
    # Logging
    "log_dir": str,
    "log_retention_count": int,
    "verbose": bool,
    # Remote call guard
    "batch_size": int,
    "rate_limit_interval": (int, float),
    "request_timeout": (int, float),
    "max_retries": int,
    "initial_retry_delay": (int, float),
    "max_retry_delay": (int, float),
    # Sync lock
    "lock_timeout": (int, float),
    # Daemon
    "daemon_interval": str,
    "daemon_pid_file": str,
    "connection_delay": (int, float),
    # Connections
    "connections": list,
}

# Keys of each entry in the "connections" list
CONNECTION_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    "id": str,
    "user_id": str,
    "server_url": str,
    "address_book_url": str,
    "username": str,
    "password": str,
    "password_env": str,
    "auto_sync_interval": int,
    "sync_enabled": bool,
    "verify_ssl": bool,
}

REQUIRED_CONNECTION_KEYS = ("id", "user_id", "server_url", "username")

POSITIVE_INT_KEYS = ("batch_size", "max_retries", "log_retention_count")
POSITIVE_NUMBER_KEYS = (
    "request_timeout",
    "initial_retry_delay",
    "max_retry_delay",
    "lock_timeout",
)
NON_NEGATIVE_NUMBER_KEYS = ("rate_limit_interval", "connection_delay")


def _type_name(expected: type[Any] | tuple[type[Any], ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_type(key: str, value: Any, expected: type[Any] | tuple[type[Any], ...]) -> None:
    # bool is an int subclass; reject it for numeric keys
    is_bool = isinstance(value, bool)
    wants_bool = expected is bool
    if not isinstance(value, expected) or (is_bool and not wants_bool):
        raise ConfigError(
            f"Invalid type for '{key}': expected {_type_name(expected)}, "
            f"got {type(value).__name__}"
        )


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

        # With a custom directory
        loader = ConfigLoader(config_dir=Path("/etc/carddav-sync"))
        config = loader.load()
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to $CARDDAV_SYNC_CONFIG_DIR or ~/.carddav-sync/
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Configuration dictionary, or an empty dict if the file is missing

        Raises:
            ConfigError: If the file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Configuration dictionary, or an empty dict if the file is missing
            or empty

        Raises:
            ConfigError: If the file exists but cannot be read or parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are ignored so newer configuration files keep working
        with older releases.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key in VALID_KEYS:
                _check_type(key, value, VALID_KEYS[key])

        for key in POSITIVE_INT_KEYS:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        for key in POSITIVE_NUMBER_KEYS:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        for key in NON_NEGATIVE_NUMBER_KEYS:
            if key in config and config[key] < 0:
                raise ConfigError(f"{key} must be >= 0, got {config[key]}")

        if "initial_retry_delay" in config and "max_retry_delay" in config:
            if config["initial_retry_delay"] > config["max_retry_delay"]:
                raise ConfigError(
                    "initial_retry_delay must not exceed max_retry_delay"
                )

        self._validate_connections(config.get("connections", []))

    def _validate_connections(self, connections: list[Any]) -> None:
        seen_ids: set[str] = set()
        for index, entry in enumerate(connections):
            where = f"connections[{index}]"
            if not isinstance(entry, dict):
                raise ConfigError(
                    f"{where} must be a dictionary, got {type(entry).__name__}"
                )

            for key in REQUIRED_CONNECTION_KEYS:
                if key not in entry:
                    raise ConfigError(f"{where} is missing required key '{key}'")

            for key, value in entry.items():
                if key in CONNECTION_KEYS:
                    _check_type(f"{where}.{key}", value, CONNECTION_KEYS[key])

            if "auto_sync_interval" in entry and entry["auto_sync_interval"] < 60:
                raise ConfigError(
                    f"{where}.auto_sync_interval must be >= 60 seconds, "
                    f"got {entry['auto_sync_interval']}"
                )

            url = entry["server_url"]
            if not url.startswith(("http://", "https://")):
                raise ConfigError(
                    f"{where}.server_url must start with http:// or https://"
                )

            if entry["id"] in seen_ids:
                raise ConfigError(f"Duplicate connection id '{entry['id']}'")
            seen_ids.add(entry["id"])

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
