"""
Typed settings built from the validated YAML configuration.

Example config.yaml:

    database_path: carddav_sync.db
    batch_size: 50
    rate_limit_interval: 0.2
    lock_timeout: 300
    connections:
      - id: home
        user_id: alice
        server_url: https://dav.example.com
        address_book_url: https://dav.example.com/addressbooks/alice/contacts/
        username: alice
        password_env: HOME_DAV_PASSWORD
        auto_sync_interval: 43200

Notes:
    - Relative paths are resolved against the configuration directory
    - Passwords are never written to the database; they are read from the
      config file or from the environment variable named by password_env
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from carddav_sync.config.loader import ConfigError
from carddav_sync.utils.paths import (
    DEFAULT_DATABASE_FILE,
    DEFAULT_PHOTO_DIR,
    DEFAULT_PID_FILE,
    resolve_config_dir,
    resolve_in_config_dir,
)

# Default auto-sync interval for a connection: 12 hours
DEFAULT_AUTO_SYNC_INTERVAL = 43200

# Default stale-lock timeout in seconds
DEFAULT_LOCK_TIMEOUT = 300.0


@dataclass
class GuardSettings:
    """
    Limits applied to outbound calls against a CardDAV server.

    Attributes:
        batch_size: Maximum number of hrefs fetched by one multiget call
        rate_limit_interval: Minimum seconds between two remote calls
        request_timeout: Per-call timeout in seconds
        max_retries: Attempts per call, including the first one
        initial_retry_delay: First backoff delay in seconds
        max_retry_delay: Upper bound for the backoff delay
    """

    batch_size: int = 50
    rate_limit_interval: float = 0.2
    request_timeout: float = 30.0
    max_retries: int = 3
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 10.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GuardSettings:
        defaults = cls()
        return cls(
            batch_size=data.get("batch_size", defaults.batch_size),
            rate_limit_interval=float(
                data.get("rate_limit_interval", defaults.rate_limit_interval)
            ),
            request_timeout=float(data.get("request_timeout", defaults.request_timeout)),
            max_retries=data.get("max_retries", defaults.max_retries),
            initial_retry_delay=float(
                data.get("initial_retry_delay", defaults.initial_retry_delay)
            ),
            max_retry_delay=float(data.get("max_retry_delay", defaults.max_retry_delay)),
        )


@dataclass
class ConnectionConfig:
    """
    One configured CardDAV connection.

    Attributes:
        id: Stable connection identifier used as the staging and mapping scope
        user_id: Owner of the local contacts this connection feeds
        server_url: Base URL of the CardDAV server
        username: Account name for HTTP basic authentication
        address_book_url: Collection URL; defaults to server_url
        password: Inline password (discouraged)
        password_env: Environment variable holding the password
        auto_sync_interval: Seconds between scheduled syncs
        sync_enabled: Whether the daemon syncs this connection
        verify_ssl: Verify TLS certificates
    """

    id: str
    user_id: str
    server_url: str
    username: str
    address_book_url: str | None = None
    password: str | None = None
    password_env: str | None = None
    auto_sync_interval: int = DEFAULT_AUTO_SYNC_INTERVAL
    sync_enabled: bool = True
    verify_ssl: bool = True

    @property
    def collection_url(self) -> str:
        return self.address_book_url or self.server_url

    def resolve_password(self) -> str:
        """
        Return the connection password.

        Raises:
            ConfigError: If neither a password nor a populated password_env
                is configured
        """
        if self.password_env:
            value = os.environ.get(self.password_env)
            if value:
                return value
            raise ConfigError(
                f"Environment variable {self.password_env} for connection "
                f"'{self.id}' is not set"
            )
        if self.password:
            return self.password
        raise ConfigError(f"No password configured for connection '{self.id}'")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConnectionConfig:
        try:
            return cls(
                id=data["id"],
                user_id=data["user_id"],
                server_url=data["server_url"],
                username=data["username"],
                address_book_url=data.get("address_book_url"),
                password=data.get("password"),
                password_env=data.get("password_env"),
                auto_sync_interval=data.get(
                    "auto_sync_interval", DEFAULT_AUTO_SYNC_INTERVAL
                ),
                sync_enabled=data.get("sync_enabled", True),
                verify_ssl=data.get("verify_ssl", True),
            )
        except KeyError as e:
            raise ConfigError(f"Connection entry is missing key {e}") from e


@dataclass
class Settings:
    """Resolved application settings."""

    config_dir: Path
    database_path: Path
    photo_dir: Path
    log_dir: Path | None = None
    log_retention_count: int = 10
    import_photos: bool = True
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    daemon_interval: str = "1h"
    daemon_pid_file: Path | None = None
    connection_delay: float = 0.2
    guard: GuardSettings = field(default_factory=GuardSettings)
    connections: list[ConnectionConfig] = field(default_factory=list)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], config_dir: Path | str | None = None
    ) -> Settings:
        """
        Build settings from a validated configuration dictionary.

        Args:
            data: Output of ConfigLoader.load_and_validate()
            config_dir: Directory relative paths are resolved against
        """
        base = resolve_config_dir(config_dir)
        log_dir = data.get("log_dir")
        return cls(
            config_dir=base,
            database_path=resolve_in_config_dir(
                data.get("database_path"), DEFAULT_DATABASE_FILE, base
            ),
            photo_dir=resolve_in_config_dir(
                data.get("photo_dir"), DEFAULT_PHOTO_DIR, base
            ),
            log_dir=Path(log_dir).expanduser() if log_dir else None,
            log_retention_count=data.get("log_retention_count", 10),
            import_photos=data.get("import_photos", True),
            lock_timeout=float(data.get("lock_timeout", DEFAULT_LOCK_TIMEOUT)),
            daemon_interval=data.get("daemon_interval", "1h"),
            daemon_pid_file=resolve_in_config_dir(
                data.get("daemon_pid_file"), DEFAULT_PID_FILE, base
            ),
            connection_delay=float(data.get("connection_delay", 0.2)),
            guard=GuardSettings.from_dict(data),
            connections=[
                ConnectionConfig.from_dict(entry)
                for entry in data.get("connections", [])
            ],
        )

    def get_connection(self, connection_id: str) -> ConnectionConfig:
        for connection in self.connections:
            if connection.id == connection_id:
                return connection
        raise ConfigError(f"Unknown connection '{connection_id}'")
