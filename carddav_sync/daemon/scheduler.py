"""
Daemon scheduler for background CardDAV synchronization.

Provides a DaemonScheduler class that manages:
- Sync cycles at a configurable interval
- Signal handling for graceful shutdown (SIGTERM/SIGINT)
- PID file management so only one daemon runs per config directory
- Statistics about completed cycles
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from carddav_sync.utils.paths import DEFAULT_PID_FILE, resolve_config_dir

logger = logging.getLogger(__name__)


def default_pid_file() -> Path:
    """PID file inside the resolved configuration directory."""
    return resolve_config_dir() / DEFAULT_PID_FILE


class DaemonError(Exception):
    """Base exception for daemon-related errors."""

    pass


class PIDFileError(DaemonError):
    """Raised when PID file operations fail."""

    pass


class DaemonAlreadyRunningError(DaemonError):
    """Raised when attempting to start a daemon that is already running."""

    pass


@dataclass
class DaemonStats:
    """Counters for the cycles a daemon has run."""

    started_at: datetime = field(default_factory=datetime.now)
    cycle_count: int = 0
    cycle_success_count: int = 0
    cycle_error_count: int = 0
    last_cycle_at: datetime | None = None
    last_cycle_success: bool = False
    last_error: str | None = None


class PIDFileManager:
    """
    Creates, reads and removes the daemon's PID file.

    A PID file whose process no longer exists is treated as stale and
    replaced.
    """

    def __init__(self, pid_file: Path | None = None):
        self.pid_file = pid_file or default_pid_file()

    def create(self) -> None:
        """
        Write the current process id.

        Raises:
            DaemonAlreadyRunningError: If the recorded process is alive
            PIDFileError: If the file cannot be written
        """
        existing_pid = self.read()
        if existing_pid is not None:
            if self.is_process_running(existing_pid):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {existing_pid}"
                )
            logger.warning(
                f"Removing stale PID file (process {existing_pid} not running)"
            )
            self.remove()

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(str(os.getpid()))
        except OSError as e:
            raise PIDFileError(f"Failed to create PID file {self.pid_file}: {e}") from e
        logger.debug(f"Created PID file: {self.pid_file}")

    def read(self) -> int | None:
        """
        Read the recorded process id.

        Returns:
            The PID, or None if there is no PID file

        Raises:
            PIDFileError: If the file cannot be read or holds garbage
        """
        if not self.pid_file.exists():
            return None

        try:
            content = self.pid_file.read_text().strip()
        except OSError as e:
            raise PIDFileError(f"Failed to read PID file {self.pid_file}: {e}") from e
        try:
            return int(content)
        except ValueError as e:
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content}") from e

    def remove(self) -> None:
        if not self.pid_file.exists():
            return
        try:
            self.pid_file.unlink()
        except OSError as e:
            raise PIDFileError(f"Failed to remove PID file {self.pid_file}: {e}") from e
        logger.debug(f"Removed PID file: {self.pid_file}")

    @staticmethod
    def is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks that the process exists
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True


class DaemonScheduler:
    """
    Runs a sync cycle callback at a fixed interval until stopped.

    The callback returns True when the cycle succeeded. Exceptions raised by
    it are logged and counted; they never stop the daemon.

    Usage:
        scheduler = DaemonScheduler(interval=900, pid_file=settings.daemon_pid_file)
        scheduler.set_cycle_callback(lambda: run_due_syncs(engine, db).ok)
        scheduler.run()  # blocks until SIGTERM/SIGINT or stop()

    Attributes:
        interval: Seconds between the start of one cycle and the next check
        stats: Daemon statistics
    """

    def __init__(
        self,
        interval: int = 3600,
        pid_file: Path | None = None,
        run_immediately: bool = True,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the scheduler.

        Args:
            interval: Sleep between cycles in seconds
            pid_file: Path to PID file (default: daemon.pid in the config directory)
            run_immediately: Run a cycle before the first sleep
            install_signal_handlers: Handle SIGTERM/SIGINT; must be False when
                run() is called outside the main thread
        """
        if interval < 1:
            raise ValueError(f"interval must be at least 1 second, got {interval}")
        self.interval = interval
        self.run_immediately = run_immediately
        self.install_signal_handlers = install_signal_handlers
        self._pid_manager = PIDFileManager(pid_file)
        self._cycle_callback: Callable[[], bool] | None = None
        self._running = False
        self._stop_event = threading.Event()
        self._original_handlers: dict[int, Any] = {}
        self.stats = DaemonStats()

    @property
    def pid_file(self) -> Path:
        return self._pid_manager.pid_file

    @property
    def stop_event(self) -> threading.Event:
        """Event set when shutdown is requested; cycles may pass it on as a cancel signal."""
        return self._stop_event

    def set_cycle_callback(self, callback: Callable[[], bool]) -> None:
        self._cycle_callback = callback

    def _setup_signal_handlers(self) -> None:
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(signum, self._signal_handler)
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)
        self._original_handlers.clear()

    def _signal_handler(self, signum: int, frame: object) -> None:
        logger.info(
            f"Received {signal.Signals(signum).name}, initiating graceful shutdown..."
        )
        self._stop_event.set()

    def _run_cycle(self) -> bool:
        """Execute the callback once and update statistics."""
        if self._cycle_callback is None:
            logger.warning("No cycle callback configured, skipping")
            return False

        self.stats.cycle_count += 1
        self.stats.last_cycle_at = datetime.now()

        try:
            logger.info(f"Starting sync cycle #{self.stats.cycle_count}")
            success = self._cycle_callback()
        except Exception as e:
            self.stats.cycle_error_count += 1
            self.stats.last_cycle_success = False
            self.stats.last_error = str(e)
            logger.exception(f"Sync cycle failed with exception: {e}")
            return False

        self.stats.last_cycle_success = success
        if success:
            self.stats.cycle_success_count += 1
            self.stats.last_error = None
            logger.info("Sync cycle completed successfully")
        else:
            self.stats.cycle_error_count += 1
            logger.warning("Sync cycle completed with errors")
        return success

    def run(self, max_cycles: int | None = None) -> None:
        """
        Run cycles until shutdown is requested.

        Args:
            max_cycles: Stop after this many cycles (None runs forever)

        Raises:
            DaemonAlreadyRunningError: If another daemon holds the PID file
            PIDFileError: If the PID file cannot be written
        """
        logger.info(f"Starting daemon scheduler (interval: {self.interval}s)")
        self._pid_manager.create()
        logger.info(f"Daemon started (PID: {os.getpid()}, PID file: {self.pid_file})")

        if self.install_signal_handlers:
            self._setup_signal_handlers()

        self._running = True
        self._stop_event.clear()
        self.stats = DaemonStats()

        try:
            first = True
            while not self._stop_event.is_set():
                if not (first and self.run_immediately):
                    logger.debug(f"Sleeping for {self.interval} seconds until next cycle")
                    # Event.wait returns True once stop is requested
                    if self._stop_event.wait(self.interval):
                        break
                first = False

                self._run_cycle()
                if max_cycles is not None and self.stats.cycle_count >= max_cycles:
                    break
        finally:
            self._running = False
            if self.install_signal_handlers:
                self._restore_signal_handlers()
            self._pid_manager.remove()
            logger.info("Daemon scheduler stopped")

    def stop(self) -> None:
        """Request shutdown; safe to call from the callback or another thread."""
        logger.info("Stop requested")
        self._stop_event.set()

    def is_running(self) -> bool:
        return self._running

    @classmethod
    def get_running_pid(cls, pid_file: Path | None = None) -> int | None:
        """Return the PID of a live daemon, or None."""
        manager = PIDFileManager(pid_file)
        pid = manager.read()
        if pid is not None and manager.is_process_running(pid):
            return pid
        return None

    @classmethod
    def stop_running_daemon(cls, pid_file: Path | None = None) -> bool:
        """
        Send SIGTERM to the running daemon.

        Returns:
            True if the signal was sent, False if no daemon is running
        """
        pid = cls.get_running_pid(pid_file)
        if pid is None:
            logger.info("No running daemon found")
            return False

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.warning(f"Daemon process {pid} not found")
            return False
        except PermissionError:
            logger.error(f"Permission denied sending signal to PID {pid}")
            return False
        logger.info(f"Sent SIGTERM to daemon (PID: {pid})")
        return True
