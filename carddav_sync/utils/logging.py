"""
Logging configuration for carddav_sync.

Sets up the ``carddav_sync`` logger hierarchy:
- a console handler on stderr, optionally colored
- a daily log file that always captures DEBUG output
- log level overrides through environment variables
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from carddav_sync.utils.paths import resolve_config_dir

# Root of the package logger hierarchy
LOGGER_NAME = "carddav_sync"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log files are named carddav_sync_YYYYMMDD.log
LOG_FILE_PREFIX = "carddav_sync_"

ENV_LOG_LEVEL = "CARDDAV_SYNC_LOG_LEVEL"
ENV_DEBUG = "CARDDAV_SYNC_DEBUG"
ENV_LOG_FILE = "CARDDAV_SYNC_LOG_FILE"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Directory chosen by the last setup_logging() call
_configured_log_dir: Optional[Path] = None


def default_log_dir() -> Path:
    """Return the logs/ directory inside the configuration directory."""
    return resolve_config_dir() / "logs"


def _dated_log_name() -> str:
    return f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


class ColoredFormatter(logging.Formatter):
    """
    Formatter that wraps level names and messages in ANSI colors.

    Colors are dropped automatically when stdout is not a terminal, when
    NO_COLOR is set, or when TERM is "dumb".
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        if not hasattr(sys.stdout, "isatty") or not sys.stdout.isatty():
            return False
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy so other handlers see the plain record
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Determine the log level from the environment.

    CARDDAV_SYNC_DEBUG (1/true/yes) wins over CARDDAV_SYNC_LOG_LEVEL.
    Unknown level names fall back to INFO.

    Returns:
        Logging level constant
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    return _LEVELS.get(level_str, logging.INFO)


def get_log_file_path() -> Optional[Path]:
    """
    Get the log file path from the environment or the default location.

    Returns:
        Path to the log file, or None when CARDDAV_SYNC_LOG_FILE disables it
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    return default_log_dir() / _dated_log_name()


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the carddav_sync logger.

    Args:
        level: Console log level. If None, read from the environment.
        verbose: Force DEBUG and include file/line information.
        log_dir: Directory for the daily log file (from configuration).
        log_file: Explicit log file path; takes precedence over log_dir.
        enable_file_logging: Set False to log to the console only.
        use_colors: Color console output when the terminal supports it.

    Returns:
        The package logger

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path("/var/log/carddav-sync"))
        setup_logging(enable_file_logging=False)
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    file_path: Optional[Path] = None
    if enable_file_logging:
        if log_file:
            file_path = log_file
        elif log_dir:
            file_path = log_dir / _dated_log_name()
        else:
            file_path = get_log_file_path()

        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                # The file keeps everything regardless of console level
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")
                file_path = None

    if log_dir:
        _configured_log_dir = log_dir
    elif file_path:
        _configured_log_dir = file_path.parent
    else:
        _configured_log_dir = None

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete old daily log files, keeping the most recent ones.

    Args:
        log_dir: Directory to clean. Defaults to the directory configured by
                 setup_logging(), then the default log directory.
        keep_count: Number of files to keep. 0 disables cleanup.

    Returns:
        Number of files deleted
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or default_log_dir()
    if not logs_dir.exists():
        return 0

    logs = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )

    deleted = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
            deleted += 1
        except OSError as e:
            logging.getLogger(LOGGER_NAME).debug(f"Could not delete {old_log}: {e}")
    return deleted


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger inside the carddav_sync hierarchy.

    Names outside the package are prefixed so they inherit its handlers.
    """
    if not name.startswith(LOGGER_NAME):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """Change the console log level at runtime; file handlers stay at DEBUG."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


def disable_logging() -> None:
    """Silence the package logger entirely."""
    logging.getLogger(LOGGER_NAME).disabled = True


def enable_logging() -> None:
    """Undo disable_logging()."""
    logging.getLogger(LOGGER_NAME).disabled = False


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "disable_logging",
    "enable_logging",
    "cleanup_old_logs",
    "default_log_dir",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "LOGGER_NAME",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
