"""
carddav_sync.daemon - Daemon and scheduler module

Background polling of CardDAV connections with signal handling and a PID file.
"""

import re

_INTERVAL_PART = re.compile(r"(\d+)\s*([smhd])")

_MULTIPLIERS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_interval(interval: str | int) -> int:
    """Parse an interval specification into seconds.

    Accepts plain integers, numeric strings, and unit strings made of one or
    more ``<number><unit>`` parts with units s, m, h, d.

    Args:
        interval: Interval specification. Examples:
            - 3600 -> 3600
            - "3600" -> 3600
            - "30s" -> 30
            - "5m" -> 300
            - "1h30m" -> 5400
            - "1d" -> 86400

    Returns:
        Interval in seconds.

    Raises:
        ValueError: If the interval is malformed or not positive.
    """
    if isinstance(interval, bool) or not isinstance(interval, (int, str)):
        raise ValueError(
            f"Invalid interval type: {type(interval).__name__}. Expected str or int."
        )

    if isinstance(interval, int):
        seconds = interval
    else:
        text = interval.lower().strip()
        if text.isdigit():
            seconds = int(text)
        else:
            compact = text.replace(" ", "")
            parts = _INTERVAL_PART.findall(compact)
            if not parts or "".join(f"{n}{u}" for n, u in parts) != compact:
                raise ValueError(
                    f"Invalid interval format: '{interval}'. "
                    "Use format like '30s', '5m', '1h', '1h30m' or '1d'."
                )
            seconds = sum(int(value) * _MULTIPLIERS[unit] for value, unit in parts)

    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got {interval!r}")
    return seconds


# Imports after parse_interval to avoid circular dependencies
from carddav_sync.daemon.runner import (  # noqa: E402
    SyncCycleReport,
    run_due_syncs,
    should_sync_now,
)
from carddav_sync.daemon.scheduler import (  # noqa: E402
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    DaemonStats,
    PIDFileError,
    PIDFileManager,
    default_pid_file,
)

__all__ = [
    "parse_interval",
    "SyncCycleReport",
    "run_due_syncs",
    "should_sync_now",
    "DaemonScheduler",
    "DaemonStats",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "default_pid_file",
]
