"""
carddav_sync.cli - Command-line interface module

Click commands for uploads, pending imports, connection pulls and the daemon.
"""

from carddav_sync.cli.main import cli

__all__ = ["cli"]
