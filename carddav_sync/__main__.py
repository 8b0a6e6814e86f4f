"""
Entry point for running carddav_sync as a module.

Usage:
    python -m carddav_sync --help
    python -m carddav_sync upload --user alice contacts.vcf
    python -m carddav_sync pull home
"""

from carddav_sync.cli import cli

if __name__ == "__main__":
    cli()
