"""
carddav_sync - Mirror CardDAV address books into a local contact database.

Pulls vCards from CardDAV servers (or accepts uploaded .vcf files), stages
them, and reconciles them against local contacts with create, update,
restore and skip decisions.
"""

__version__ = "0.1.0"
