"""
Ownership scopes for staged imports and reconciliation runs.

A scope is exactly one of:
- ConnectionScope: records pulled from a configured CardDAV connection
- UploadScope: records uploaded by a user from a vCard file
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class ConnectionScope:
    """Records belonging to one CardDAV connection."""

    connection_id: str

    def __str__(self) -> str:
        return f"connection:{self.connection_id}"


@dataclass(frozen=True)
class UploadScope:
    """Records uploaded by one user; these never get external mappings."""

    user_id: str

    def __str__(self) -> str:
        return f"upload:{self.user_id}"


Scope = Union[ConnectionScope, UploadScope]


def parse_scope(value: str) -> Scope:
    """
    Parse the string form produced by str(scope).

    Raises:
        ValueError: If the value is not "connection:<id>" or "upload:<user>"
    """
    kind, _, ident = value.partition(":")
    if not ident:
        raise ValueError(f"Invalid scope: {value!r}")
    if kind == "connection":
        return ConnectionScope(ident)
    if kind == "upload":
        return UploadScope(ident)
    raise ValueError(f"Invalid scope kind: {kind!r}")
