"""
Identity resolution for staged contact records.

Decides, from snapshots of locally known uids, whether an incoming record
is new, a duplicate of a later record in the same batch, an active local
contact, or a soft-deleted local contact. Everything here is pure; the
reconciliation engine supplies the snapshots and threads BatchIndex through
its loop.
"""

from __future__ import annotations

from collections import ChainMap
from collections.abc import Container, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Optional


class MatchKind(str, Enum):
    """Classification outcomes."""

    NEW = "new"
    DUPLICATE_IN_BATCH = "duplicate_in_batch"
    MATCHES_ACTIVE = "matches_active"
    MATCHES_DELETED = "matches_deleted"


@dataclass(frozen=True)
class Classification:
    """
    Result of classify().

    Attributes:
        kind: The match outcome
        local_id: Local record id for MATCHES_ACTIVE / MATCHES_DELETED
    """

    kind: MatchKind
    local_id: Optional[int] = None

    @classmethod
    def new(cls) -> Classification:
        return cls(MatchKind.NEW)

    @classmethod
    def duplicate(cls) -> Classification:
        return cls(MatchKind.DUPLICATE_IN_BATCH)

    @classmethod
    def active(cls, local_id: int) -> Classification:
        return cls(MatchKind.MATCHES_ACTIVE, local_id)

    @classmethod
    def deleted(cls, local_id: int) -> Classification:
        return cls(MatchKind.MATCHES_DELETED, local_id)


def classify(
    uid: str,
    seen_in_batch: Container[str],
    active_index: Mapping[str, int],
    deleted_index: Mapping[str, int],
) -> Classification:
    """
    Classify one uid.

    Args:
        uid: External identifier of the incoming record
        seen_in_batch: Uids whose winning occurrence is elsewhere in the batch
        active_index: uid -> id of active local records
        deleted_index: uid -> id of soft-deleted local records

    Returns:
        The Classification. An active match takes precedence over a
        soft-deleted one when both exist.
    """
    if uid in seen_in_batch:
        return Classification.duplicate()
    if uid in active_index:
        return Classification.active(active_index[uid])
    if uid in deleted_index:
        return Classification.deleted(deleted_index[uid])
    return Classification.new()


class _LaterOccurrences(Container):
    """Uids that occur again after a given batch position."""

    def __init__(self, last_position: Mapping[str, int], position: int):
        self._last_position = last_position
        self._position = position

    def __contains__(self, uid: object) -> bool:
        last = self._last_position.get(uid)  # type: ignore[call-overload]
        return last is not None and last > self._position


@dataclass(frozen=True)
class BatchIndex:
    """
    Accumulator threaded through one reconciliation run.

    Built once per run from the local store snapshot and the ordered uids of
    the batch. The last occurrence of a uid is the one that gets applied, so
    an item whose uid reappears later in the batch is a duplicate. Records
    applied earlier in the run are added to ``applied`` and count as active.

    Attributes:
        last_position: uid -> position of its final occurrence in the batch
        active: Snapshot of active local records
        deleted: Snapshot of soft-deleted local records
        applied: uid -> local id for records applied during this run
        position: Position of the next item to plan
    """

    last_position: Mapping[str, int]
    active: Mapping[str, int]
    deleted: Mapping[str, int]
    applied: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    position: int = 0

    @classmethod
    def build(
        cls,
        batch_uids: Iterable[str],
        active: Mapping[str, int],
        deleted: Mapping[str, int],
    ) -> BatchIndex:
        last_position: dict[str, int] = {}
        for position, uid in enumerate(batch_uids):
            last_position[uid] = position
        return cls(
            last_position=MappingProxyType(last_position),
            active=MappingProxyType(dict(active)),
            deleted=MappingProxyType(dict(deleted)),
        )

    def classify(self, uid: str) -> Classification:
        """Classify uid as the item at the current position."""
        return classify(
            uid,
            _LaterOccurrences(self.last_position, self.position),
            ChainMap(self.applied, self.active),  # type: ignore[arg-type]
            self.deleted,
        )

    def advance(self) -> BatchIndex:
        return replace(self, position=self.position + 1)

    def record_applied(self, uid: str, local_id: int) -> BatchIndex:
        """Return a new index in which uid is known as an active record."""
        applied = dict(self.applied)
        applied[uid] = local_id
        return replace(self, applied=MappingProxyType(applied))


def plan_item(index: BatchIndex, uid: str) -> tuple[BatchIndex, Classification]:
    """
    Reducer step: classify the next item and advance the index.

    Args:
        index: Accumulator state before this item
        uid: Uid of the item at index.position

    Returns:
        Tuple of (state for the next item, classification of this item)
    """
    return index.advance(), index.classify(uid)
