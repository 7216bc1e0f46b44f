"""Outcome and statistics types for reconciliation runs.

This module provides the per-item classification used inside one run and the
aggregate report returned to callers, replacing the loose "good/bad/ugly"
buckets with structured, typed data.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class SyncOutcome(str, Enum):
    """Classification of one reconciled item."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"

    @property
    def is_survivor(self) -> bool:
        """Whether the item confirms its track is still present at the source."""
        return self is not SyncOutcome.FAILED

    @property
    def is_change(self) -> bool:
        return self in (SyncOutcome.CREATED, SyncOutcome.UPDATED)


class ManifestStatus(str, Enum):
    """How a manifest import went, surfaced to the caller."""

    OK = "ok"
    MALFORMED = "malformed"  # Parsed, but expected top-level keys are missing
    UNREADABLE = "unreadable"  # Not a property list at all


@dataclass(frozen=True)
class SyncResult:
    """Result of reconciling a single path.

    Attributes:
        path: Normalized path that was reconciled.
        track_id: Identity of the path (set even when the item failed).
        outcome: The item classification.
        error: Failure reason when outcome is FAILED.
        retained: For FAILED items, whether an existing track must survive
            the orphan sweep (it has not exhausted its failure allowance).
    """

    path: str
    track_id: str
    outcome: SyncOutcome
    error: Optional[str] = None
    retained: bool = False


@dataclass(frozen=True)
class PlaylistResult:
    """Result of reconciling one manifest playlist."""

    name: str
    external_id: Optional[int]
    skipped: bool = False
    attached: frozenset = frozenset()
    detached: frozenset = frozenset()

    @property
    def unchanged(self) -> bool:
        return not self.attached and not self.detached


@dataclass
class SyncStats:
    """Aggregate counts for a full sync.

    Attributes:
        created: Tracks inserted.
        updated: Tracks rewritten.
        unchanged: Tracks confirmed without changes.
        failed: Items that could not be read or written.
        deleted: Orphan tracks removed by the sweep.
        playlists_processed: Manifest playlists visited (skipped ones included).
        playlists_deleted: Stored playlists dropped because the manifest no longer lists them.
        cancelled: Set when the run stopped early; no sweep ran.
        manifest_status: Present only for manifest imports.

    Example:
        >>> stats = SyncStats()
        >>> stats.record(SyncOutcome.CREATED)
        >>> stats.to_dict()["created"]
        1
    """

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    deleted: int = 0
    playlists_processed: int = 0
    playlists_deleted: int = 0
    cancelled: bool = False
    manifest_status: Optional[ManifestStatus] = None
    failures: list = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.unchanged + self.failed

    @property
    def changed(self) -> bool:
        return bool(
            self.created
            or self.updated
            or self.deleted
            or self.playlists_deleted
        )

    def record(self, outcome: SyncOutcome) -> None:
        """Count one item outcome."""
        if outcome is SyncOutcome.CREATED:
            self.created += 1
        elif outcome is SyncOutcome.UPDATED:
            self.updated += 1
        elif outcome is SyncOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "deleted": self.deleted,
            "playlists_processed": self.playlists_processed,
            "playlists_deleted": self.playlists_deleted,
            "cancelled": self.cancelled,
            "manifest_status": (
                self.manifest_status.value if self.manifest_status else None
            ),
        }

    def __str__(self) -> str:
        return (
            f"SyncStats(created={self.created}, updated={self.updated}, "
            f"unchanged={self.unchanged}, failed={self.failed}, deleted={self.deleted})"
        )
