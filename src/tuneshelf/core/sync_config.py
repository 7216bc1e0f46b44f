"""Configuration for sync behavior and performance tuning."""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional

from tuneshelf.core.config import settings

# All tags we cater for. Not all of them are real ID3 frame names.
ALL_TAGS = (
    "artist",
    "album",
    "title",
    "length",
    "track",
    "lyrics",
    "cover",
    "mtime",
    "compilation",
)


def resolve_tags(requested: Optional[Iterable[str]] = None) -> FrozenSet[str]:
    """Tags to sync for existing tracks.

    Unknown names are dropped; an empty (or wholly unknown) request means all
    tags. ``mtime`` is always tracked.
    """
    tags = frozenset(t.strip().lower() for t in (requested or ())) & set(ALL_TAGS)
    if not tags:
        tags = frozenset(ALL_TAGS)
    return tags | {"mtime"}


@dataclass
class SyncConfig:
    """Tuning for the sync engine.

    Attributes:
        max_concurrent_files: Items reconciled in parallel (default: 10)
        extraction_workers: Thread pool size for tag extraction (default: min(8, max_concurrent_files * 2))
        commit_interval: Commit every N items processed (default: 100)
        progress_update_interval: Update task progress every N items (default: 10)
        delete_chunk_size: Ids per DELETE statement during the sweep (default: 500)
        max_failures: Consecutive failed runs before a track loses orphan protection

    Example:
        >>> config = SyncConfig(max_concurrent_files=20, commit_interval=200)
        >>> synchronizer = LibrarySynchronizer(catalog, config=config)
    """

    max_concurrent_files: int = 10
    extraction_workers: Optional[int] = None
    commit_interval: int = 100
    progress_update_interval: int = 10
    delete_chunk_size: int = 500
    max_failures: int = field(default_factory=lambda: settings.SYNC_MAX_FAILURES)

    def __post_init__(self):
        """Validate configuration values and set computed defaults.

        Raises:
            ValueError: If any configuration value is invalid.
        """
        if self.extraction_workers is None:
            self.extraction_workers = min(8, self.max_concurrent_files * 2)
        if self.max_concurrent_files < 1:
            raise ValueError("max_concurrent_files must be >= 1")
        if self.extraction_workers < 1:
            raise ValueError("extraction_workers must be >= 1")
        if self.commit_interval < 1:
            raise ValueError("commit_interval must be >= 1")
        if self.progress_update_interval < 1:
            raise ValueError("progress_update_interval must be >= 1")
        if self.delete_chunk_size < 1:
            raise ValueError("delete_chunk_size must be >= 1")
        if self.max_failures < 1:
            raise ValueError("max_failures must be >= 1")


@dataclass(frozen=True)
class SyncOptions:
    """Per-run options, passed explicitly into every entry point.

    Attributes:
        tags: Tags to rewrite on existing tracks (see ``resolve_tags``).
        force: Rewrite existing tracks even when nothing changed.
        substitutions: Flat (find, replace, ...) list for manifest locations.
        timeout: Time budget in seconds; 0 means none. Running out behaves
            like a cancellation.
    """

    tags: FrozenSet[str] = field(default_factory=resolve_tags)
    force: bool = False
    substitutions: tuple = ()
    timeout: float = 0

    @classmethod
    def create(
        cls,
        tags: Optional[Iterable[str]] = None,
        force: bool = False,
        substitutions: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> "SyncOptions":
        """Build options, falling back to settings for anything not given."""
        return cls(
            tags=resolve_tags(tags if tags else settings.SYNC_TAGS),
            force=force,
            substitutions=tuple(
                substitutions if substitutions is not None else settings.SYNC_SUBSTITUTIONS
            ),
            timeout=settings.SYNC_TIMEOUT if timeout is None else timeout,
        )

    @property
    def tag_list(self) -> List[str]:
        return sorted(self.tags)
