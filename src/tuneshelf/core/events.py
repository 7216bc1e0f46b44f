"""Catalog-changed notifications and progress observers.

Downstream consumers (cache invalidation, UI refresh) subscribe to
``CatalogEvents``. Progress reporting is an optional ``SyncObserver``; the
engine never depends on one being present.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol

from loguru import logger

from tuneshelf.core.stats import PlaylistResult, SyncResult, SyncStats
from tuneshelf.core.task_store import TaskStore


@dataclass(frozen=True)
class CatalogChanged:
    """Emitted after a full sync or any mutating watch event."""

    reason: str  # 'sync', 'watch'
    details: dict = field(default_factory=dict)


Listener = Callable[[CatalogChanged], Any]


class CatalogEvents:
    """Tiny publish/subscribe hub. Listeners may be plain or async callables."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self.emitted = 0

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a callable that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def emit(self, event: CatalogChanged) -> None:
        self.emitted += 1
        logger.debug(f"Catalog changed ({event.reason}): {event.details}")
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # A broken subscriber must not undo a committed sync
                logger.error(f"Catalog listener {listener!r} failed: {e}")


class SyncObserver(Protocol):
    """Receives per-item and per-playlist outcomes plus the final counts."""

    def on_item(self, result: SyncResult) -> None: ...

    def on_playlist(self, result: PlaylistResult) -> None: ...

    def on_complete(self, stats: SyncStats) -> None: ...


class LoggingObserver:
    """Writes every outcome to the log; the console front end for the CLI."""

    def on_item(self, result: SyncResult) -> None:
        if result.error:
            logger.warning(f"{result.outcome.value.upper():<9} {result.path}: {result.error}")
        else:
            logger.info(f"{result.outcome.value.upper():<9} {result.path}")

    def on_playlist(self, result: PlaylistResult) -> None:
        if result.skipped:
            state = "SKIPPED"
        elif result.unchanged:
            state = "UNCHANGED"
        else:
            state = f"+{len(result.attached)} -{len(result.detached)}"
        logger.info(f"Playlist {result.name!r}: {state}")

    def on_complete(self, stats: SyncStats) -> None:
        logger.success(f"Sync finished: {stats.to_dict()}")


class TaskProgressObserver:
    """Mirrors progress into a TaskStore entry."""

    def __init__(self, task_store: TaskStore, task_id: str, interval: int = 10):
        self.task_store = task_store
        self.task_id = task_id
        self.interval = interval
        self._seen = 0
        self._changed = 0

    def on_item(self, result: SyncResult) -> None:
        self._seen += 1
        if result.outcome.is_change:
            self._changed += 1
        if self._seen % self.interval == 0:
            self.task_store.update_progress(
                self.task_id,
                self._seen,
                f"Synced {self._seen} files ({self._changed} changed)",
            )

    def on_playlist(self, result: PlaylistResult) -> None:
        self.task_store.update_progress(
            self.task_id, self._seen, f"Synced playlist {result.name}"
        )

    def on_complete(self, stats: SyncStats) -> None:
        self.task_store.update_progress(self.task_id, stats.processed, str(stats))


class CompositeObserver:
    """Fans notifications out to several observers."""

    def __init__(self, *observers: Optional[SyncObserver]):
        self.observers = [o for o in observers if o is not None]

    def on_item(self, result: SyncResult) -> None:
        for observer in self.observers:
            observer.on_item(result)

    def on_playlist(self, result: PlaylistResult) -> None:
        for observer in self.observers:
            observer.on_playlist(result)

    def on_complete(self, stats: SyncStats) -> None:
        for observer in self.observers:
            observer.on_complete(stats)
