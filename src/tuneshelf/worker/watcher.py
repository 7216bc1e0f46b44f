"""Incremental reconciliation driven by filesystem notifications.

``WatchEventHandler`` applies one ``WatchRecord`` at a time and never runs the
orphan sweep. Records come either from ``inotifywait`` output lines
(``WatchRecord.from_inotify``) or from ``LibraryWatcher``, which bridges a
watchdog observer thread onto an asyncio queue that is drained serially.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger
from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from tuneshelf.catalog.base import Catalog
from tuneshelf.core.events import CatalogChanged, CatalogEvents
from tuneshelf.core.exceptions import CatalogUnavailableError, PersistenceError
from tuneshelf.core.identity import directory_prefix, normalize_path, track_id_for
from tuneshelf.core.stats import SyncStats
from tuneshelf.core.sync_config import SyncConfig, SyncOptions
from tuneshelf.worker.discovery import is_media_file, iter_media_files
from tuneshelf.worker.reconciler import TrackReconciler
from tuneshelf.worker.tags import TagReader
from tuneshelf.worker.tidy import tidy


class WatchKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


class WatchEvent(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


# inotify event names -> WatchEvent
_INOTIFY_EVENTS = {
    "CLOSE_WRITE": WatchEvent.MODIFIED,
    "CREATE": WatchEvent.CREATED,
    "MOVED_TO": WatchEvent.CREATED,
    "DELETE": WatchEvent.DELETED,
    "MOVED_FROM": WatchEvent.DELETED,
}


@dataclass(frozen=True)
class WatchRecord:
    """One filesystem notification."""

    path: str
    kind: WatchKind
    event: WatchEvent

    @classmethod
    def from_inotify(cls, line: str) -> "WatchRecord":
        """Parse an ``inotifywait --format "%e %w%f"`` line.

        >>> WatchRecord.from_inotify("DELETE,ISDIR /music/Old Album")
        WatchRecord(path='/music/Old Album', kind=<WatchKind.DIRECTORY: 'directory'>, event=<WatchEvent.DELETED: 'deleted'>)

        Raises:
            ValueError: The line has no path or carries no supported event.
        """
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            raise ValueError(f"Malformed watch record: {line!r}")
        flags = {f.strip().upper() for f in parts[0].split(",")}
        kind = WatchKind.DIRECTORY if "ISDIR" in flags else WatchKind.FILE
        # Deletion wins if a line carries both kinds of flag
        events = [_INOTIFY_EVENTS[f] for f in flags if f in _INOTIFY_EVENTS]
        if not events:
            raise ValueError(f"Unsupported watch event(s) {parts[0]!r}")
        if WatchEvent.DELETED in events:
            event = WatchEvent.DELETED
        elif WatchEvent.CREATED in events:
            event = WatchEvent.CREATED
        else:
            event = WatchEvent.MODIFIED
        return cls(parts[1], kind, event)


def records_from_fs_event(event: FileSystemEvent) -> List[WatchRecord]:
    """Translate a watchdog event; a move becomes Deleted + Created."""
    kind = WatchKind.DIRECTORY if event.is_directory else WatchKind.FILE
    src = str(event.src_path)

    if event.event_type == EVENT_TYPE_MOVED:
        return [
            WatchRecord(src, kind, WatchEvent.DELETED),
            WatchRecord(str(event.dest_path), kind, WatchEvent.CREATED),
        ]
    if event.event_type == EVENT_TYPE_DELETED:
        return [WatchRecord(src, kind, WatchEvent.DELETED)]
    if event.event_type == EVENT_TYPE_CREATED:
        return [WatchRecord(src, kind, WatchEvent.CREATED)]
    if event.event_type in (EVENT_TYPE_MODIFIED, EVENT_TYPE_CLOSED):
        # A directory's mtime changes with every child; the child reports itself
        if kind is WatchKind.DIRECTORY:
            return []
        return [WatchRecord(src, kind, WatchEvent.MODIFIED)]
    return []


class WatchEventHandler:
    """Applies watch records to the catalog, one at a time.

    Every mutating record is committed on its own and followed by exactly one
    catalog-changed notification; records that change nothing emit nothing.
    """

    def __init__(
        self,
        catalog: Catalog,
        tag_reader: Optional[TagReader] = None,
        config: Optional[SyncConfig] = None,
        events: Optional[CatalogEvents] = None,
        options: Optional[SyncOptions] = None,
        reconciler: Optional[TrackReconciler] = None,
    ):
        self.catalog = catalog
        self.events = events or CatalogEvents()
        self.options = options or SyncOptions.create()
        self.reconciler = reconciler or TrackReconciler(catalog, tag_reader, config)

    async def handle(self, record: WatchRecord) -> bool:
        """Apply ``record``. Returns True when the catalog changed."""
        logger.debug(f"Watch record: {record.kind.value} {record.event.value} {record.path}")
        if record.kind is WatchKind.FILE:
            if record.event is WatchEvent.DELETED:
                return await self._delete_file(record.path)
            elif record.event in (WatchEvent.CREATED, WatchEvent.MODIFIED):
                return await self._sync_file(record.path)
        elif record.kind is WatchKind.DIRECTORY:
            if record.event is WatchEvent.DELETED:
                return await self._delete_directory(record.path)
            elif record.event in (WatchEvent.CREATED, WatchEvent.MODIFIED):
                return await self._sync_directory(record.path)
        raise ValueError(f"Unhandled watch record {record!r}")

    async def discard(self) -> None:
        """Drop uncommitted writes left behind by a failed record."""
        async with self.reconciler.lock:
            await self.catalog.rollback()

    async def _delete_file(self, path: str) -> bool:
        async with self.reconciler.lock:
            deleted = await self.catalog.tracks.delete([track_id_for(path)])
            if not deleted:
                logger.debug(f"{path} is not in the catalog; nothing to delete")
                return False
            await tidy(self.catalog)
            await self.catalog.commit()
        logger.info(f"Deleted {normalize_path(path)}")
        await self.events.emit(CatalogChanged("watch", {"deleted": deleted}))
        return True

    async def _delete_directory(self, path: str) -> bool:
        async with self.reconciler.lock:
            deleted = await self.catalog.tracks.delete_under(directory_prefix(path))
            if not deleted:
                return False
            await tidy(self.catalog)
            await self.catalog.commit()
        logger.info(f"Deleted {deleted} tracks under {normalize_path(path)}")
        await self.events.emit(CatalogChanged("watch", {"deleted": deleted}))
        return True

    async def _sync_file(self, path: str) -> bool:
        if not is_media_file(path):
            logger.debug(f"Ignoring non-media file {path}")
            return False
        result = await self.reconciler.reconcile(path, self.options)
        if result.error:
            logger.warning(f"{result.outcome.value.upper()} {result.path}: {result.error}")
        else:
            logger.info(f"{result.outcome.value.upper()} {result.path}")

        async with self.reconciler.lock:
            await self.catalog.commit()
        if not result.outcome.is_change:
            return False
        await self.events.emit(
            CatalogChanged("watch", {result.outcome.value: 1, "path": result.path})
        )
        return True

    async def _sync_directory(self, path: Union[str, Path]) -> bool:
        stats = SyncStats()
        loop = asyncio.get_running_loop()
        files = iter_media_files(path)
        while (file_path := await loop.run_in_executor(None, next, files, None)) is not None:
            result = await self.reconciler.reconcile(file_path, self.options)
            stats.record(result.outcome)
            if result.error:
                logger.warning(f"FAILED {result.path}: {result.error}")

        async with self.reconciler.lock:
            await self.catalog.commit()
        logger.info(f"Synced directory {path}: {stats}")
        if not (stats.created or stats.updated):
            return False
        await self.events.emit(CatalogChanged("watch", stats.to_dict()))
        return True


class _QueueingHandler(FileSystemEventHandler):
    """Runs on the watchdog thread; hands records to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[WatchRecord]"):
        self.loop = loop
        self.queue = queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        for record in records_from_fs_event(event):
            self.loop.call_soon_threadsafe(self.queue.put_nowait, record)


class LibraryWatcher:
    """Watches a media root with watchdog and feeds a ``WatchEventHandler``.

    Records are applied strictly in arrival order by a single consumer.
    """

    def __init__(self, root: Union[str, Path], handler: WatchEventHandler):
        self.root = str(root)
        self.handler = handler
        self.queue: "asyncio.Queue[WatchRecord]" = asyncio.Queue()
        self.observer: Optional[Observer] = None

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        observer = Observer()
        observer.schedule(_QueueingHandler(loop, self.queue), self.root, recursive=True)
        observer.start()
        self.observer = observer
        logger.info(f"Watching {self.root}")

    def stop(self) -> None:
        if self.observer:
            self.observer.stop()
            self.observer.join()
            self.observer = None

    async def drain(self) -> None:
        """Apply queued records forever, one at a time."""
        while True:
            record = await self.queue.get()
            try:
                await self.handler.handle(record)
            except ValueError as e:
                logger.warning(f"Skipping watch record: {e}")
            except CatalogUnavailableError:
                raise
            except PersistenceError as e:
                logger.error(f"Failed to apply {record.event.value} {record.path}: {e}")
                await self.handler.discard()
            finally:
                self.queue.task_done()

    async def run(self) -> None:
        self.start()
        try:
            await self.drain()
        finally:
            self.stop()
