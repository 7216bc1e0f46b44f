"""Full synchronization of the catalog against a directory tree or a manifest.

A sync reconciles every discovered item with bounded concurrency, then (only
once every item has finished) deletes the tracks that were not confirmed by
this run, reconciles manifest playlists, tidies albums/artists and emits a
single catalog-changed notification.

Typical usage example:
    async with AsyncSessionLocal() as session:
        synchronizer = LibrarySynchronizer(SqlCatalog(session))
        stats = await synchronizer.sync("/srv/music", SyncOptions.create(force=True))
        print(stats.to_dict())
"""

import asyncio
import os
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple, Union

from loguru import logger

from tuneshelf.catalog.base import Catalog
from tuneshelf.core.config import settings
from tuneshelf.core.events import (
    CatalogChanged,
    CatalogEvents,
    CompositeObserver,
    SyncObserver,
    TaskProgressObserver,
)
from tuneshelf.core.exceptions import CatalogUnavailableError, InvalidSubstitutionsError
from tuneshelf.core.stats import ManifestStatus, SyncResult, SyncStats
from tuneshelf.core.sync_config import SyncConfig, SyncOptions
from tuneshelf.core.task_store import TaskStore
from tuneshelf.worker.discovery import iter_media_files
from tuneshelf.worker.manifest import Manifest, is_manifest, parse_manifest
from tuneshelf.worker.paths import normalize_location, validate_substitutions
from tuneshelf.worker.playlists import PlaylistReconciler
from tuneshelf.worker.reconciler import TrackReconciler
from tuneshelf.worker.tags import TagReader
from tuneshelf.worker.tidy import tidy

WorkItem = Tuple[Union[str, Path], Optional[int]]  # path, manifest track id


class LibrarySynchronizer:
    """Drives discovery, item reconciliation, the orphan sweep and tidy.

    Attributes:
        catalog: Catalog being synchronized.
        config: SyncConfig with concurrency and batching settings.
        task_store: Progress and cancellation registry.
        events: Hub that receives the catalog-changed notification.
        reconciler: Per-item reconciler (shared with the watch handler).
    """

    def __init__(
        self,
        catalog: Catalog,
        tag_reader: Optional[TagReader] = None,
        config: Optional[SyncConfig] = None,
        task_store: Optional[TaskStore] = None,
        events: Optional[CatalogEvents] = None,
        observer: Optional[SyncObserver] = None,
    ):
        self.catalog = catalog
        self.config = config or SyncConfig()
        self.task_store = task_store or TaskStore.get_global()
        self.events = events or CatalogEvents()
        self.observer = observer
        self.reconciler = TrackReconciler(catalog, tag_reader, self.config)

    async def sync(
        self,
        source: Optional[Union[str, Path]] = None,
        options: Optional[SyncOptions] = None,
        task_id: Optional[str] = None,
        owner_id: Optional[int] = None,
    ) -> SyncStats:
        """Synchronize the catalog with ``source``.

        Args:
            source: Media directory or manifest file (defaults to MEDIA_PATH).
            options: Per-run options; defaults come from settings.
            task_id: Optional TaskStore id for progress and cancellation.
            owner_id: Owner of manifest playlists (defaults to the admin user).

        Returns:
            SyncStats with per-outcome counts.

        Raises:
            CatalogUnavailableError: The catalog went away; nothing after the
                last commit is kept, and no sweep or tidy ran.
        """
        options = options or SyncOptions.create()
        source = str(source or settings.MEDIA_PATH)
        stats = SyncStats()
        observer = CompositeObserver(
            self.observer,
            TaskProgressObserver(
                self.task_store, task_id, self.config.progress_update_interval
            )
            if task_id
            else None,
        )

        manifest: Optional[Manifest] = None
        if is_manifest(source):
            manifest = parse_manifest(source)
            stats.manifest_status = manifest.status
            if manifest.status is not ManifestStatus.OK:
                # Nothing was read, so nothing may be swept
                if task_id:
                    self.task_store.complete_task(
                        task_id, success=False, error=manifest.error, result=stats.to_dict()
                    )
                return stats
            items = self._manifest_items(manifest, options)
        elif os.path.isdir(source):
            items = ((p, None) for p in iter_media_files(source))
        else:
            logger.error(f"Media source not found: {source!r}")
            stats.failures.append((source, "source not found"))
            if task_id:
                self.task_store.complete_task(
                    task_id, success=False, error="Source not found"
                )
            return stats

        if task_id:
            total = len(manifest.tracks) if manifest else 0
            self.task_store.update_total(task_id, total, "Starting sync...")
        logger.info(
            f"Syncing {source} (tags={options.tag_list}, force={options.force}, "
            f"max {self.config.max_concurrent_files} concurrent files)"
        )

        try:
            keep = await self._process_items(items, options, stats, observer, task_id)

            if stats.cancelled:
                async with self.reconciler.lock:
                    await self.catalog.commit()
                logger.warning(f"Sync cancelled after {stats.processed} files; sweep skipped")
                if task_id:
                    self.task_store.mark_cancelled(task_id, result=stats.to_dict())
                observer.on_complete(stats)
                return stats

            async with self.reconciler.lock:
                stats.deleted = await self._sweep(keep)

            if manifest is not None:
                await self._sync_playlists(manifest, owner_id, stats, observer)

            async with self.reconciler.lock:
                await tidy(self.catalog)
                await self.catalog.commit()
        except CatalogUnavailableError as e:
            logger.error(f"Catalog unavailable, aborting sync: {e}")
            await self._safe_rollback()
            if task_id:
                self.task_store.complete_task(
                    task_id, success=False, error=str(e), result=stats.to_dict()
                )
            raise

        await self.events.emit(CatalogChanged("sync", stats.to_dict()))
        observer.on_complete(stats)
        if task_id:
            self.task_store.complete_task(task_id, success=True, result=stats.to_dict())
            logger.success(f"Task {task_id} completed: {stats}")
        return stats

    def close(self) -> None:
        """Release the tag extraction thread pool."""
        self.reconciler.close()

    def _manifest_items(self, manifest: Manifest, options: SyncOptions) -> Iterator[WorkItem]:
        substitutions = options.substitutions
        try:
            validate_substitutions(substitutions)
        except InvalidSubstitutionsError as e:
            logger.warning(f"Ignoring path substitutions: {e}")
            substitutions = ()
        return (
            (normalize_location(t.location, substitutions), t.external_id)
            for t in manifest.tracks
        )

    def _should_stop(self, task_id: Optional[str], deadline: Optional[float]) -> bool:
        if task_id and self.task_store.is_cancelled(task_id):
            return True
        return deadline is not None and asyncio.get_running_loop().time() >= deadline

    async def _process_items(
        self,
        items: Iterator[WorkItem],
        options: SyncOptions,
        stats: SyncStats,
        observer: SyncObserver,
        task_id: Optional[str],
    ) -> Set[str]:
        """Reconcile all items with ``max_concurrent_files`` workers.

        Returns:
            Track ids that must survive the orphan sweep.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + options.timeout if options.timeout else None
        keep: Set[str] = set()
        iter_lock = asyncio.Lock()
        aborted = asyncio.Event()

        async def next_item() -> Optional[WorkItem]:
            # Discovery does blocking scandir calls; one thread at a time
            async with iter_lock:
                return await loop.run_in_executor(None, next, items, None)

        async def worker() -> None:
            while not stats.cancelled and not aborted.is_set():
                if self._should_stop(task_id, deadline):
                    if not stats.cancelled:
                        stats.cancelled = True
                        logger.info(f"Sync stopping at {stats.processed} files")
                    return
                item = await next_item()
                if item is None:
                    return
                path, external_id = item
                try:
                    result = await self.reconciler.reconcile(path, options, external_id)
                except CatalogUnavailableError:
                    aborted.set()
                    raise
                await self._record(result, stats, keep, observer)

        # Every worker must finish before the sweep may look at `keep`
        outcomes = await asyncio.gather(
            *[worker() for _ in range(self.config.max_concurrent_files)],
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return keep

    async def _record(
        self,
        result: SyncResult,
        stats: SyncStats,
        keep: Set[str],
        observer: SyncObserver,
    ) -> None:
        stats.record(result.outcome)
        if result.outcome.is_survivor or result.retained:
            keep.add(result.track_id)
        if result.error:
            stats.failures.append((result.path, result.error))
        observer.on_item(result)

        if stats.processed % self.config.commit_interval == 0:
            async with self.reconciler.lock:
                await self.catalog.commit()
            logger.debug(f"Committed at {stats.processed} files")

    async def _sweep(self, keep: Set[str]) -> int:
        """Delete every track not confirmed by this run. Caller holds the lock."""
        orphans: List[str] = sorted((await self.catalog.tracks.all_ids()) - keep)
        if not orphans:
            return 0
        deleted = 0
        size = self.config.delete_chunk_size
        for start in range(0, len(orphans), size):
            deleted += await self.catalog.tracks.delete(orphans[start : start + size])
        logger.info(f"Removed {deleted} tracks no longer present at the source")
        return deleted

    async def _sync_playlists(
        self,
        manifest: Manifest,
        owner_id: Optional[int],
        stats: SyncStats,
        observer: SyncObserver,
    ) -> None:
        if owner_id is None:
            async with self.reconciler.lock:
                admin = await self.catalog.users.get_admin()
            if admin is None:
                logger.error("No admin user to own manifest playlists; playlists skipped")
                return
            owner_id = admin.id

        playlists = PlaylistReconciler(self.catalog, self.reconciler.lock, observer)
        results, deleted = await playlists.reconcile(manifest.playlists, owner_id)
        stats.playlists_processed = len(results)
        stats.playlists_deleted = deleted

    async def _safe_rollback(self) -> None:
        try:
            await self.catalog.rollback()
        except CatalogUnavailableError as e:
            logger.debug(f"Rollback failed as well: {e}")
