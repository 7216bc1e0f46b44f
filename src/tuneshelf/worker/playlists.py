"""Reconciling manifest playlists with stored playlists and memberships."""

import asyncio
from typing import Iterable, List, Optional, Set, Tuple

from loguru import logger

from tuneshelf.catalog.base import Catalog
from tuneshelf.core.events import SyncObserver
from tuneshelf.core.exceptions import CatalogUnavailableError, PersistenceError
from tuneshelf.core.stats import PlaylistResult
from tuneshelf.worker.manifest import ManifestPlaylist


class PlaylistReconciler:
    """Diffs manifest playlists against the owner's stored playlists.

    Manifest playlists are matched by external id, never by name. Invisible
    entries and entries without an item list are skipped but still count as
    present, so their stored counterpart survives. An empty item list detaches
    every member.
    """

    def __init__(
        self,
        catalog: Catalog,
        lock: Optional[asyncio.Lock] = None,
        observer: Optional[SyncObserver] = None,
    ):
        self.catalog = catalog
        self.lock = lock or asyncio.Lock()
        self.observer = observer

    async def reconcile(
        self, playlists: Iterable[ManifestPlaylist], owner_id: int
    ) -> Tuple[List[PlaylistResult], int]:
        """Sync every playlist, then drop stored ones the manifest no longer lists.

        Returns:
            (per-playlist results, number of stored playlists deleted)
        """
        results: List[PlaylistResult] = []
        present: Set[int] = set()

        for entry in playlists:
            present.add(entry.external_id)
            if not entry.visible or entry.item_ids is None:
                result = PlaylistResult(entry.name, entry.external_id, skipped=True)
            else:
                try:
                    result = await self._sync_one(entry, owner_id)
                except CatalogUnavailableError:
                    raise
                except PersistenceError as e:
                    logger.error(f"Failed to sync playlist {entry.name!r}: {e}")
                    result = PlaylistResult(entry.name, entry.external_id, skipped=True)
            results.append(result)
            if self.observer:
                self.observer.on_playlist(result)

        async with self.lock:
            deleted = await self.catalog.playlists.delete_external_except(owner_id, present)
        if deleted:
            logger.info(f"Removed {deleted} playlists no longer in the manifest")
        return results, deleted

    async def _sync_one(self, entry: ManifestPlaylist, owner_id: int) -> PlaylistResult:
        async with self.lock:
            async with self.catalog.savepoint():
                playlist = await self.catalog.playlists.get_by_external_id(
                    owner_id, entry.external_id
                )
                if playlist is None:
                    playlist = await self.catalog.playlists.add(
                        owner_id, entry.name, entry.external_id
                    )
                    logger.debug(f"Created playlist {entry.name!r}")
                elif playlist.name != entry.name:
                    await self.catalog.playlists.rename(playlist.id, entry.name)

                # Unresolved items (tracks that failed or were filtered) are dropped
                resolved = await self.catalog.tracks.ids_by_external_id(entry.item_ids)
                wanted = {resolved[i] for i in entry.item_ids if i in resolved}
                current = await self.catalog.playlists.track_ids(playlist.id)

                to_attach = wanted - current
                to_detach = current - wanted
                if to_attach:
                    await self.catalog.playlists.attach(playlist.id, to_attach)
                if to_detach:
                    await self.catalog.playlists.detach(playlist.id, to_detach)

        return PlaylistResult(
            entry.name,
            entry.external_id,
            attached=frozenset(to_attach),
            detached=frozenset(to_detach),
        )
