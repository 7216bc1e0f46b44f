"""Single-item reconciliation: insert, update, skip or fail one path.

Tag extraction runs in a thread pool and may overlap freely; everything that
touches the catalog runs under one asyncio lock and inside its own savepoint,
so a failed write only undoes the current item and check-then-create of
artists/albums can never race.

Typical usage example:
    reconciler = TrackReconciler(catalog)
    result = await reconciler.reconcile("/music/a.mp3", SyncOptions())
    print(result.outcome)
"""

import asyncio
import concurrent.futures
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from loguru import logger

from tuneshelf.catalog.base import Catalog
from tuneshelf.core.entities import (
    UNKNOWN_ALBUM_ID,
    UNKNOWN_ARTIST_ID,
    VARIOUS_ARTISTS_ID,
    Track,
)
from tuneshelf.core.exceptions import (
    CatalogUnavailableError,
    PersistenceError,
    TagExtractionError,
)
from tuneshelf.core.identity import normalize_path, track_id_for
from tuneshelf.core.stats import SyncOutcome, SyncResult
from tuneshelf.core.sync_config import SyncConfig, SyncOptions
from tuneshelf.worker.tags import MutagenTagReader, TagInfo, TagReader

# Tags copied 1:1 from TagInfo onto Track
SCALAR_TAGS = ("title", "length", "track", "lyrics", "cover", "mtime")
# Tags that decide album/artist references; resolved together
RELATION_TAGS = frozenset({"artist", "album", "compilation"})

ArtistRefs = Tuple[int, int, Optional[int]]  # album_id, artist_id, contributing_artist_id


class TrackReconciler:
    """Reconciles individual paths against the catalog.

    Attributes:
        catalog: Catalog the results are written to.
        tag_reader: Blocking tag extractor (Mutagen by default).
        config: SyncConfig (extraction pool size, failure threshold).
        executor: Thread pool for tag extraction.
    """

    def __init__(
        self,
        catalog: Catalog,
        tag_reader: Optional[TagReader] = None,
        config: Optional[SyncConfig] = None,
        executor: Optional[concurrent.futures.Executor] = None,
    ):
        self.catalog = catalog
        self.tag_reader = tag_reader or MutagenTagReader()
        self.config = config or SyncConfig()
        self._owns_executor = executor is None
        self.executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.extraction_workers
        )
        # Serializes every catalog access; the session is not task-safe
        self._processing_lock = asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        return self._processing_lock

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    async def reconcile(
        self,
        path: Union[str, Path],
        options: SyncOptions,
        external_id: Optional[int] = None,
    ) -> SyncResult:
        """Bring the catalog record for ``path`` in line with the file.

        Returns:
            SyncResult with CREATED, UPDATED, UNCHANGED or FAILED.

        Raises:
            CatalogUnavailableError: The catalog cannot be reached at all.
        """
        path_str = normalize_path(path)
        track_id = track_id_for(path_str)

        loop = asyncio.get_running_loop()
        try:
            info = await loop.run_in_executor(
                self.executor, self.tag_reader.extract, path_str
            )
        except TagExtractionError as e:
            return await self._record_failure(path_str, track_id, e)
        except Exception as e:
            # Readers other than MutagenTagReader may raise anything
            error = TagExtractionError(path_str, f"{type(e).__name__}: {e}")
            return await self._record_failure(path_str, track_id, error)

        try:
            async with self._processing_lock:
                async with self.catalog.savepoint():
                    return await self._apply(path_str, track_id, info, options, external_id)
        except CatalogUnavailableError:
            raise
        except PersistenceError as e:
            return self._handle_item_error(path_str, track_id, e)

    async def _apply(
        self,
        path_str: str,
        track_id: str,
        info: TagInfo,
        options: SyncOptions,
        external_id: Optional[int],
    ) -> SyncResult:
        """Create or update under the lock. Caller holds ``_processing_lock``."""
        existing = await self.catalog.tracks.get(track_id)

        if existing is None:
            album_id, artist_id, contributing_id = await self._resolve_refs(info, create=True)
            await self.catalog.tracks.add(
                Track(
                    id=track_id,
                    path=path_str,
                    title=info.title,
                    album_id=album_id,
                    artist_id=artist_id,
                    contributing_artist_id=contributing_id,
                    length=info.length,
                    track=info.track,
                    lyrics=info.lyrics,
                    cover=info.cover,
                    mtime=info.mtime,
                    external_id=external_id,
                )
            )
            return SyncResult(path_str, track_id, SyncOutcome.CREATED)

        tags = set(options.tags) | {"mtime"}
        changes = await self._changed_fields(existing, info, tags, options.force)

        # Bookkeeping fields are written but do not make the item "updated"
        bookkeeping: Dict[str, Any] = {}
        if existing.sync_failures:
            bookkeeping["sync_failures"] = 0
        if external_id is not None and existing.external_id != external_id:
            bookkeeping["external_id"] = external_id

        if changes or bookkeeping:
            await self.catalog.tracks.update(replace(existing, **changes, **bookkeeping))
        if not changes:
            return SyncResult(path_str, track_id, SyncOutcome.UNCHANGED)
        return SyncResult(path_str, track_id, SyncOutcome.UPDATED)

    async def _changed_fields(
        self, existing: Track, info: TagInfo, tags: set, force: bool
    ) -> Dict[str, Any]:
        """Requested fields whose value differs (all requested fields if forced)."""
        changes: Dict[str, Any] = {}
        for tag in SCALAR_TAGS:
            if tag in tags and (force or getattr(existing, tag) != getattr(info, tag)):
                changes[tag] = getattr(info, tag)

        if tags & RELATION_TAGS:
            current = (existing.album_id, existing.artist_id, existing.contributing_artist_id)
            # Look up without creating so an unchanged track never adds rows
            refs = await self._resolve_refs(info, create=False, existing=existing, tags=tags)
            if force or refs != current:
                album_id, artist_id, contributing_id = await self._resolve_refs(
                    info, create=True, existing=existing, tags=tags
                )
                if force or (album_id, artist_id, contributing_id) != current:
                    changes.update(
                        album_id=album_id,
                        artist_id=artist_id,
                        contributing_artist_id=contributing_id,
                    )
        return changes

    async def _resolve_refs(
        self,
        info: TagInfo,
        create: bool,
        existing: Optional[Track] = None,
        tags: Iterable[str] = RELATION_TAGS,
    ) -> Optional[ArtistRefs]:
        """Map tag names to (album, artist, contributing artist) ids.

        Compilations are filed under Various Artists with the performer as
        contributing artist. With ``create=False`` a missing row yields None.

        For an ``existing`` track only the relations named in ``tags`` are
        resolved; the others keep their stored ids. ``compilation`` governs
        both the artist and the album. Without an album artist tag the album
        is looked up under the track's effective artist.
        """
        compilation = "compilation" in tags
        if existing is None or compilation or "artist" in tags:
            if info.is_compilation:
                artist_id: Optional[int] = VARIOUS_ARTISTS_ID
                contributing_id = await self._artist_id(info.artist, create)
                if contributing_id is None:
                    return None
            else:
                artist_id = await self._artist_id(info.artist, create)
                contributing_id = None
                if artist_id is None:
                    return None
        else:
            artist_id = existing.artist_id
            contributing_id = existing.contributing_artist_id

        if existing is not None and not compilation and "album" not in tags:
            return existing.album_id, artist_id, contributing_id
        if not info.album:
            return UNKNOWN_ALBUM_ID, artist_id, contributing_id

        if info.is_compilation:
            album_artist_id: Optional[int] = VARIOUS_ARTISTS_ID
        elif info.album_artist:
            album_artist_id = await self._artist_id(info.album_artist, create)
            if album_artist_id is None:
                return None
        else:
            album_artist_id = artist_id
        album = await self.catalog.albums.find(album_artist_id, info.album)
        if album is None:
            if not create:
                return None
            album = await self.catalog.albums.add(album_artist_id, info.album)
            logger.debug(f"Created album {info.album!r} (artist {album_artist_id})")
        return album.id, artist_id, contributing_id

    async def _artist_id(self, name: str, create: bool) -> Optional[int]:
        if not name:
            return UNKNOWN_ARTIST_ID
        artist = await self.catalog.artists.find(name)
        if artist is None:
            if not create:
                return None
            artist = await self.catalog.artists.add(name)
            logger.debug(f"Created artist {name!r}")
        return artist.id

    async def _record_failure(
        self, path_str: str, track_id: str, error: TagExtractionError
    ) -> SyncResult:
        """Bump the failure counter of an existing track and report FAILED.

        The track stays protected from the orphan sweep while its counter is
        below ``config.max_failures``.
        """
        logger.warning(f"Tag extraction failed for {path_str}: {error.reason}")
        retained = False
        try:
            async with self._processing_lock:
                async with self.catalog.savepoint():
                    existing = await self.catalog.tracks.get(track_id)
                    if existing is not None:
                        retained = existing.sync_failures < self.config.max_failures - 1
                        await self.catalog.tracks.update(
                            replace(existing, sync_failures=existing.sync_failures + 1)
                        )
                        if not retained:
                            logger.warning(
                                f"{path_str} failed {existing.sync_failures + 1} times in a row; "
                                "no longer protected from removal"
                            )
        except CatalogUnavailableError:
            raise
        except PersistenceError as e:
            logger.warning(f"Could not record failure for {path_str}: {e}")
        return SyncResult(
            path_str, track_id, SyncOutcome.FAILED, error=error.reason, retained=retained
        )

    def _handle_item_error(
        self, path_str: str, track_id: str, error: Exception
    ) -> SyncResult:
        """Centralized logging for item-level write failures.

        The file itself was readable, so an existing record is kept.
        """
        logger.error(f"Failed to store {path_str}: {type(error).__name__}: {error}")
        return SyncResult(
            path_str, track_id, SyncOutcome.FAILED, error=str(error), retained=True
        )
