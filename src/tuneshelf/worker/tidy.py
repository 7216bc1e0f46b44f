"""Removal of albums and artists that no track references any more."""

from dataclasses import dataclass

from loguru import logger

from tuneshelf.catalog.base import Catalog
from tuneshelf.core.entities import SENTINEL_ALBUM_IDS, SENTINEL_ARTIST_IDS


@dataclass(frozen=True)
class TidyResult:
    albums_deleted: int = 0
    artists_deleted: int = 0


async def tidy(catalog: Catalog) -> TidyResult:
    """Delete unreferenced non-sentinel albums, then unreferenced artists.

    Albums go first so that an artist kept alive only by a just-deleted album
    is removed in the same pass.
    """
    keep_albums = await catalog.tracks.referenced_album_ids() | SENTINEL_ALBUM_IDS
    albums_deleted = await catalog.albums.delete_except(keep_albums)

    keep_artists = (
        await catalog.tracks.referenced_artist_ids()
        | await catalog.albums.referenced_artist_ids()
        | SENTINEL_ARTIST_IDS
    )
    artists_deleted = await catalog.artists.delete_except(keep_artists)

    if albums_deleted or artists_deleted:
        logger.info(f"Tidy removed {albums_deleted} albums and {artists_deleted} artists")
    return TidyResult(albums_deleted, artists_deleted)
