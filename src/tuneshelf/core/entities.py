"""Immutable catalog values passed between the reconciliation engine and the catalog.

The ORM rows in ``tuneshelf.core.models`` never leave the SQL catalog; every
repository call returns one of these frozen dataclasses instead, so the engine
can run unchanged against the in-memory catalog.
"""

from dataclasses import dataclass
from typing import Optional

# Sentinel rows seeded by init_db(); Tidy never deletes them.
UNKNOWN_ARTIST_ID = 1
UNKNOWN_ARTIST_NAME = "Unknown Artist"
VARIOUS_ARTISTS_ID = 2
VARIOUS_ARTISTS_NAME = "Various Artists"
UNKNOWN_ALBUM_ID = 1
UNKNOWN_ALBUM_NAME = "Unknown Album"

SENTINEL_ARTIST_IDS = frozenset({UNKNOWN_ARTIST_ID, VARIOUS_ARTISTS_ID})
SENTINEL_ALBUM_IDS = frozenset({UNKNOWN_ALBUM_ID})


@dataclass(frozen=True)
class Artist:
    id: int
    name: str

    @property
    def is_sentinel(self) -> bool:
        return self.id in SENTINEL_ARTIST_IDS


@dataclass(frozen=True)
class Album:
    id: int
    artist_id: int
    name: str

    @property
    def is_sentinel(self) -> bool:
        return self.id in SENTINEL_ALBUM_IDS


@dataclass(frozen=True)
class Track:
    """A catalog track, keyed by the hash of its source path.

    Attributes:
        id: ``track_id_for(path)``.
        path: Normalized absolute path of the source file.
        artist_id: Primary artist (Various Artists for compilations).
        contributing_artist_id: Performer on a compilation, else None.
        cover: Reference (content digest) of the embedded artwork, if any.
        mtime: File modification time seen at the last successful sync.
        external_id: Track id in an imported manifest, if any.
        sync_failures: Consecutive failed extractions since the last success.
    """

    id: str
    path: str
    title: str
    album_id: int = UNKNOWN_ALBUM_ID
    artist_id: int = UNKNOWN_ARTIST_ID
    contributing_artist_id: Optional[int] = None
    length: float = 0.0
    track: int = 0
    lyrics: str = ""
    cover: Optional[str] = None
    mtime: float = 0.0
    external_id: Optional[int] = None
    sync_failures: int = 0


@dataclass(frozen=True)
class User:
    id: int
    name: str
    is_admin: bool = False


@dataclass(frozen=True)
class Playlist:
    id: int
    user_id: int
    name: str
    external_id: Optional[int] = None
