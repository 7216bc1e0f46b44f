"""Dictionary-backed catalog.

Implements the same repository protocols as the SQL catalog so the
reconciliation engine can run without a database (unit tests, dry runs).
Savepoints snapshot the dictionaries and restore them on error.
"""

import copy
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Collection, Dict, Iterable, List, Optional, Set

from tuneshelf.core.entities import (
    UNKNOWN_ALBUM_ID,
    UNKNOWN_ALBUM_NAME,
    UNKNOWN_ARTIST_ID,
    UNKNOWN_ARTIST_NAME,
    VARIOUS_ARTISTS_ID,
    VARIOUS_ARTISTS_NAME,
    Album,
    Artist,
    Playlist,
    Track,
    User,
)
from tuneshelf.core.exceptions import PersistenceError


class _Store:
    def __init__(self) -> None:
        self.tracks: Dict[str, Track] = {}
        self.albums: Dict[int, Album] = {}
        self.artists: Dict[int, Artist] = {}
        self.playlists: Dict[int, Playlist] = {}
        self.members: Dict[int, Set[str]] = {}
        self.users: Dict[int, User] = {}
        self.next_id = 100


class MemoryTrackRepository:
    def __init__(self, catalog: "MemoryCatalog"):
        self._catalog = catalog

    @property
    def _s(self) -> _Store:
        return self._catalog.store

    async def get(self, track_id: str) -> Optional[Track]:
        return self._s.tracks.get(track_id)

    async def add(self, track: Track) -> Track:
        if track.id in self._s.tracks:
            raise PersistenceError(f"Track {track.id} already exists")
        self._s.tracks[track.id] = track
        return track

    async def update(self, track: Track) -> Track:
        if track.id not in self._s.tracks:
            raise PersistenceError(f"Track {track.id} does not exist")
        self._s.tracks[track.id] = track
        return track

    async def delete(self, track_ids: Collection[str]) -> int:
        removed = 0
        for track_id in set(track_ids):
            if self._s.tracks.pop(track_id, None) is not None:
                removed += 1
                for members in self._s.members.values():
                    members.discard(track_id)
        return removed

    async def delete_under(self, prefix: str) -> int:
        doomed = [t.id for t in self._s.tracks.values() if t.path.startswith(prefix)]
        return await self.delete(doomed)

    async def all_ids(self) -> Set[str]:
        return set(self._s.tracks)

    async def ids_by_external_id(self, external_ids: Iterable[int]) -> Dict[int, str]:
        wanted = set(external_ids)
        return {
            t.external_id: t.id
            for t in self._s.tracks.values()
            if t.external_id is not None and t.external_id in wanted
        }

    async def referenced_album_ids(self) -> Set[int]:
        return {t.album_id for t in self._s.tracks.values()}

    async def referenced_artist_ids(self) -> Set[int]:
        ids = {t.artist_id for t in self._s.tracks.values()}
        ids |= {
            t.contributing_artist_id
            for t in self._s.tracks.values()
            if t.contributing_artist_id is not None
        }
        return ids


class MemoryAlbumRepository:
    def __init__(self, catalog: "MemoryCatalog"):
        self._catalog = catalog

    @property
    def _s(self) -> _Store:
        return self._catalog.store

    async def get(self, album_id: int) -> Optional[Album]:
        return self._s.albums.get(album_id)

    async def find(self, artist_id: int, name: str) -> Optional[Album]:
        for album in self._s.albums.values():
            if album.artist_id == artist_id and album.name == name:
                return album
        return None

    async def add(self, artist_id: int, name: str) -> Album:
        if await self.find(artist_id, name) is not None:
            raise PersistenceError(f"Album {name!r} already exists for artist {artist_id}")
        album = Album(id=self._catalog.next_id(), artist_id=artist_id, name=name)
        self._s.albums[album.id] = album
        return album

    async def referenced_artist_ids(self) -> Set[int]:
        return {a.artist_id for a in self._s.albums.values()}

    async def delete_except(self, keep_ids: Collection[int]) -> int:
        keep = set(keep_ids)
        doomed = [i for i in self._s.albums if i not in keep]
        for album_id in doomed:
            del self._s.albums[album_id]
        return len(doomed)


class MemoryArtistRepository:
    def __init__(self, catalog: "MemoryCatalog"):
        self._catalog = catalog

    @property
    def _s(self) -> _Store:
        return self._catalog.store

    async def get(self, artist_id: int) -> Optional[Artist]:
        return self._s.artists.get(artist_id)

    async def find(self, name: str) -> Optional[Artist]:
        for artist in self._s.artists.values():
            if artist.name == name:
                return artist
        return None

    async def add(self, name: str) -> Artist:
        if await self.find(name) is not None:
            raise PersistenceError(f"Artist {name!r} already exists")
        artist = Artist(id=self._catalog.next_id(), name=name)
        self._s.artists[artist.id] = artist
        return artist

    async def delete_except(self, keep_ids: Collection[int]) -> int:
        keep = set(keep_ids)
        doomed = [i for i in self._s.artists if i not in keep]
        for artist_id in doomed:
            del self._s.artists[artist_id]
        return len(doomed)


class MemoryPlaylistRepository:
    def __init__(self, catalog: "MemoryCatalog"):
        self._catalog = catalog

    @property
    def _s(self) -> _Store:
        return self._catalog.store

    async def get_by_external_id(self, user_id: int, external_id: int) -> Optional[Playlist]:
        for playlist in self._s.playlists.values():
            if playlist.user_id == user_id and playlist.external_id == external_id:
                return playlist
        return None

    async def add(self, user_id: int, name: str, external_id: Optional[int] = None) -> Playlist:
        playlist = Playlist(
            id=self._catalog.next_id(), user_id=user_id, name=name, external_id=external_id
        )
        self._s.playlists[playlist.id] = playlist
        self._s.members[playlist.id] = set()
        return playlist

    async def rename(self, playlist_id: int, name: str) -> None:
        self._s.playlists[playlist_id] = replace(self._s.playlists[playlist_id], name=name)

    async def track_ids(self, playlist_id: int) -> Set[str]:
        return set(self._s.members.get(playlist_id, set()))

    async def attach(self, playlist_id: int, track_ids: Collection[str]) -> None:
        missing = [t for t in track_ids if t not in self._s.tracks]
        if missing:
            raise PersistenceError(f"Unknown tracks {missing}")
        self._s.members.setdefault(playlist_id, set()).update(track_ids)

    async def detach(self, playlist_id: int, track_ids: Collection[str]) -> None:
        self._s.members.setdefault(playlist_id, set()).difference_update(track_ids)

    async def list_for_user(self, user_id: int) -> List[Playlist]:
        return [p for p in self._s.playlists.values() if p.user_id == user_id]

    async def delete_external_except(self, user_id: int, keep_external_ids: Collection[int]) -> int:
        keep = set(keep_external_ids)
        doomed = [
            p.id
            for p in self._s.playlists.values()
            if p.user_id == user_id
            and p.external_id is not None
            and p.external_id not in keep
        ]
        for playlist_id in doomed:
            del self._s.playlists[playlist_id]
            self._s.members.pop(playlist_id, None)
        return len(doomed)


class MemoryUserRepository:
    def __init__(self, catalog: "MemoryCatalog"):
        self._catalog = catalog

    async def get(self, user_id: int) -> Optional[User]:
        return self._catalog.store.users.get(user_id)

    async def get_admin(self) -> Optional[User]:
        admins = [u for u in self._catalog.store.users.values() if u.is_admin]
        return min(admins, key=lambda u: u.id) if admins else None


class MemoryCatalog:
    """In-memory ``Catalog`` seeded with the sentinel rows and an admin user."""

    def __init__(self, seed: bool = True) -> None:
        self.store = _Store()
        self.commits = 0
        self.tracks = MemoryTrackRepository(self)
        self.albums = MemoryAlbumRepository(self)
        self.artists = MemoryArtistRepository(self)
        self.playlists = MemoryPlaylistRepository(self)
        self.users = MemoryUserRepository(self)
        self._committed = copy.deepcopy(self.store)
        if seed:
            self.seed()

    def seed(self) -> None:
        s = self.store
        s.artists[UNKNOWN_ARTIST_ID] = Artist(UNKNOWN_ARTIST_ID, UNKNOWN_ARTIST_NAME)
        s.artists[VARIOUS_ARTISTS_ID] = Artist(VARIOUS_ARTISTS_ID, VARIOUS_ARTISTS_NAME)
        s.albums[UNKNOWN_ALBUM_ID] = Album(UNKNOWN_ALBUM_ID, UNKNOWN_ARTIST_ID, UNKNOWN_ALBUM_NAME)
        s.users[1] = User(1, "admin", is_admin=True)
        self._committed = copy.deepcopy(self.store)

    def next_id(self) -> int:
        self.store.next_id += 1
        return self.store.next_id

    @asynccontextmanager
    async def savepoint(self):
        snapshot = copy.deepcopy(self.store)
        try:
            yield
        except BaseException:
            self.store = snapshot
            raise

    async def commit(self) -> None:
        self.commits += 1
        self._committed = copy.deepcopy(self.store)

    async def rollback(self) -> None:
        self.store = copy.deepcopy(self._committed)
