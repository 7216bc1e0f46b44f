"""Repository protocols for catalog access.

Each entity gets a narrow async repository; a ``Catalog`` bundles them with
the transaction controls the engine needs. The engine only ever sees these
protocols, so the SQL catalog and the in-memory catalog are interchangeable.
"""

from typing import (
    AsyncContextManager,
    Collection,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Set,
)

from tuneshelf.core.entities import Album, Artist, Playlist, Track, User


class TrackRepository(Protocol):
    async def get(self, track_id: str) -> Optional[Track]: ...

    async def add(self, track: Track) -> Track: ...

    async def update(self, track: Track) -> Track: ...

    async def delete(self, track_ids: Collection[str]) -> int:
        """Delete tracks (and their playlist memberships). Returns rows removed."""
        ...

    async def delete_under(self, prefix: str) -> int:
        """Delete every track whose path starts with ``prefix``."""
        ...

    async def all_ids(self) -> Set[str]: ...

    async def ids_by_external_id(self, external_ids: Iterable[int]) -> Dict[int, str]:
        """Map manifest track ids to stored track ids; unknown ids are absent."""
        ...

    async def referenced_album_ids(self) -> Set[int]: ...

    async def referenced_artist_ids(self) -> Set[int]:
        """Primary and contributing artists of all tracks."""
        ...


class AlbumRepository(Protocol):
    async def get(self, album_id: int) -> Optional[Album]: ...

    async def find(self, artist_id: int, name: str) -> Optional[Album]: ...

    async def add(self, artist_id: int, name: str) -> Album: ...

    async def referenced_artist_ids(self) -> Set[int]: ...

    async def delete_except(self, keep_ids: Collection[int]) -> int: ...


class ArtistRepository(Protocol):
    async def get(self, artist_id: int) -> Optional[Artist]: ...

    async def find(self, name: str) -> Optional[Artist]: ...

    async def add(self, name: str) -> Artist: ...

    async def delete_except(self, keep_ids: Collection[int]) -> int: ...


class PlaylistRepository(Protocol):
    async def get_by_external_id(
        self, user_id: int, external_id: int
    ) -> Optional[Playlist]: ...

    async def add(
        self, user_id: int, name: str, external_id: Optional[int] = None
    ) -> Playlist: ...

    async def rename(self, playlist_id: int, name: str) -> None: ...

    async def track_ids(self, playlist_id: int) -> Set[str]: ...

    async def attach(self, playlist_id: int, track_ids: Collection[str]) -> None: ...

    async def detach(self, playlist_id: int, track_ids: Collection[str]) -> None: ...

    async def list_for_user(self, user_id: int) -> List[Playlist]: ...

    async def delete_external_except(
        self, user_id: int, keep_external_ids: Collection[int]
    ) -> int:
        """Delete the user's manifest playlists whose external id is not kept."""
        ...


class UserRepository(Protocol):
    async def get(self, user_id: int) -> Optional[User]: ...

    async def get_admin(self) -> Optional[User]: ...


class Catalog(Protocol):
    """Unit of work over all repositories."""

    tracks: TrackRepository
    albums: AlbumRepository
    artists: ArtistRepository
    playlists: PlaylistRepository
    users: UserRepository

    def savepoint(self) -> AsyncContextManager[None]:
        """Scope whose writes are undone if the block raises."""
        ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...
