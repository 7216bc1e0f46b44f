"""SQLAlchemy implementation of the catalog repositories.

All repositories share one ``AsyncSession``. Callers serialize access to it
(the reconciler holds a write lock around every catalog call), because an
AsyncSession must not be used by concurrent tasks.

Driver errors are translated at this boundary: an ``OperationalError`` or
``InterfaceError`` means the store itself is unusable and becomes
``CatalogUnavailableError``; any other ``SQLAlchemyError`` becomes a
``PersistenceError`` that only fails the current item.
"""

from contextlib import asynccontextmanager
from dataclasses import fields
from functools import wraps
from typing import Collection, Dict, Iterable, Iterator, List, Optional, Sequence, Set, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tuneshelf.core import entities
from tuneshelf.core.exceptions import CatalogUnavailableError, PersistenceError
from tuneshelf.core.models import Album, Artist, Playlist, PlaylistTrack, Track, User

# Stay well below SQLite's bound-parameter limit
CHUNK_SIZE = 500

T = TypeVar("T")


def _chunks(items: Sequence[T], size: int = CHUNK_SIZE) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _translate_errors(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (OperationalError, InterfaceError) as e:
            raise CatalogUnavailableError(str(e)) from e
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e

    return wrapper


def _to_entity(cls, row):
    return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})


_TRACK_FIELDS = [f.name for f in fields(entities.Track)]


class SqlTrackRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _row(self, track_id: str) -> Optional[Track]:
        res = await self.session.execute(select(Track).where(Track.id == track_id))
        return res.scalar_one_or_none()

    @_translate_errors
    async def get(self, track_id: str) -> Optional[entities.Track]:
        row = await self._row(track_id)
        return _to_entity(entities.Track, row) if row else None

    @_translate_errors
    async def add(self, track: entities.Track) -> entities.Track:
        self.session.add(Track(**{name: getattr(track, name) for name in _TRACK_FIELDS}))
        await self.session.flush()
        return track

    @_translate_errors
    async def update(self, track: entities.Track) -> entities.Track:
        row = await self._row(track.id)
        if row is None:
            raise PersistenceError(f"Track {track.id} does not exist")
        for name in _TRACK_FIELDS:
            if name != "id":
                setattr(row, name, getattr(track, name))
        await self.session.flush()
        return track

    @_translate_errors
    async def delete(self, track_ids: Collection[str]) -> int:
        ids = list(set(track_ids))
        removed = 0
        for chunk in _chunks(ids):
            await self.session.execute(
                delete(PlaylistTrack).where(PlaylistTrack.track_id.in_(chunk))
            )
            res = await self.session.execute(delete(Track).where(Track.id.in_(chunk)))
            removed += res.rowcount or 0
        return removed

    @_translate_errors
    async def delete_under(self, prefix: str) -> int:
        res = await self.session.execute(
            select(Track.id).where(Track.path.startswith(prefix, autoescape=True))
        )
        return await self.delete(list(res.scalars().all()))

    @_translate_errors
    async def all_ids(self) -> Set[str]:
        res = await self.session.execute(select(Track.id))
        return set(res.scalars().all())

    @_translate_errors
    async def ids_by_external_id(self, external_ids: Iterable[int]) -> Dict[int, str]:
        wanted = list(set(external_ids))
        found: Dict[int, str] = {}
        for chunk in _chunks(wanted):
            res = await self.session.execute(
                select(Track.external_id, Track.id).where(Track.external_id.in_(chunk))
            )
            found.update({ext: tid for ext, tid in res.all()})
        return found

    @_translate_errors
    async def referenced_album_ids(self) -> Set[int]:
        res = await self.session.execute(select(Track.album_id).distinct())
        return set(res.scalars().all())

    @_translate_errors
    async def referenced_artist_ids(self) -> Set[int]:
        primary = await self.session.execute(select(Track.artist_id).distinct())
        contributing = await self.session.execute(
            select(Track.contributing_artist_id)
            .where(Track.contributing_artist_id.is_not(None))
            .distinct()
        )
        return set(primary.scalars().all()) | set(contributing.scalars().all())


class SqlAlbumRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @_translate_errors
    async def get(self, album_id: int) -> Optional[entities.Album]:
        res = await self.session.execute(select(Album).where(Album.id == album_id))
        row = res.scalar_one_or_none()
        return _to_entity(entities.Album, row) if row else None

    @_translate_errors
    async def find(self, artist_id: int, name: str) -> Optional[entities.Album]:
        res = await self.session.execute(
            select(Album).where(Album.artist_id == artist_id, Album.name == name)
        )
        row = res.scalar_one_or_none()
        return _to_entity(entities.Album, row) if row else None

    @_translate_errors
    async def add(self, artist_id: int, name: str) -> entities.Album:
        row = Album(artist_id=artist_id, name=name)
        self.session.add(row)
        await self.session.flush()
        return _to_entity(entities.Album, row)

    @_translate_errors
    async def referenced_artist_ids(self) -> Set[int]:
        res = await self.session.execute(select(Album.artist_id).distinct())
        return set(res.scalars().all())

    @_translate_errors
    async def delete_except(self, keep_ids: Collection[int]) -> int:
        res = await self.session.execute(select(Album.id))
        doomed = list(set(res.scalars().all()) - set(keep_ids))
        for chunk in _chunks(doomed):
            await self.session.execute(delete(Album).where(Album.id.in_(chunk)))
        return len(doomed)


class SqlArtistRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @_translate_errors
    async def get(self, artist_id: int) -> Optional[entities.Artist]:
        res = await self.session.execute(select(Artist).where(Artist.id == artist_id))
        row = res.scalar_one_or_none()
        return _to_entity(entities.Artist, row) if row else None

    @_translate_errors
    async def find(self, name: str) -> Optional[entities.Artist]:
        res = await self.session.execute(select(Artist).where(Artist.name == name))
        row = res.scalar_one_or_none()
        return _to_entity(entities.Artist, row) if row else None

    @_translate_errors
    async def add(self, name: str) -> entities.Artist:
        row = Artist(name=name)
        self.session.add(row)
        await self.session.flush()
        return _to_entity(entities.Artist, row)

    @_translate_errors
    async def delete_except(self, keep_ids: Collection[int]) -> int:
        res = await self.session.execute(select(Artist.id))
        doomed = list(set(res.scalars().all()) - set(keep_ids))
        for chunk in _chunks(doomed):
            await self.session.execute(delete(Artist).where(Artist.id.in_(chunk)))
        return len(doomed)


class SqlPlaylistRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @_translate_errors
    async def get_by_external_id(
        self, user_id: int, external_id: int
    ) -> Optional[entities.Playlist]:
        res = await self.session.execute(
            select(Playlist)
            .where(Playlist.user_id == user_id, Playlist.external_id == external_id)
            .order_by(Playlist.id)
            .limit(1)
        )
        row = res.scalar_one_or_none()
        return _to_entity(entities.Playlist, row) if row else None

    @_translate_errors
    async def add(
        self, user_id: int, name: str, external_id: Optional[int] = None
    ) -> entities.Playlist:
        row = Playlist(user_id=user_id, name=name, external_id=external_id)
        self.session.add(row)
        await self.session.flush()
        return _to_entity(entities.Playlist, row)

    @_translate_errors
    async def rename(self, playlist_id: int, name: str) -> None:
        res = await self.session.execute(select(Playlist).where(Playlist.id == playlist_id))
        row = res.scalar_one()
        row.name = name
        await self.session.flush()

    @_translate_errors
    async def track_ids(self, playlist_id: int) -> Set[str]:
        res = await self.session.execute(
            select(PlaylistTrack.track_id).where(PlaylistTrack.playlist_id == playlist_id)
        )
        return set(res.scalars().all())

    @_translate_errors
    async def attach(self, playlist_id: int, track_ids: Collection[str]) -> None:
        self.session.add_all(
            PlaylistTrack(playlist_id=playlist_id, track_id=t) for t in track_ids
        )
        await self.session.flush()

    @_translate_errors
    async def detach(self, playlist_id: int, track_ids: Collection[str]) -> None:
        for chunk in _chunks(list(track_ids)):
            await self.session.execute(
                delete(PlaylistTrack).where(
                    PlaylistTrack.playlist_id == playlist_id,
                    PlaylistTrack.track_id.in_(chunk),
                )
            )

    @_translate_errors
    async def list_for_user(self, user_id: int) -> List[entities.Playlist]:
        res = await self.session.execute(
            select(Playlist).where(Playlist.user_id == user_id).order_by(Playlist.id)
        )
        return [_to_entity(entities.Playlist, row) for row in res.scalars().all()]

    @_translate_errors
    async def delete_external_except(
        self, user_id: int, keep_external_ids: Collection[int]
    ) -> int:
        res = await self.session.execute(
            select(Playlist.id, Playlist.external_id).where(
                Playlist.user_id == user_id, Playlist.external_id.is_not(None)
            )
        )
        keep = set(keep_external_ids)
        doomed = [pid for pid, ext in res.all() if ext not in keep]
        for chunk in _chunks(doomed):
            await self.session.execute(
                delete(PlaylistTrack).where(PlaylistTrack.playlist_id.in_(chunk))
            )
            await self.session.execute(delete(Playlist).where(Playlist.id.in_(chunk)))
        return len(doomed)


class SqlUserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @_translate_errors
    async def get(self, user_id: int) -> Optional[entities.User]:
        res = await self.session.execute(select(User).where(User.id == user_id))
        row = res.scalar_one_or_none()
        return _to_entity(entities.User, row) if row else None

    @_translate_errors
    async def get_admin(self) -> Optional[entities.User]:
        res = await self.session.execute(
            select(User).where(User.is_admin.is_(True)).order_by(User.id).limit(1)
        )
        row = res.scalar_one_or_none()
        return _to_entity(entities.User, row) if row else None


class SqlCatalog:
    """``Catalog`` over a single AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.tracks = SqlTrackRepository(session)
        self.albums = SqlAlbumRepository(session)
        self.artists = SqlArtistRepository(session)
        self.playlists = SqlPlaylistRepository(session)
        self.users = SqlUserRepository(session)

    @asynccontextmanager
    async def savepoint(self):
        try:
            async with self.session.begin_nested():
                yield
        except (OperationalError, InterfaceError) as e:
            raise CatalogUnavailableError(str(e)) from e
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e

    @_translate_errors
    async def commit(self) -> None:
        await self.session.commit()

    @_translate_errors
    async def rollback(self) -> None:
        await self.session.rollback()
