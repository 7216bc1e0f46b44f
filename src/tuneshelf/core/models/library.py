"""Library models: Artist, Album, Track, User, Playlist, PlaylistTrack."""

from typing import List, Optional

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tuneshelf.core.models.base import Base, TimestampMixin


class Artist(Base, TimestampMixin):
    """A performer or album artist, created on demand from tags."""

    __tablename__ = "artists"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True, index=True)

    albums: Mapped[List["Album"]] = relationship(back_populates="artist")


class Album(Base, TimestampMixin):
    """An album, unique per (artist, name)."""

    __tablename__ = "albums"
    __table_args__ = (
        Index("idx_album_artist_name", "artist_id", "name", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    artist_id: Mapped[int] = mapped_column(ForeignKey("artists.id"))
    name: Mapped[str] = mapped_column(String, index=True)

    artist: Mapped["Artist"] = relationship(back_populates="albums")
    tracks: Mapped[List["Track"]] = relationship(back_populates="album")


class Track(Base, TimestampMixin):
    """One audio file, keyed by the hash of its path."""

    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    path: Mapped[str] = mapped_column(Text, unique=True, index=True)
    title: Mapped[str] = mapped_column(String, default="")
    album_id: Mapped[int] = mapped_column(ForeignKey("albums.id"), index=True)
    artist_id: Mapped[int] = mapped_column(ForeignKey("artists.id"), index=True)
    contributing_artist_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("artists.id"), nullable=True, index=True
    )
    length: Mapped[float] = mapped_column(Float, default=0.0)
    track: Mapped[int] = mapped_column(Integer, default=0)
    lyrics: Mapped[str] = mapped_column(Text, default="")
    cover: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    mtime: Mapped[float] = mapped_column(Float, default=0.0)
    external_id: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, index=True
    )
    sync_failures: Mapped[int] = mapped_column(Integer, default=0)

    album: Mapped["Album"] = relationship(back_populates="tracks")


class User(Base, TimestampMixin):
    """Playlist owner."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)

    playlists: Mapped[List["Playlist"]] = relationship(back_populates="user")


class Playlist(Base, TimestampMixin):
    """A user playlist; manifest playlists carry their external id."""

    __tablename__ = "playlists"
    __table_args__ = (
        Index("idx_playlist_user_external", "user_id", "external_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    external_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    user: Mapped["User"] = relationship(back_populates="playlists")


class PlaylistTrack(Base):
    """Membership bridge between playlists and tracks."""

    __tablename__ = "playlist_tracks"

    playlist_id: Mapped[int] = mapped_column(
        ForeignKey("playlists.id", ondelete="CASCADE"), primary_key=True
    )
    track_id: Mapped[str] = mapped_column(
        ForeignKey("tracks.id", ondelete="CASCADE"), primary_key=True, index=True
    )
