"""SQLAlchemy models for the Tuneshelf catalog.

Submodules:
- base: Base, TimestampMixin
- library: Artist, Album, Track, User, Playlist, PlaylistTrack
"""

from tuneshelf.core.models.base import Base, TimestampMixin
from tuneshelf.core.models.library import (
    Album,
    Artist,
    Playlist,
    PlaylistTrack,
    Track,
    User,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Artist",
    "Album",
    "Track",
    "User",
    "Playlist",
    "PlaylistTrack",
]
