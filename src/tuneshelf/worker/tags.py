"""Tag extraction with Mutagen.

``MutagenTagReader.extract`` is blocking; the reconciler runs it in a thread
pool. Everything it returns is raw text: mapping names to Artist/Album rows
happens later, under the catalog write lock.
"""

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Tuple, Union

import mutagen
from loguru import logger
from mutagen import MutagenError

from tuneshelf.core.entities import VARIOUS_ARTISTS_NAME
from tuneshelf.core.exceptions import TagExtractionError


@dataclass(frozen=True)
class TagInfo:
    """Tags read from one file.

    Attributes:
        title: Track title (filename stem when untagged).
        artist: Performer, or "" when unknown.
        album: Album title, or "" when unknown.
        album_artist: Album artist tag, or "".
        compilation: Part of a various-artists release.
        length: Duration in seconds.
        track: Track number (0 when absent).
        lyrics: Unsynchronized lyrics text.
        cover: MD5 of the first embedded picture, if any.
        mtime: File modification time.
    """

    title: str
    artist: str = ""
    album: str = ""
    album_artist: str = ""
    compilation: bool = False
    length: float = 0.0
    track: int = 0
    lyrics: str = ""
    cover: Optional[str] = None
    mtime: float = 0.0

    @property
    def is_compilation(self) -> bool:
        return self.compilation or self.album_artist.lower() == VARIOUS_ARTISTS_NAME.lower()


class TagReader(Protocol):
    def extract(self, path: Union[str, Path]) -> TagInfo: ...


def _first(tags: Any, *keys: str) -> str:
    """First non-empty text value among ``keys`` in an easy-tags mapping."""
    if not tags:
        return ""
    for key in keys:
        try:
            values = tags.get(key)
        except (KeyError, ValueError):
            continue
        if values:
            value = values[0] if isinstance(values, list) else values
            if str(value).strip():
                return str(value).strip()
    return ""


def _parse_track_number(raw: str) -> int:
    # "3/12" -> 3
    head = raw.split("/", 1)[0].strip()
    return int(head) if head.isdigit() else 0


def _parse_flag(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes")


def split_filename(path: Path) -> Tuple[str, str]:
    """Fallback (artist, title) from an "Artist - Title" file name."""
    stem = path.stem
    if " - " in stem:
        artist, title = stem.split(" - ", 1)
        return artist.strip(), title.strip()
    return "", stem


class MutagenTagReader:
    """Reads the recognized tags plus lyrics and artwork from audio files."""

    def extract(self, path: Union[str, Path]) -> TagInfo:
        path = Path(path)
        try:
            return self._extract(path)
        except TagExtractionError:
            raise
        except (MutagenError, OSError) as e:
            raise TagExtractionError(path, str(e)) from e
        except Exception as e:
            # Format parsers raise arbitrary errors on malformed files
            raise TagExtractionError(path, f"{type(e).__name__}: {e}") from e

    def _extract(self, path: Path) -> TagInfo:
        mtime = os.stat(path).st_mtime
        easy = mutagen.File(path, easy=True)

        if easy is None:
            raise TagExtractionError(path, "unrecognized or unsupported format")
        if easy.info is None or not getattr(easy.info, "length", None):
            raise TagExtractionError(path, "no audio stream")

        tags = easy.tags
        artist = _first(tags, "artist")
        title = _first(tags, "title")
        if not artist or not title:
            fallback_artist, fallback_title = split_filename(path)
            artist = artist or fallback_artist
            title = title or fallback_title

        lyrics, cover = self._read_extras(path)

        return TagInfo(
            title=title,
            artist=artist,
            album=_first(tags, "album"),
            album_artist=_first(tags, "albumartist"),
            compilation=_parse_flag(_first(tags, "compilation")),
            length=float(easy.info.length),
            track=_parse_track_number(_first(tags, "tracknumber")),
            lyrics=lyrics,
            cover=cover,
            mtime=mtime,
        )

    def _read_extras(self, path: Path) -> Tuple[str, Optional[str]]:
        """Lyrics and cover need the full (non-easy) tag interface.

        Missing extras never fail the track; any error yields ("", None).
        """
        try:
            audio = mutagen.File(path)
            if audio is None:
                return "", None
            return _extras_from(audio)
        except Exception as e:
            logger.debug(f"Could not read extended tags from {path}: {e}")
            return "", None


def _extras_from(audio) -> Tuple[str, Optional[str]]:
    lyrics = ""
    image: Optional[bytes] = None
    tags = audio.tags

    # FLAC keeps pictures outside the Vorbis comment block
    pictures = getattr(audio, "pictures", None)
    if pictures:
        image = pictures[0].data

    if tags is not None:
        if hasattr(tags, "getall"):
            # ID3
            uslt = tags.getall("USLT")
            if uslt:
                lyrics = uslt[0].text
            apic = tags.getall("APIC")
            if apic and image is None:
                image = apic[0].data
        elif "\xa9lyr" in tags or "covr" in tags:
            # MP4
            lyrics = (tags.get("\xa9lyr") or [""])[0]
            covr = tags.get("covr")
            if covr and image is None:
                image = bytes(covr[0])
        else:
            lyrics = _first(tags, "lyrics", "unsyncedlyrics", "LYRICS", "UNSYNCEDLYRICS")

    cover = hashlib.md5(image).hexdigest() if image else None
    return lyrics or "", cover
