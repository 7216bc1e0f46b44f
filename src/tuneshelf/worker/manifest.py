"""Reading third-party library manifests (iTunes-style XML property lists).

Only the parts the sync needs are kept: track id to location, and visible
playlists with their item ids. Locations are returned raw; path rewriting
belongs to ``tuneshelf.worker.paths``.
"""

import os
import plistlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union
from xml.parsers.expat import ExpatError

from loguru import logger

from tuneshelf.core.stats import ManifestStatus


@dataclass(frozen=True)
class ManifestTrack:
    external_id: int
    location: str


@dataclass(frozen=True)
class ManifestPlaylist:
    """A manifest playlist. ``item_ids`` keeps manifest order, duplicates removed.

    ``item_ids`` is None when the entry has no ``Playlist Items`` key at all
    (folders, smart lists), and an empty tuple when the list is present but empty.
    """

    external_id: int
    name: str
    visible: bool = True
    item_ids: Optional[Tuple[int, ...]] = None


@dataclass
class Manifest:
    tracks: List[ManifestTrack] = field(default_factory=list)
    playlists: List[ManifestPlaylist] = field(default_factory=list)
    status: ManifestStatus = ManifestStatus.OK
    error: Optional[str] = None


def is_manifest(path: Union[str, Path]) -> bool:
    """A sync source is a manifest when it is a regular file ending in .xml."""
    return str(path).lower().endswith(".xml") and os.path.isfile(path)


def _parse_playlist(raw: dict) -> Optional[ManifestPlaylist]:
    external_id = raw.get("Playlist ID")
    if external_id is None:
        return None
    raw_items = raw.get("Playlist Items")
    seen = set()
    items = []
    for item in raw_items or []:
        track_id = item.get("Track ID") if isinstance(item, dict) else None
        if track_id is not None and track_id not in seen:
            seen.add(track_id)
            items.append(track_id)
    return ManifestPlaylist(
        external_id=int(external_id),
        name=str(raw.get("Name", "")),
        visible=bool(raw.get("Visible", True)),
        item_ids=None if raw_items is None else tuple(items),
    )


def parse_manifest(path: Union[str, Path]) -> Manifest:
    """Load a manifest file; never raises for bad input.

    Returns a ``Manifest`` whose ``status`` is UNREADABLE when the file is
    not a property list, MALFORMED when it has no ``Tracks`` dictionary, and
    OK otherwise. Tracks without a ``Location`` (streams) are skipped.
    """
    try:
        with open(path, "rb") as f:
            data = plistlib.load(f)
    except (plistlib.InvalidFileException, ExpatError, ValueError, OSError) as e:
        logger.error(f"Cannot read manifest {path}: {e}")
        return Manifest(status=ManifestStatus.UNREADABLE, error=str(e))

    if not isinstance(data, dict) or not isinstance(data.get("Tracks"), dict):
        logger.error(f"Manifest {path} has no 'Tracks' dictionary")
        return Manifest(status=ManifestStatus.MALFORMED, error="missing 'Tracks'")

    manifest = Manifest()
    for key, raw in data["Tracks"].items():
        if not isinstance(raw, dict):
            continue
        location = raw.get("Location")
        if not location:
            continue
        external_id = raw.get("Track ID", key)
        try:
            manifest.tracks.append(ManifestTrack(int(external_id), location))
        except (TypeError, ValueError):
            logger.warning(f"Manifest track with invalid id {external_id!r} skipped")

    for raw in data.get("Playlists") or []:
        if isinstance(raw, dict) and (playlist := _parse_playlist(raw)):
            manifest.playlists.append(playlist)

    logger.info(
        f"Manifest {path}: {len(manifest.tracks)} tracks, "
        f"{len(manifest.playlists)} playlists"
    )
    return manifest
