"""Lazy enumeration of audio files under a directory tree."""

import os
from pathlib import Path
from typing import Iterator, Optional, Set, Union

from loguru import logger

SUPPORTED_EXTENSIONS = {".mp3", ".ogg", ".m4a", ".flac"}


def is_media_file(path: Union[str, Path]) -> bool:
    """Whether ``path`` has a whitelisted audio extension (case-insensitive)."""
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


def iter_media_files(
    root: Union[str, Path], _visited: Optional[Set[str]] = None
) -> Iterator[Path]:
    """Yield every supported audio file below ``root``.

    Symlinked directories are followed; a directory whose real path has
    already been visited is skipped, which breaks link cycles. Unreadable
    directories are logged and skipped. Ordering is not guaranteed.
    """
    visited = _visited if _visited is not None else set()
    real = os.path.realpath(root)
    if real in visited:
        logger.debug(f"Skipping already visited directory {root} (link cycle)")
        return
    visited.add(real)

    try:
        with os.scandir(root) as it:
            entries = list(it)
    except PermissionError:
        logger.warning(f"Permission denied: {root}")
        return
    except OSError as e:
        logger.warning(f"Cannot read directory {root}: {e}")
        return

    subdirs = []
    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=True):
                subdirs.append(entry.path)
            elif entry.is_file(follow_symlinks=True) and is_media_file(entry.name):
                yield Path(entry.path)
        except OSError as e:
            # Dangling symlink or entry vanished mid-scan
            logger.debug(f"Skipping {entry.path}: {e}")

    for subdir in subdirs:
        yield from iter_media_files(subdir, visited)
