"""Location-addressed identity for tracks.

A track's id is derived from where the file lives, never from what it
contains: moving a file produces a new id and leaves the old record behind as
an orphan candidate.
"""

import hashlib
import os
from pathlib import Path
from typing import Union


def normalize_path(path: Union[str, Path]) -> str:
    """Return the absolute, collapsed, forward-slash form of ``path``."""
    # Normalize path to use forward slashes (cross-platform)
    return os.path.normpath(os.path.abspath(str(path))).replace("\\", "/")


def track_id_for(path: Union[str, Path]) -> str:
    """Stable identifier for the track stored at ``path``."""
    return hashlib.md5(normalize_path(path).encode("utf-8")).hexdigest()


def directory_prefix(path: Union[str, Path]) -> str:
    """Normalized directory path with a trailing slash, for prefix matching."""
    prefix = normalize_path(path)
    return prefix if prefix.endswith("/") else prefix + "/"
