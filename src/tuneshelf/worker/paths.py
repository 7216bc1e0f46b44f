"""Rewriting manifest ``Location`` values into local filesystem paths."""

from typing import Sequence
from urllib.parse import unquote

from loguru import logger

from tuneshelf.core.exceptions import InvalidSubstitutionsError

FILE_SCHEME = "file://"


def validate_substitutions(substitutions: Sequence[str]) -> None:
    """Raise ``InvalidSubstitutionsError`` unless the list holds (find, replace) pairs."""
    if len(substitutions) % 2:
        raise InvalidSubstitutionsError(list(substitutions))


def apply_substitutions(path: str, substitutions: Sequence[str]) -> str:
    """Apply each (find, replace) pair in order. Later pairs see earlier results."""
    validate_substitutions(substitutions)
    for i in range(0, len(substitutions), 2):
        path = path.replace(substitutions[i], substitutions[i + 1])
    return path


def normalize_location(location: str, substitutions: Sequence[str] = ()) -> str:
    """Turn a manifest location into a path.

    Substitutions are applied first (an odd-length list is logged and ignored),
    then a ``file://`` prefix is stripped and the remainder percent-decoded.

    >>> normalize_location("file:///Music/A%20B.mp3", ["/Music", "/srv/music"])
    '/srv/music/A B.mp3'
    """
    try:
        location = apply_substitutions(location, substitutions)
    except InvalidSubstitutionsError as e:
        logger.warning(f"Ignoring path substitutions: {e}")
    if location.startswith(FILE_SCHEME):
        location = location[len(FILE_SCHEME):]
    return unquote(location)
