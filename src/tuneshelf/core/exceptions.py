"""Exception hierarchy for catalog reconciliation."""

from pathlib import Path
from typing import Optional, Union


class TuneshelfError(Exception):
    """Base class for all errors raised by tuneshelf."""


class TagExtractionError(TuneshelfError):
    """A media file could not be read, is corrupt, or has no usable audio stream."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cannot read tags from {self.path}: {reason}")


class PersistenceError(TuneshelfError):
    """A single catalog write failed. Fatal to the current item only."""


class CatalogUnavailableError(PersistenceError):
    """The catalog store cannot be reached. Aborts the whole run."""


class InvalidSubstitutionsError(TuneshelfError, ValueError):
    """Substitution pairs for manifest paths must come in (find, replace) pairs."""

    def __init__(self, substitutions: list, message: Optional[str] = None):
        self.substitutions = list(substitutions)
        super().__init__(
            message
            or f"Expected an even number of substitution strings, got {len(self.substitutions)}"
        )
