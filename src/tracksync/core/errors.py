"""
Error taxonomy for tracksync.

Catalog-level errors abort a whole destination pass. Track-level errors are
reported per track and never abort the batch.
"""

from typing import Optional


class TrackSyncError(Exception):
    """Base class for every error raised by tracksync."""


# ---------------------------------------------------------------------------
# Catalog-level (fatal for one catalog's pass)
# ---------------------------------------------------------------------------


class CatalogError(TrackSyncError):
    """A catalog could not be opened, read or written."""


class NotInitialized(CatalogError):
    """The catalog database or its state record does not exist."""


class SchemaVersionMismatch(CatalogError):
    """The stored schema version differs from the one this build expects."""

    def __init__(self, path: str, found: int, expected: int):
        self.path = path
        self.found = found
        self.expected = expected
        direction = "older" if found < expected else "newer"
        super().__init__(
            f"Catalog at {path} has schema version {found}, expected {expected} "
            f"({direction}); migration required"
        )


class CatalogKindMismatch(CatalogError):
    """A source catalog was used as a destination, or the other way around."""


# ---------------------------------------------------------------------------
# Track-level (reported, batch continues)
# ---------------------------------------------------------------------------


class TrackError(TrackSyncError):
    """An error tied to a single track or file."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class TrackIOError(TrackError):
    """A file could not be read or written."""


class CrossVolumeLink(TrackIOError):
    """A hardlink was requested across two filesystems."""


class PathConflict(TrackIOError):
    """Another track already claimed the same destination path this pass."""


class ScriptError(TrackError):
    """A filter script failed to compile or evaluate."""


class IdentityError(TrackError):
    """The content hash of a file could not be computed."""


class TagError(TrackError):
    """Tags could not be extracted from a file."""


class UnsupportedFormat(TagError):
    """The file is not an audio format the tag reader understands."""


class CorruptMetadata(TagError):
    """The file looks like audio but its metadata cannot be parsed."""
