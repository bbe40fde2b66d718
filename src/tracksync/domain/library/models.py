"""
Music library domain models.

Contains data structures for representing tracks, albums and catalog state.
"""

from enum import IntEnum
from typing import NamedTuple, Optional

from tracksync.core.errors import CatalogError


class FileState(IntEnum):
    """Sync status of a track row. Stored as an integer column."""

    SYNCED = 0  # File present and committed (always the case in a source catalog)
    PENDING = 1  # Selected for materialization, not yet durable
    ORPHANED = 2  # Destination row whose track_id left the source

    @classmethod
    def from_db(cls, value: int) -> "FileState":
        """Decode a stored value, rejecting anything outside the enumeration."""
        try:
            return cls(value)
        except ValueError:
            raise CatalogError(f"Unknown file_state value in catalog: {value!r}") from None


class TrackTags(NamedTuple):
    """Structural description of an audio file, as read from its tags."""

    title: str
    artist: str
    album: str
    number: int
    disc_number: int
    disc_total: int
    extension: str


class Track(NamedTuple):
    """Represents a track row in a catalog.

    surrogate_id is the catalog-local primary key (None until inserted).
    track_id is the content-derived identity shared across catalogs.
    """
    track_id: str
    title: str
    artist: str
    album: str
    number: int
    disc_number: int
    disc_total: int
    file_path: str  # Absolute path within the owning library's tree
    extension: str  # Lowercase, no dot (e.g. "flac")
    file_state: FileState = FileState.SYNCED
    surrogate_id: Optional[int] = None

    @classmethod
    def from_tags(cls, track_id: str, tags: TrackTags, file_path: str) -> "Track":
        return cls(
            track_id=track_id,
            title=tags.title,
            artist=tags.artist,
            album=tags.album,
            number=tags.number,
            disc_number=tags.disc_number,
            disc_total=tags.disc_total,
            file_path=file_path,
            extension=tags.extension,
        )

    def __str__(self) -> str:
        return f"{self.title} - {self.album}, {self.artist}"


class TrackFailure(NamedTuple):
    """A per-track error collected for the end-of-run summary."""
    path: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.path}: {type(self.error).__name__}: {self.error}"


class Album(NamedTuple):
    """Distinct (album, artist, format) triple observed in a catalog."""
    title: str
    artist: str
    format: str


class SyncState(NamedTuple):
    """The single state record of a catalog."""
    schema_version: int
    is_external: bool
