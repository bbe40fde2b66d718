"""Library domain - source tracks, tags and identity.

This domain handles:
- Track, album and catalog state models
- Tag extraction from audio files
- Content-derived track identity
- Scanning directories into the source catalog (see .scanner)
- Duplicate album detection (see .duplicates)

The scanner and duplicate finder depend on the catalog store, so they are
imported from their modules rather than re-exported here.
"""

# Models
from .models import Album, FileState, SyncState, Track, TrackFailure, TrackTags

# Tag extraction
from .metadata import extract_tags, get_extension, get_tag_value, parse_position

# Identity
from .identity import IdentityResolver

__all__ = [
    # Models
    "Album",
    "FileState",
    "SyncState",
    "Track",
    "TrackFailure",
    "TrackTags",
    # Metadata
    "extract_tags",
    "get_extension",
    "get_tag_value",
    "parse_position",
    # Identity
    "IdentityResolver",
]
