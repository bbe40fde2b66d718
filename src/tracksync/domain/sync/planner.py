"""
Destination path planning.

Every destination lays tracks out the same way:

    artist/album[/discNN]/NN - title.extension

The disc directory only appears for multi-disc releases. Free-text fields are
sanitized so the plan is a valid relative path on common filesystems and is
identical across runs and destinations.
"""

import unicodedata
from pathlib import Path, PurePath
from typing import Optional, Tuple

from tracksync.domain.library.models import Track

# Characters that are unsafe in file names on at least one common filesystem
UNSAFE_CHARS = frozenset('"*/:<>?\\|+,;=[]\0')

PLACEHOLDER = "_"


def sanitize(text: str, is_file: bool = False) -> str:
    """Make free text safe to use as a single path component.

    Unsafe and control characters become "_". Directory components also
    replace ".", so names like ".." or "Vol. 2" cannot escape or hide.

    Args:
        text: Raw tag text
        is_file: True for the file name component (keeps dots)

    Returns:
        A non-empty path component
    """
    text = unicodedata.normalize("NFC", text).strip()
    chars = []
    for char in text:
        if char in UNSAFE_CHARS or unicodedata.category(char) == "Cc":
            chars.append(PLACEHOLDER)
        elif char == "." and not is_file:
            chars.append(PLACEHOLDER)
        else:
            chars.append(char)
    return "".join(chars) or PLACEHOLDER


def plan(track: Track, destination_root: Optional[str | PurePath] = None) -> Path:
    """Plan where a track lives inside a destination.

    The plan depends on the track alone; destination_root is accepted so
    callers can plan against a destination explicitly, and the result is
    always relative to it.

    Returns:
        Relative path such as Path("X/Y/01 - Song A.flac")
    """
    parts = [sanitize(track.artist), sanitize(track.album)]
    if track.disc_total > 1:
        parts.append(f"disc{track.disc_number:02d}")

    filename = f"{track.number:02d} - {track.title}.{track.extension}"
    parts.append(sanitize(filename, is_file=True))
    return Path(*parts)


def destination_path(track: Track, destination_root: str | PurePath) -> Path:
    """Absolute path of a track inside a destination root."""
    return Path(destination_root) / plan(track, destination_root)


def sort_key(track: Track) -> Tuple[str, str, int, int, str, str]:
    """Deterministic processing order: artist, album, disc, number, title.

    track_id breaks the remaining ties so equal tags still order stably.
    """
    return (
        track.artist,
        track.album,
        track.disc_number,
        track.number,
        track.title,
        track.track_id,
    )
