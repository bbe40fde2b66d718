"""
Tag extraction for audio files.

Reads the structural description tracksync needs (title, artist, album,
numbering, format) using Mutagen's easy tag interface.
"""

from pathlib import Path
from typing import Any, Optional, Tuple

from loguru import logger
from mutagen import File as MutagenFile
from mutagen import MutagenError

from tracksync.core.errors import CorruptMetadata, TrackIOError, UnsupportedFormat

from .models import TrackTags

UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"


def get_tag_value(audio_file: Any, tag_names: list[str]) -> Optional[str]:
    """Get tag value, trying multiple possible tag names."""
    for tag_name in tag_names:
        try:
            value = audio_file.get(tag_name)
        except (KeyError, ValueError):
            # Some formats (like Vorbis) raise ValueError for non-existent keys
            continue
        if value:
            if isinstance(value, list):
                value = value[0]
            text = str(value).strip()
            if text:
                return text
    return None


def parse_position(value: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Parse "3", "3/12" or "03 of 12" style positions into (number, total)."""
    if not value:
        return None, None

    text = value.replace(" of ", "/")
    head, _, tail = text.partition("/")

    def to_int(part: str) -> Optional[int]:
        part = part.strip()
        try:
            return int(part) if part else None
        except ValueError:
            return None

    return to_int(head), to_int(tail)


def get_extension(local_path: str) -> str:
    """Lowercase file extension without the dot ("NONE" when there is none)."""
    suffix = Path(local_path).suffix.lower().lstrip(".")
    return suffix or "NONE"


def extract_tags(local_path: str) -> TrackTags:
    """Extract the structural tags of an audio file.

    The artist falls back from album artist to track artist; missing disc
    information means a single-disc release.

    Raises:
        UnsupportedFormat: Mutagen does not recognize the file
        CorruptMetadata: The file is recognized but its tags cannot be parsed
        TrackIOError: The file cannot be read
    """
    try:
        audio_file = MutagenFile(local_path, easy=True)
    except MutagenError as e:
        # Mutagen wraps I/O failures in MutagenError
        if isinstance(e.__cause__ or e.__context__, OSError):
            raise TrackIOError(f"Cannot read {local_path}: {e}", path=local_path) from e
        raise CorruptMetadata(f"Cannot parse tags of {local_path}: {e}", path=local_path) from e
    except OSError as e:
        raise TrackIOError(f"Cannot read {local_path}: {e}", path=local_path) from e

    if audio_file is None:
        raise UnsupportedFormat(f"Unsupported audio format: {local_path}", path=local_path)

    tags = audio_file.tags or {}

    title = get_tag_value(tags, ["title"]) or UNKNOWN_TITLE
    artist = get_tag_value(tags, ["albumartist", "album artist", "artist"]) or UNKNOWN_ARTIST
    album = get_tag_value(tags, ["album"]) or UNKNOWN_ALBUM

    number, _ = parse_position(get_tag_value(tags, ["tracknumber"]))
    disc_number, disc_total = parse_position(get_tag_value(tags, ["discnumber"]))
    if disc_total is None:
        disc_total, _ = parse_position(get_tag_value(tags, ["disctotal", "totaldiscs"]))

    disc_number = disc_number or 1
    disc_total = max(disc_total or disc_number, disc_number)

    if title == UNKNOWN_TITLE:
        logger.debug(f"No title tag in {local_path}")

    return TrackTags(
        title=title,
        artist=artist,
        album=album,
        number=number or 0,
        disc_number=disc_number,
        disc_total=disc_total,
        extension=get_extension(local_path),
    )
