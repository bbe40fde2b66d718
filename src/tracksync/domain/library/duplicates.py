"""Find albums stored in more than one audio format."""

from typing import List, NamedTuple, Tuple

from tracksync.core.database import Catalog


class DuplicateAlbum(NamedTuple):
    title: str
    artist: str
    locations: List[Tuple[str, str]]  # (directory, format)

    @property
    def formats(self) -> List[str]:
        return [fmt for _, fmt in self.locations]


def find_duplicate_albums(catalog: Catalog) -> List[DuplicateAlbum]:
    """List every (album, artist) pair whose tracks exist in several formats."""
    duplicates = []
    for album, _count in catalog.duplicate_albums():
        duplicates.append(
            DuplicateAlbum(
                title=album.title,
                artist=album.artist,
                locations=catalog.album_formats(album.title, album.artist),
            )
        )
    return duplicates
