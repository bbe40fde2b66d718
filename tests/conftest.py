"""Shared fixtures for tracksync tests."""

import tempfile
from pathlib import Path

import pytest

from tracksync.core.database import init_catalog
from tracksync.domain.library.identity import IdentityResolver
from tracksync.domain.library.models import Track


def make_track(**overrides) -> Track:
    """Build a Track with sensible defaults."""
    values = dict(
        track_id="a" * 64,
        title="Song A",
        artist="X",
        album="Y",
        number=1,
        disc_number=1,
        disc_total=1,
        file_path="/music/X/Y/song-a.flac",
        extension="flac",
    )
    values.update(overrides)
    return Track(**values)


def add_source_track(catalog, path: Path, content: bytes, **tags) -> Track:
    """Write an audio-like file and register it in a source catalog."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    track = make_track(
        track_id=IdentityResolver().resolve(str(path)),
        file_path=str(path),
        extension=path.suffix.lstrip("."),
        **tags,
    )
    surrogate_id = catalog.upsert_track(track)
    return track._replace(surrogate_id=surrogate_id)


@pytest.fixture
def temp_dir():
    """Temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def source_catalog(temp_dir):
    """An initialized source catalog in <temp>/catalog."""
    catalog = init_catalog(temp_dir / "catalog", is_external=False)
    yield catalog
    catalog.close()


@pytest.fixture
def dest_catalog(temp_dir):
    """An initialized destination catalog rooted at <temp>/dest."""
    catalog = init_catalog(temp_dir / "dest", is_external=True)
    yield catalog
    catalog.close()
