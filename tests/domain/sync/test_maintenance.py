"""Tests for destination clean and prune."""

from pathlib import Path

import pytest

from conftest import add_source_track, make_track
from tracksync.core.errors import CatalogKindMismatch
from tracksync.domain.library.models import FileState
from tracksync.domain.sync.engine import SyncEngine
from tracksync.domain.sync.filters import AcceptAll
from tracksync.domain.sync.maintenance import clean, find_temp_files, prune


class TestClean:
    def test_removes_temp_files(self, dest_catalog, temp_dir):
        album = temp_dir / "dest" / "X" / "Y"
        album.mkdir(parents=True)
        (album / ".tracksync-abc123.part").write_bytes(b"partial")
        (album / "01 - Song A.flac").write_bytes(b"complete")

        result = clean(dest_catalog)

        assert result.temp_files_removed == 1
        assert find_temp_files(temp_dir / "dest") == []
        assert (album / "01 - Song A.flac").exists()

    def test_removes_pending_rows(self, dest_catalog, temp_dir):
        path = temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"maybe incomplete")
        dest_catalog.upsert_track(make_track(file_path=str(path), file_state=FileState.PENDING))
        dest_catalog.upsert_track(make_track(file_path=str(temp_dir / "dest" / "ok.flac"), track_id="b" * 64))

        result = clean(dest_catalog)

        assert result.rows_removed == 1
        assert result.files_removed == 1
        assert not path.exists()
        assert [t.track_id for t in dest_catalog.list_tracks()] == ["b" * 64]

    def test_dry_run(self, dest_catalog, temp_dir):
        (temp_dir / "dest" / ".tracksync-x.part").write_bytes(b"partial")

        result = clean(dest_catalog, dry_run=True)

        assert result.temp_files_removed == 1
        assert len(find_temp_files(temp_dir / "dest")) == 1

    def test_source_catalog_is_refused(self, source_catalog):
        with pytest.raises(CatalogKindMismatch):
            clean(source_catalog)


class TestPrune:
    @pytest.fixture
    def orphan(self, source_catalog, dest_catalog, temp_dir):
        track = add_source_track(source_catalog, temp_dir / "music" / "a.flac", b"a")
        SyncEngine(source_catalog, dest_catalog, AcceptAll()).run()
        source_catalog.delete_track(track.surrogate_id)
        SyncEngine(source_catalog, dest_catalog, AcceptAll()).run()
        return dest_catalog.list_tracks(state=FileState.ORPHANED)[0]

    def test_deletes_orphans_and_empty_directories(self, dest_catalog, temp_dir, orphan):
        result = prune(dest_catalog)

        assert result.rows_removed == 1
        assert result.files_removed == 1
        assert dest_catalog.count_tracks() == 0
        assert not (temp_dir / "dest" / "X").exists()
        # The catalog itself stays
        assert dest_catalog.db_path.exists()

    def test_dry_run_keeps_everything(self, dest_catalog, orphan):
        result = prune(dest_catalog, dry_run=True)

        assert result.rows_removed == 1
        assert dest_catalog.count_tracks() == 1
        assert Path(orphan.file_path).exists()

    def test_synced_tracks_are_untouched(self, source_catalog, dest_catalog, temp_dir):
        add_source_track(source_catalog, temp_dir / "music" / "a.flac", b"a")
        SyncEngine(source_catalog, dest_catalog, AcceptAll()).run()

        result = prune(dest_catalog)

        assert result.rows_removed == 0
        assert dest_catalog.count_tracks() == 1
