"""Tests for the sync engine state machine."""

import os
import threading
import time
from pathlib import Path

import pytest

from conftest import add_source_track
from tracksync.core.database import init_catalog, open_catalog
from tracksync.core.errors import (
    CatalogError,
    CatalogKindMismatch,
    PathConflict,
    ScriptError,
    TrackIOError,
)
from tracksync.domain.library.identity import IdentityResolver
from tracksync.domain.library.models import FileState
from tracksync.domain.sync.engine import (
    DestinationJob,
    SyncAction,
    SyncEngine,
    sync_destinations,
)
from tracksync.domain.sync.filters import AcceptAll, ScriptFilter
from tracksync.domain.sync.maintenance import find_temp_files
from tracksync.domain.sync.materializer import Materializer, MaterializeMode


class RecordingMaterializer(Materializer):
    """Real materializer that remembers every call."""

    def __init__(self):
        self.calls = []

    def materialize(self, source_path, dest_path, mode):
        self.calls.append((str(source_path), str(dest_path), mode))
        super().materialize(source_path, dest_path, mode)


class FailingMaterializer(Materializer):
    """Fails for sources whose name contains 'bad'."""

    def materialize(self, source_path, dest_path, mode):
        if "bad" in str(source_path):
            raise TrackIOError(f"disk full while writing {dest_path}", path=str(source_path))
        super().materialize(source_path, dest_path, mode)


class RejectAll:
    def evaluate(self, projection):
        return False


class ExplodingFilter:
    def evaluate(self, projection):
        raise ScriptError("boom", path=projection.file_path)


@pytest.fixture
def music_dir(temp_dir):
    return temp_dir / "music"


@pytest.fixture
def song_a(source_catalog, music_dir):
    return add_source_track(source_catalog, music_dir / "song-a.flac", b"song a bytes")


def make_engine(source, destination, evaluator=None, mode=MaterializeMode.COPY, materializer=None):
    return SyncEngine(
        source,
        destination,
        evaluator or AcceptAll(),
        mode=mode,
        materializer=materializer or RecordingMaterializer(),
        workers=2,
    )


class TestEndToEnd:
    """One track, accept-all filter, copy mode."""

    def test_first_pass_materializes(self, source_catalog, dest_catalog, temp_dir, song_a):
        report = make_engine(source_catalog, dest_catalog).run()

        expected = temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac"
        assert expected.read_bytes() == b"song a bytes"
        assert report.new == 1
        assert report.failures == []

        rows = dest_catalog.list_tracks()
        assert len(rows) == 1
        assert rows[0].track_id == song_a.track_id
        assert rows[0].file_path == str(expected)
        assert rows[0].file_state is FileState.SYNCED

    def test_second_pass_does_no_io(self, source_catalog, dest_catalog, temp_dir, song_a):
        make_engine(source_catalog, dest_catalog).run()
        dest_file = temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac"
        mtime = os.stat(dest_file).st_mtime_ns
        rows_before = dest_catalog.list_tracks()

        materializer = RecordingMaterializer()
        report = make_engine(source_catalog, dest_catalog, materializer=materializer).run()

        assert materializer.calls == []
        assert report.skipped == 1
        assert report.materialized == 0
        assert os.stat(dest_file).st_mtime_ns == mtime
        assert dest_catalog.list_tracks() == rows_before

    def test_destination_catalog_is_searchable(self, source_catalog, dest_catalog, song_a):
        make_engine(source_catalog, dest_catalog).run()
        assert [t.title for t in dest_catalog.search("Song")] == ["Song A"]


class TestFiltering:
    def test_rejected_track_is_not_written(self, source_catalog, dest_catalog, temp_dir, song_a):
        materializer = RecordingMaterializer()
        report = make_engine(source_catalog, dest_catalog, RejectAll(), materializer=materializer).run()

        assert report.rejected == 1
        assert materializer.calls == []
        assert dest_catalog.count_tracks() == 0

    def test_script_filter_selects_exactly_accepted_tracks(self, source_catalog, dest_catalog, music_dir):
        add_source_track(source_catalog, music_dir / "a.flac", b"a", title="Keep Me")
        add_source_track(source_catalog, music_dir / "b.flac", b"b", title="Drop Me", number=2)
        add_source_track(source_catalog, music_dir / "c.mp3", b"c", title="Keep Too", number=3)
        evaluator = ScriptFilter('def filter(track):\n    return regex_match("^Keep", track.title)\n')

        report = make_engine(source_catalog, dest_catalog, evaluator).run()

        assert sorted(t.title for t in dest_catalog.list_tracks()) == ["Keep Me", "Keep Too"]
        assert report.rejected == 1

    def test_script_error_rejects_and_is_reported(self, source_catalog, dest_catalog, song_a):
        report = make_engine(source_catalog, dest_catalog, ExplodingFilter()).run()

        assert dest_catalog.count_tracks() == 0
        assert len(report.failures) == 1
        assert isinstance(report.failures[0].error, ScriptError)

    def test_no_longer_selected_track_is_kept(self, source_catalog, dest_catalog, temp_dir, song_a):
        make_engine(source_catalog, dest_catalog).run()

        report = make_engine(source_catalog, dest_catalog, RejectAll()).run()

        assert report.excluded_existing == 1
        assert report.rejected == 0
        assert dest_catalog.count_tracks() == 1
        assert (temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac").exists()


class TestOrphans:
    def test_removed_source_track_becomes_orphaned(self, source_catalog, dest_catalog, temp_dir, song_a):
        make_engine(source_catalog, dest_catalog).run()
        source_catalog.delete_track(song_a.surrogate_id)

        report = make_engine(source_catalog, dest_catalog).run()

        assert report.orphaned == 1
        rows = dest_catalog.list_tracks()
        assert [r.file_state for r in rows] == [FileState.ORPHANED]
        # File is never deleted by a pass
        assert Path(rows[0].file_path).exists()

    def test_orphan_is_readopted(self, source_catalog, dest_catalog, music_dir, song_a):
        make_engine(source_catalog, dest_catalog).run()
        source_catalog.delete_track(song_a.surrogate_id)
        make_engine(source_catalog, dest_catalog).run()

        add_source_track(source_catalog, music_dir / "song-a.flac", b"song a bytes")
        materializer = RecordingMaterializer()
        report = make_engine(source_catalog, dest_catalog, materializer=materializer).run()

        assert report.readopted == 1
        assert materializer.calls == []
        assert [r.file_state for r in dest_catalog.list_tracks()] == [FileState.SYNCED]

    def test_orphaned_pass_is_stable(self, source_catalog, dest_catalog, song_a):
        make_engine(source_catalog, dest_catalog).run()
        source_catalog.delete_track(song_a.surrogate_id)
        make_engine(source_catalog, dest_catalog).run()

        report = make_engine(source_catalog, dest_catalog).run()
        assert report.orphaned == 0
        assert dest_catalog.count_tracks() == 1


class TestFailures:
    def test_failed_materialization_leaves_no_row(self, source_catalog, dest_catalog, music_dir, temp_dir):
        add_source_track(source_catalog, music_dir / "good.flac", b"good", title="Good")
        add_source_track(source_catalog, music_dir / "bad.flac", b"bad", title="Bad", number=2)

        report = make_engine(source_catalog, dest_catalog, materializer=FailingMaterializer()).run()

        assert [t.title for t in dest_catalog.list_tracks()] == ["Good"]
        assert report.new == 1
        assert len(report.failures) == 1
        assert report.failures[0].path.endswith("bad.flac")
        assert not (temp_dir / "dest" / "X" / "Y" / "02 - Bad.flac").exists()

    def test_failed_track_is_retried_next_pass(self, source_catalog, dest_catalog, music_dir):
        add_source_track(source_catalog, music_dir / "bad.flac", b"bad")
        make_engine(source_catalog, dest_catalog, materializer=FailingMaterializer()).run()

        report = make_engine(source_catalog, dest_catalog).run()
        assert report.new == 1

    def test_missing_destination_file_is_restored(self, source_catalog, dest_catalog, temp_dir, song_a):
        make_engine(source_catalog, dest_catalog).run()
        dest_file = temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac"
        dest_file.unlink()

        report = make_engine(source_catalog, dest_catalog).run()

        assert report.restored == 1
        assert dest_file.exists()
        assert dest_catalog.count_tracks() == 1

    def test_path_conflict(self, source_catalog, dest_catalog, music_dir):
        add_source_track(source_catalog, music_dir / "one.flac", b"first take")
        add_source_track(source_catalog, music_dir / "two.flac", b"second take")

        report = make_engine(source_catalog, dest_catalog).run()

        assert report.new == 1
        assert len(report.failures) == 1
        assert isinstance(report.failures[0].error, PathConflict)
        assert dest_catalog.count_tracks() == 1


class TestModesAndOptions:
    def test_hardlink_mode(self, source_catalog, dest_catalog, temp_dir, song_a):
        make_engine(source_catalog, dest_catalog, mode=MaterializeMode.HARDLINK).run()

        dest_file = temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac"
        assert os.stat(dest_file).st_ino == os.stat(song_a.file_path).st_ino

    def test_copy_mode_does_not_share_storage(self, source_catalog, dest_catalog, temp_dir, song_a):
        make_engine(source_catalog, dest_catalog).run()

        dest_file = temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac"
        assert os.stat(dest_file).st_ino != os.stat(song_a.file_path).st_ino
        assert dest_file.read_bytes() == Path(song_a.file_path).read_bytes()

    def test_dry_run_writes_nothing(self, source_catalog, dest_catalog, temp_dir, song_a):
        materializer = RecordingMaterializer()
        report = make_engine(source_catalog, dest_catalog, materializer=materializer).run(dry_run=True)

        assert report.new == 1
        assert [a.action for a in report.actions] == [SyncAction.NEW]
        assert materializer.calls == []
        assert dest_catalog.count_tracks() == 0
        assert not (temp_dir / "dest" / "X").exists()

    def test_duplicate_source_content_is_synced_once(self, source_catalog, dest_catalog, music_dir):
        add_source_track(source_catalog, music_dir / "a" / "copy.flac", b"same")
        add_source_track(source_catalog, music_dir / "b" / "copy.flac", b"same", title="Other Title")

        report = make_engine(source_catalog, dest_catalog).run()

        assert report.new == 1
        assert report.failures == []
        assert [t.title for t in dest_catalog.list_tracks()] == ["Song A"]

    def test_retag_relocates_and_keeps_old_file(self, source_catalog, dest_catalog, temp_dir, song_a):
        make_engine(source_catalog, dest_catalog).run()
        source_catalog.upsert_track(song_a._replace(title="Song A (Remaster)"))

        report = make_engine(source_catalog, dest_catalog).run()

        assert report.relocated == 1
        rows = dest_catalog.list_tracks()
        assert len(rows) == 1
        assert rows[0].file_path.endswith("01 - Song A (Remaster).flac")
        assert (temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac").exists()

    def test_progress_callback(self, source_catalog, dest_catalog, music_dir):
        add_source_track(source_catalog, music_dir / "a.flac", b"a", title="A")
        add_source_track(source_catalog, music_dir / "b.flac", b"b", title="B")
        calls = []

        make_engine(source_catalog, dest_catalog).run(
            on_progress=lambda completed, total, track: calls.append((completed, total))
        )
        assert sorted(calls) == [(1, 2), (2, 2)]

    def test_catalog_kinds_are_checked(self, source_catalog, dest_catalog):
        with pytest.raises(CatalogKindMismatch):
            make_engine(dest_catalog, dest_catalog)
        with pytest.raises(CatalogKindMismatch):
            make_engine(source_catalog, source_catalog)


class TestSyncDestinations:
    """Several destinations, failures confined to their own result."""

    @pytest.mark.parametrize("parallel", [True, False])
    def test_failure_is_confined(self, source_catalog, temp_dir, song_a, parallel):
        init_catalog(temp_dir / "car", is_external=True).close()
        jobs = [
            DestinationJob(name="car", root=str(temp_dir / "car")),
            DestinationJob(name="phone", root=str(temp_dir / "not-initialized")),
        ]

        results = sync_destinations(temp_dir / "catalog", jobs, workers=2, parallel=parallel)

        assert [r.name for r in results] == ["car", "phone"]
        assert results[0].ok
        assert results[0].report.new == 1
        assert results[1].error is not None
        assert not results[1].ok
        with open_catalog(temp_dir / "car") as car:
            assert car.count_tracks() == 1

    def test_each_destination_gets_its_own_filter(self, source_catalog, temp_dir, song_a):
        for name in ("all", "none"):
            init_catalog(temp_dir / name, is_external=True).close()
        jobs = [
            DestinationJob(name="all", root=str(temp_dir / "all")),
            DestinationJob(
                name="none",
                root=str(temp_dir / "none"),
                filter_source="def filter(track):\n    return False\n",
            ),
        ]

        results = sync_destinations(temp_dir / "catalog", jobs)

        assert results[0].report.new == 1
        assert results[1].report.rejected == 1

    def test_invalid_filter_is_a_destination_error(self, source_catalog, temp_dir, song_a):
        init_catalog(temp_dir / "car", is_external=True).close()
        jobs = [DestinationJob(name="car", root=str(temp_dir / "car"), filter_source="not python (")]

        results = sync_destinations(temp_dir / "catalog", jobs)
        assert isinstance(results[0].error, ScriptError)


class TestPathOwnership:
    """Who may write to a planned path that already has a row."""

    def test_changed_content_replaces_stale_copy(self, source_catalog, dest_catalog, temp_dir, song_a):
        make_engine(source_catalog, dest_catalog).run()
        dest_file = temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac"

        # Same tags, new bytes: the rescan gives it a new track_id
        Path(song_a.file_path).write_bytes(b"song a remastered")
        new_id = IdentityResolver().resolve(song_a.file_path)
        source_catalog.upsert_track(song_a._replace(track_id=new_id))

        report = make_engine(source_catalog, dest_catalog).run()

        assert report.failures == []
        assert report.new == 1
        assert dest_file.read_bytes() == b"song a remastered"
        rows = dest_catalog.list_tracks()
        assert [(r.track_id, r.file_state) for r in rows] == [(new_id, FileState.SYNCED)]

        # And the next pass has nothing left to do
        assert make_engine(source_catalog, dest_catalog).run().skipped == 1

    def test_synced_track_keeps_its_path(self, source_catalog, dest_catalog, temp_dir, music_dir):
        first = add_source_track(source_catalog, music_dir / "take-1.flac", b"take-1")
        make_engine(source_catalog, dest_catalog).run()
        dest_file = temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac"

        # Try both orderings of the newcomer's id against the incumbent's
        for content in (b"take-2", b"take-3", b"take-4", b"take-5"):
            add_source_track(source_catalog, music_dir / f"{content.decode()}.flac", content)

        report = make_engine(source_catalog, dest_catalog).run()

        assert dest_file.read_bytes() == b"take-1"
        assert report.new == 0
        assert len(report.failures) == 4
        assert all(isinstance(f.error, PathConflict) for f in report.failures)
        rows = dest_catalog.list_tracks()
        assert [(r.track_id, r.file_path) for r in rows] == [(first.track_id, str(dest_file))]

    def test_filtered_out_track_keeps_its_path(self, source_catalog, dest_catalog, temp_dir, music_dir):
        add_source_track(source_catalog, music_dir / "take-1.flac", b"take-1")
        make_engine(source_catalog, dest_catalog).run()
        add_source_track(source_catalog, music_dir / "take-2.flac", b"take-2")
        evaluator = ScriptFilter('def filter(track):\n    return track.file_path.endswith("take-2.flac")\n')

        report = make_engine(source_catalog, dest_catalog, evaluator).run()

        assert report.excluded_existing == 1
        assert isinstance(report.failures[0].error, PathConflict)
        assert (temp_dir / "dest" / "X" / "Y" / "01 - Song A.flac").read_bytes() == b"take-1"


def broken_write(*args, **kwargs):
    raise CatalogError("Catalog write failed: disk I/O error")


class TestCommitFailure:
    def test_no_file_without_row(self, source_catalog, dest_catalog, temp_dir, music_dir, monkeypatch):
        for number in (1, 2, 3):
            add_source_track(source_catalog, music_dir / f"{number}.flac", f"{number}".encode(), number=number)
        monkeypatch.setattr(dest_catalog, "upsert_track", broken_write)

        with pytest.raises(CatalogError, match="disk I/O error"):
            make_engine(source_catalog, dest_catalog).run()

        assert dest_catalog.count_tracks() == 0
        assert list((temp_dir / "dest").rglob("*.flac")) == []
        assert find_temp_files(temp_dir / "dest") == []

    def test_sync_destinations_records_the_error(self, source_catalog, temp_dir, song_a, monkeypatch):
        init_catalog(temp_dir / "car", is_external=True).close()
        monkeypatch.setattr("tracksync.core.database.Catalog.upsert_track", broken_write)

        results = sync_destinations(temp_dir / "catalog", [DestinationJob(name="car", root=str(temp_dir / "car"))])

        assert isinstance(results[0].error, CatalogError)
        assert list((temp_dir / "car").rglob("*.flac")) == []


class StoppingMaterializer(Materializer):
    """Materializes the first track, then runs on_second for the second call."""

    def __init__(self, on_second):
        self.calls = 0
        self.on_second = on_second

    def materialize(self, source_path, dest_path, mode):
        self.calls += 1
        if self.calls == 2:
            self.on_second()
        super().materialize(source_path, dest_path, mode)


class TestInterruption:
    """Finished tracks stay committed, nothing half-written is left."""

    @pytest.fixture
    def three_songs(self, source_catalog, music_dir):
        return [
            add_source_track(source_catalog, music_dir / f"{n}.flac", f"song {n}".encode(), title=f"Song {n}", number=n)
            for n in (1, 2, 3)
        ]

    def assert_consistent(self, dest_catalog, root):
        rows = dest_catalog.list_tracks()
        assert all(r.file_state is FileState.SYNCED and Path(r.file_path).exists() for r in rows)
        assert sorted(str(p) for p in root.rglob("*.flac")) == sorted(r.file_path for r in rows)
        assert find_temp_files(root) == []

    def test_cancel_event_stops_the_pass(self, source_catalog, dest_catalog, temp_dir, three_songs):
        cancel = threading.Event()

        def in_flight():
            # Still running when the pass is cancelled
            cancel.wait(timeout=5)
            time.sleep(0.2)

        engine = SyncEngine(
            source_catalog,
            dest_catalog,
            AcceptAll(),
            materializer=StoppingMaterializer(in_flight),
            workers=1,
            cancel_event=cancel,
        )
        report = engine.run(on_progress=lambda completed, total, track: cancel.set())

        assert report.interrupted
        assert sorted(t.title for t in dest_catalog.list_tracks()) == ["Song 1", "Song 2"]
        self.assert_consistent(dest_catalog, temp_dir / "dest")

    def test_keyboard_interrupt_commits_finished_tracks(self, source_catalog, dest_catalog, temp_dir, three_songs):
        def interrupt():
            raise KeyboardInterrupt

        engine = SyncEngine(
            source_catalog,
            dest_catalog,
            AcceptAll(),
            materializer=StoppingMaterializer(interrupt),
            workers=1,
        )
        with pytest.raises(KeyboardInterrupt):
            engine.run()

        titles = [t.title for t in dest_catalog.list_tracks()]
        assert "Song 1" in titles
        assert "Song 2" not in titles
        self.assert_consistent(dest_catalog, temp_dir / "dest")
