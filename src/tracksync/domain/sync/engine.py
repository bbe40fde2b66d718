"""
Sync engine - mirrors a filtered view of the source catalog into a destination.

A pass works in two phases:
1. Plan: snapshot the source, run the destination filter on every track,
   plan destination paths and decide one action per track.
2. Execute: mark orphans, then materialize files on a worker pool. The
   calling thread owns the destination catalog and commits each finished
   track as soon as its file is in place.

A pass never deletes a file it did not write itself. Tracks that left the
source become ORPHANED and stay on disk until pruned, or until a source
track planned to the same path replaces them.
"""

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional

from loguru import logger

from tracksync.core.database import Catalog, open_catalog
from tracksync.core.errors import (
    CatalogError,
    CatalogKindMismatch,
    PathConflict,
    ScriptError,
    TrackError,
    TrackSyncError,
)
from tracksync.domain.library.models import FileState, Track, TrackFailure

from .filters import FilterEvaluator, TrackProjection, load_filter
from .materializer import Materializer, MaterializeMode
from .planner import destination_path, sort_key


class SyncAction(Enum):
    """What a pass does with one source track."""

    NEW = "new"  # No destination row: materialize and insert
    RESTORE = "restore"  # Row exists but the file is gone: materialize again
    RELOCATE = "relocate"  # Planned path changed: materialize at the new path
    READOPT = "readopt"  # Orphaned row back in the source, file in place
    SKIP = "skip"  # Already synced at the planned path


MATERIALIZING_ACTIONS = (SyncAction.NEW, SyncAction.RESTORE, SyncAction.RELOCATE)


class PlannedAction(NamedTuple):
    """One decision of the planning phase."""

    action: SyncAction
    track: Track  # Source track
    dest_path: Path
    existing: Optional[Track] = None  # Destination row, if any
    replaces: Optional[Track] = None  # Row at dest_path whose track left the source

    def describe(self) -> str:
        if self.action is SyncAction.RELOCATE and self.existing is not None:
            return f"{self.action.value}: {self.existing.file_path} -> {self.dest_path}"
        return f"{self.action.value}: {self.dest_path}"


# (completed, total, track) after each finished file operation
ProgressCallback = Callable[[int, int, Optional[Track]], None]


@dataclass
class SyncReport:
    """Outcome of one destination pass."""

    destination: str
    dry_run: bool = False
    new: int = 0
    restored: int = 0
    relocated: int = 0
    readopted: int = 0
    skipped: int = 0
    rejected: int = 0
    excluded_existing: int = 0
    orphaned: int = 0
    interrupted: bool = False
    actions: List[PlannedAction] = field(default_factory=list)
    failures: List[TrackFailure] = field(default_factory=list)

    @property
    def materialized(self) -> int:
        return self.new + self.restored + self.relocated

    @property
    def has_errors(self) -> bool:
        return len(self.failures) > 0

    @property
    def summary(self) -> str:
        verb = "would materialize" if self.dry_run else "materialized"
        parts = [f"{self.materialized} {verb}"]
        if self.relocated:
            parts.append(f"{self.relocated} relocated")
        if self.readopted:
            parts.append(f"{self.readopted} re-adopted")
        parts.append(f"{self.skipped} up to date")
        if self.rejected:
            parts.append(f"{self.rejected} filtered out")
        if self.excluded_existing:
            parts.append(f"{self.excluded_existing} kept but no longer selected")
        if self.orphaned:
            parts.append(f"{self.orphaned} orphaned")
        if self.failures:
            parts.append(f"{len(self.failures)} failed")
        text = ", ".join(parts)
        if self.interrupted:
            text += " (interrupted)"
        return text


def snapshot_source(source: Catalog) -> List[Track]:
    """Source tracks for one pass, one per track_id (first by file path)."""
    seen: Dict[str, Track] = {}
    for track in source.list_tracks():
        if track.track_id in seen:
            logger.debug(
                f"Duplicate content {track.file_path} (same as {seen[track.track_id].file_path}), ignoring"
            )
            continue
        seen[track.track_id] = track
    return list(seen.values())


class SyncEngine:
    """Synchronizes one destination catalog from the source catalog.

    Every collaborator is injected: the two open catalogs, the filter, the
    materialization mode and the materializer doing the file work.

    Usage:
        engine = SyncEngine(source, destination, AcceptAll(), MaterializeMode.COPY)
        report = engine.run()
    """

    def __init__(
        self,
        source: Catalog,
        destination: Catalog,
        evaluator: FilterEvaluator,
        mode: MaterializeMode = MaterializeMode.COPY,
        materializer: Optional[Materializer] = None,
        workers: int = 4,
        cancel_event: Optional[threading.Event] = None,
    ):
        if source.is_external:
            raise CatalogKindMismatch(f"{source.db_path} is a destination catalog, not a source")
        if not destination.is_external:
            raise CatalogKindMismatch(f"{destination.db_path} is a source catalog, not a destination")

        self.source = source
        self.destination = destination
        self.evaluator = evaluator
        self.mode = mode
        self.materializer = materializer or Materializer()
        self.workers = max(1, workers)
        self.cancel_event = cancel_event

    @property
    def root(self) -> Path:
        return self.destination.library_dir

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _select(self, track: Track, report: SyncReport) -> bool:
        try:
            return self.evaluator.evaluate(TrackProjection.from_track(track))
        except ScriptError as e:
            logger.warning(f"Filter failed for {track.file_path}, not syncing it: {e}")
            report.failures.append(TrackFailure(track.file_path, e))
            return False

    def plan(self, report: SyncReport) -> tuple[List[PlannedAction], List[Track]]:
        """Decide the action for every source track.

        A path held by a track still in the source stays with that track;
        later tracks planning to it fail with PathConflict. A path held only
        by a row that left the source is taken over by the first source
        track planning to it.

        Returns:
            (actions in sort_key order, destination rows to mark ORPHANED)
        """
        snapshot = snapshot_source(self.source)
        source_ids = {t.track_id for t in snapshot}

        rows_by_id: Dict[str, List[Track]] = {}
        for row in self.destination.list_tracks():
            rows_by_id.setdefault(row.track_id, []).append(row)

        claimed: Dict[str, str] = {}
        left_source: Dict[str, Track] = {}
        to_orphan = []
        for track_id, rows in rows_by_id.items():
            if track_id in source_ids:
                continue
            for row in rows:
                left_source[row.file_path] = row
                if row.file_state is not FileState.ORPHANED:
                    to_orphan.append(row)

        selected = []
        for track in sorted(snapshot, key=sort_key):
            rows = rows_by_id.get(track.track_id, [])
            if self._select(track, report):
                selected.append(track)
                continue
            kept = [r for r in rows if r.file_state is FileState.SYNCED]
            if kept:
                logger.info(f"No longer selected, keeping: {kept[0].file_path}")
                report.excluded_existing += 1
            else:
                report.rejected += 1

        # Tracks still in the source keep the paths their rows already hold
        for track in snapshot:
            for row in rows_by_id.get(track.track_id, []):
                claimed[row.file_path] = track.track_id

        actions = []
        for track in selected:
            dest = destination_path(track, self.root)
            key = str(dest)

            owner = claimed.get(key)
            if owner is not None and owner != track.track_id:
                error = PathConflict(f"{dest} is already taken by another track", path=track.file_path)
                logger.warning(f"Path conflict for {track.file_path}: {error}")
                report.failures.append(TrackFailure(track.file_path, error))
                continue
            claimed[key] = track.track_id
            replaces = left_source.pop(key, None)

            rows = rows_by_id.get(track.track_id, [])
            existing = next((r for r in rows if r.file_path == key), rows[0] if rows else None)
            actions.append(PlannedAction(self._decide(existing, key), track, dest, existing, replaces))

        return actions, to_orphan

    @staticmethod
    def _decide(existing: Optional[Track], dest: str) -> SyncAction:
        if existing is None:
            return SyncAction.NEW
        if existing.file_path != dest:
            return SyncAction.RELOCATE
        # Stat only: an unchanged track is never read again
        if not os.path.exists(dest) or existing.file_state is FileState.PENDING:
            return SyncAction.RESTORE
        if existing.file_state is FileState.ORPHANED:
            return SyncAction.READOPT
        return SyncAction.SKIP

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _commit(self, item: PlannedAction, report: SyncReport) -> None:
        row = item.track._replace(
            file_path=str(item.dest_path),
            file_state=FileState.SYNCED,
            surrogate_id=item.existing.surrogate_id if item.existing else None,
        )
        if item.replaces is not None:
            self.destination.replace_track(row, item.replaces.surrogate_id)
            logger.info(f"Replaced orphaned track {item.replaces.track_id[:8]} at {item.dest_path}")
        else:
            self.destination.upsert_track(row)

        if item.action is SyncAction.NEW:
            report.new += 1
        elif item.action is SyncAction.RESTORE:
            report.restored += 1
        else:
            report.relocated += 1
            logger.info(f"Moved in layout, old file kept at {item.existing.file_path}")

    @staticmethod
    def _discard(item: PlannedAction) -> None:
        """Remove a file that landed but never got its row."""
        if item.action is SyncAction.RESTORE:
            # The row already points here
            return
        try:
            os.unlink(item.dest_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove uncommitted file {item.dest_path}: {e}")

    def _materialize_all(
        self,
        items: List[PlannedAction],
        report: SyncReport,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        total = len(items)
        completed = 0
        committed: set[Future] = set()
        commit_error: Optional[CatalogError] = None

        def finish(future: Future, item: PlannedAction) -> None:
            nonlocal completed, commit_error
            completed += 1
            committed.add(future)
            try:
                future.result()
            except TrackError as e:
                logger.warning(f"Failed to {self.mode.value} {item.track.file_path}: {e}")
                report.failures.append(TrackFailure(item.track.file_path, e))
            else:
                if commit_error is not None:
                    self._discard(item)
                else:
                    try:
                        self._commit(item, report)
                    except CatalogError as e:
                        logger.error(f"Cannot record {item.dest_path}, stopping: {e}")
                        commit_error = e
                        self._discard(item)
            if on_progress:
                on_progress(completed, total, item.track)

        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="materialize")
        futures: Dict[Future, PlannedAction] = {}
        try:
            for item in items:
                futures[executor.submit(
                    self.materializer.materialize, item.track.file_path, item.dest_path, self.mode
                )] = item

            for future in as_completed(futures):
                finish(future, futures[future])
                if commit_error is not None:
                    break
                if self._cancelled():
                    report.interrupted = True
                    break
        except KeyboardInterrupt:
            report.interrupted = True
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
            # Files that landed while stopping still get their rows, unless
            # the catalog already failed
            for future, item in futures.items():
                if future not in committed and future.done() and not future.cancelled():
                    finish(future, item)

        if commit_error is not None:
            raise commit_error

    def run(self, dry_run: bool = False, on_progress: Optional[ProgressCallback] = None) -> SyncReport:
        """Run one sync pass.

        Args:
            dry_run: Plan and report without touching files or the catalog
            on_progress: Called after each file operation finishes

        Returns:
            SyncReport for this destination

        Raises:
            CatalogError: If a catalog cannot be read or written
        """
        report = SyncReport(destination=str(self.root), dry_run=dry_run)
        logger.info(f"Sync pass for {self.root} (mode={self.mode.value}, dry_run={dry_run})")

        actions, to_orphan = self.plan(report)
        report.actions = actions
        report.orphaned = len(to_orphan)
        report.skipped = sum(1 for a in actions if a.action is SyncAction.SKIP)

        for row in to_orphan:
            logger.info(f"Track left the source, orphaning: {row.file_path}")

        pending = [a for a in actions if a.action in MATERIALIZING_ACTIONS]
        readopt = [a for a in actions if a.action is SyncAction.READOPT]

        if dry_run:
            for item in pending:
                logger.info(f"[dry run] {item.describe()}")
            report.new = sum(1 for a in pending if a.action is SyncAction.NEW)
            report.restored = sum(1 for a in pending if a.action is SyncAction.RESTORE)
            report.relocated = sum(1 for a in pending if a.action is SyncAction.RELOCATE)
            report.readopted = len(readopt)
            return report

        for row in to_orphan:
            self.destination.set_file_state(row.surrogate_id, FileState.ORPHANED)

        for item in readopt:
            self.destination.set_file_state(item.existing.surrogate_id, FileState.SYNCED)
            report.readopted += 1
            logger.info(f"Track is back in the source, re-adopted: {item.dest_path}")

        if pending:
            self._materialize_all(pending, report, on_progress)

        logger.info(f"Sync pass for {self.root} done: {report.summary}")
        return report


# ---------------------------------------------------------------------------
# Several destinations
# ---------------------------------------------------------------------------


class DestinationJob(NamedTuple):
    """Everything needed to sync one destination."""

    name: str
    root: str
    mode: MaterializeMode = MaterializeMode.COPY
    filter_source: Optional[str] = None
    filter_path: Optional[str] = None


@dataclass
class DestinationResult:
    """Per-destination outcome of sync_destinations()."""

    name: str
    report: Optional[SyncReport] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.report is not None and not self.report.has_errors


def _sync_one(
    catalog_dir: str | Path,
    job: DestinationJob,
    workers: int,
    dry_run: bool,
    materializer: Optional[Materializer],
    cancel_event: Optional[threading.Event],
    on_progress: Optional[Callable[[str], Optional[ProgressCallback]]],
) -> DestinationResult:
    result = DestinationResult(name=job.name)
    try:
        evaluator = load_filter(job.filter_source, job.filter_path, name=job.name)
        with open_catalog(catalog_dir, expect_external=False) as source, open_catalog(
            job.root, expect_external=True
        ) as destination:
            engine = SyncEngine(
                source,
                destination,
                evaluator,
                mode=job.mode,
                materializer=materializer,
                workers=workers,
                cancel_event=cancel_event,
            )
            callback = on_progress(job.name) if on_progress else None
            result.report = engine.run(dry_run=dry_run, on_progress=callback)
    except (TrackSyncError, OSError) as e:
        logger.error(f"Sync of destination '{job.name}' failed: {e}")
        result.error = e
    return result


def sync_destinations(
    catalog_dir: str | Path,
    jobs: List[DestinationJob],
    workers: int = 4,
    dry_run: bool = False,
    parallel: bool = True,
    materializer: Optional[Materializer] = None,
    on_progress: Optional[Callable[[str], Optional[ProgressCallback]]] = None,
) -> List[DestinationResult]:
    """Sync several destinations from the source catalog in catalog_dir.

    Each destination runs with its own catalog connections, in its own thread
    when parallel is set. A failure in one destination is recorded in its
    DestinationResult and does not affect the others.

    Args:
        on_progress: Factory returning the progress callback for a destination name

    Returns:
        One DestinationResult per job, in job order
    """
    if not parallel or len(jobs) <= 1:
        return [
            _sync_one(catalog_dir, job, workers, dry_run, materializer, None, on_progress)
            for job in jobs
        ]

    cancel_event = threading.Event()
    executor = ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="destination")
    try:
        futures = [
            executor.submit(
                _sync_one, catalog_dir, job, workers, dry_run, materializer, cancel_event, on_progress
            )
            for job in jobs
        ]
        return [future.result() for future in futures]
    except KeyboardInterrupt:
        logger.warning("Interrupted, letting destinations commit finished tracks...")
        cancel_event.set()
        raise
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
