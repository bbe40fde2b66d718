"""
Destination maintenance: clean up interrupted writes and prune orphans.

These are the only operations that delete files from a destination, and
they only run when the operator asks for them.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from loguru import logger

from tracksync.core.database import Catalog
from tracksync.core.errors import CatalogKindMismatch, TrackIOError
from tracksync.domain.library.models import FileState, Track, TrackFailure

from .materializer import TEMP_PREFIX, TEMP_SUFFIX


@dataclass
class MaintenanceResult:
    """Outcome of a clean or prune run."""

    rows_removed: int = 0
    files_removed: int = 0
    temp_files_removed: int = 0
    failures: List[TrackFailure] = field(default_factory=list)

    @property
    def summary(self) -> str:
        parts = [f"{self.rows_removed} rows removed", f"{self.files_removed} files deleted"]
        if self.temp_files_removed:
            parts.append(f"{self.temp_files_removed} temporary files deleted")
        if self.failures:
            parts.append(f"{len(self.failures)} failed")
        return ", ".join(parts)


def _require_destination(catalog: Catalog) -> None:
    if not catalog.is_external:
        raise CatalogKindMismatch(f"{catalog.db_path} is the source catalog, not a destination")


def find_temp_files(root: Path) -> List[Path]:
    """Leftover temporary files from interrupted materializations."""
    found = []
    for directory, _, files in os.walk(root, followlinks=False):
        for filename in files:
            if filename.startswith(TEMP_PREFIX) and filename.endswith(TEMP_SUFFIX):
                found.append(Path(directory) / filename)
    return sorted(found)


def _prune_empty_dirs(start: Path, root: Path) -> None:
    """Remove empty directories from start up to (not including) root."""
    current = start
    while current != root and root in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent


def _delete_tracks(catalog: Catalog, tracks: List[Track], result: MaintenanceResult, dry_run: bool) -> None:
    root = catalog.library_dir
    for track in tracks:
        if dry_run:
            logger.info(f"[dry run] Would delete {track.file_path}")
            result.rows_removed += 1
            continue

        path = Path(track.file_path)
        try:
            if os.path.lexists(path):
                path.unlink()
                result.files_removed += 1
        except OSError as e:
            error = TrackIOError(f"Cannot delete {path}: {e}", path=str(path))
            logger.warning(str(error))
            result.failures.append(TrackFailure(str(path), error))
            continue

        catalog.delete_track(track.surrogate_id)
        result.rows_removed += 1
        logger.info(f"Deleted {track}: {path}")
        _prune_empty_dirs(path.parent, root)


def clean(catalog: Catalog, dry_run: bool = False) -> MaintenanceResult:
    """Remove leftovers of interrupted passes from a destination.

    Deletes temporary ``.part`` files under the destination root, and rows
    still marked PENDING together with any file at their path.

    Raises:
        CatalogKindMismatch: If catalog is the source catalog
    """
    _require_destination(catalog)
    result = MaintenanceResult()

    for temp_file in find_temp_files(catalog.library_dir):
        if dry_run:
            logger.info(f"[dry run] Would delete temporary file {temp_file}")
            result.temp_files_removed += 1
            continue
        try:
            temp_file.unlink()
            result.temp_files_removed += 1
            logger.info(f"Deleted temporary file {temp_file}")
        except FileNotFoundError:
            pass
        except OSError as e:
            error = TrackIOError(f"Cannot delete {temp_file}: {e}", path=str(temp_file))
            logger.warning(str(error))
            result.failures.append(TrackFailure(str(temp_file), error))

    pending = catalog.list_tracks(state=FileState.PENDING)
    for track in pending:
        logger.info(f"Deleting non-cleanly copied track: {track}")
    _delete_tracks(catalog, pending, result, dry_run)
    return result


def prune(catalog: Catalog, dry_run: bool = False) -> MaintenanceResult:
    """Delete ORPHANED tracks and their files from a destination.

    Raises:
        CatalogKindMismatch: If catalog is the source catalog
    """
    _require_destination(catalog)
    result = MaintenanceResult()
    _delete_tracks(catalog, catalog.list_tracks(state=FileState.ORPHANED), result, dry_run)
    return result
