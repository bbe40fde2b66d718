"""
Source library scanning.

Discovers audio files under registered directories, extracts their tags and
content identity on a worker pool, and registers them in the source catalog.
The calling thread is the only one that writes to the catalog.
"""

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from tracksync.core.database import Catalog
from tracksync.core.errors import CatalogKindMismatch, TrackError

from .identity import IdentityResolver
from .metadata import extract_tags
from .models import Track, TrackFailure, TrackTags

TagExtractor = Callable[[str], TrackTags]
ProgressCallback = Callable[[str, Optional[Track]], None]

DEFAULT_BATCH_SIZE = 100


@dataclass
class ScanResult:
    """Outcome of an add or update run."""

    added: int = 0
    updated: int = 0
    duplicates: int = 0
    removed: int = 0
    failures: List[TrackFailure] = field(default_factory=list)

    @property
    def summary(self) -> str:
        parts = [f"{self.added} added"]
        if self.updated:
            parts.append(f"{self.updated} updated")
        if self.duplicates:
            parts.append(f"{self.duplicates} already known")
        if self.removed:
            parts.append(f"{self.removed} removed")
        if self.failures:
            parts.append(f"{len(self.failures)} failed")
        return ", ".join(parts)


def is_supported_format(local_path: Path, supported_formats: Iterable[str]) -> bool:
    """Check if file format is supported."""
    return local_path.suffix.lower() in supported_formats


def find_audio_files(directory: Path, supported_formats: Iterable[str]) -> List[Path]:
    """Recursively list supported audio files, without following symlinks.

    Returns:
        Sorted list of absolute paths
    """
    formats = {fmt.lower() for fmt in supported_formats}
    found = []
    for root, _, files in os.walk(directory, followlinks=False):
        for filename in files:
            local_path = Path(root) / filename
            if local_path.is_symlink():
                logger.debug(f"Skipping symbolic link {local_path}")
                continue
            if is_supported_format(local_path, formats):
                found.append(local_path)
    return sorted(found)


def read_track(local_path: str, resolver: IdentityResolver, extract: TagExtractor) -> Track:
    """Build a source Track for one file (runs on worker threads)."""
    tags = extract(local_path)
    track_id = resolver.resolve(local_path)
    return Track.from_tags(track_id, tags, local_path)


def _require_source(catalog: Catalog) -> None:
    if catalog.is_external:
        raise CatalogKindMismatch(
            f"{catalog.db_path} is a destination catalog; tracks can only be "
            "registered in the source catalog"
        )


def _normalize_directory(directory: str | Path) -> Path:
    # abspath, not resolve(): symlinked directory components stay as given
    return Path(os.path.abspath(os.path.expanduser(str(directory))))


def register_files(
    catalog: Catalog,
    paths: List[str],
    resolver: IdentityResolver,
    extract: TagExtractor = extract_tags,
    workers: int = 4,
    batch_size: int = DEFAULT_BATCH_SIZE,
    existing: Optional[Dict[str, Track]] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> ScanResult:
    """Read files in parallel and write them to the source catalog in batches.

    Paths found in ``existing`` update their row in place (keeping the
    surrogate id) when the freshly read track differs; other paths are
    inserted. Per-file failures are collected in the result and do not stop
    the run. On interrupt, tracks read so far are committed before re-raising.
    """
    _require_source(catalog)
    existing = existing or {}
    result = ScanResult()
    batch: List[Track] = []

    def flush() -> None:
        if batch:
            catalog.upsert_tracks(batch)
            updated = sum(1 for t in batch if t.surrogate_id is not None)
            result.updated += updated
            result.added += len(batch) - updated
            batch.clear()

    executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="scan")
    try:
        futures = {executor.submit(read_track, p, resolver, extract): p for p in paths}
        for future in as_completed(futures):
            local_path = futures[future]
            try:
                track = future.result()
            except TrackError as e:
                logger.warning(f"Skipping {local_path}: {e}")
                result.failures.append(TrackFailure(local_path, e))
                if progress_callback:
                    progress_callback(local_path, None)
                continue

            previous = existing.get(local_path)
            if previous is not None:
                track = track._replace(surrogate_id=previous.surrogate_id)
                if track == previous:
                    continue
                logger.info(f"Track changed on disk, updating: {local_path}")

            batch.append(track)
            logger.debug(f"Found track: {track.title} - {track.artist}, from {track.album}")
            if progress_callback:
                progress_callback(local_path, track)
            if len(batch) >= batch_size:
                flush()
    except KeyboardInterrupt:
        flush()
        raise
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    flush()
    return result


def add_directories(
    catalog: Catalog,
    directories: Iterable[str | Path],
    resolver: IdentityResolver,
    supported_formats: Iterable[str],
    extract: TagExtractor = extract_tags,
    workers: int = 4,
    progress_callback: Optional[ProgressCallback] = None,
) -> ScanResult:
    """Scan directories and register their audio files in the source catalog.

    Files whose path is already in the catalog are counted as duplicates and
    left untouched. Each directory is remembered for later update runs.

    Raises:
        CatalogKindMismatch: If catalog is a destination catalog
        FileNotFoundError: If a directory does not exist
    """
    _require_source(catalog)
    formats = list(supported_formats)
    total = ScanResult()

    for directory in directories:
        path = _normalize_directory(directory)
        if not path.is_dir():
            raise FileNotFoundError(f"Not a directory: {path}")

        logger.info(f"Reading {path}...")
        known = catalog.known_paths(prefix=str(path) + os.sep)
        new_paths = []
        for local_path in find_audio_files(path, formats):
            if str(local_path) in known:
                total.duplicates += 1
                continue
            new_paths.append(str(local_path))

        result = register_files(
            catalog,
            new_paths,
            resolver,
            extract=extract,
            workers=workers,
            progress_callback=progress_callback,
        )
        total.added += result.added
        total.failures.extend(result.failures)

        catalog.add_directory(str(path))
        logger.info(f"Scanned {path}: {result.summary}")

    return total


def update_library(
    catalog: Catalog,
    resolver: IdentityResolver,
    supported_formats: Iterable[str],
    extract: TagExtractor = extract_tags,
    workers: int = 4,
    rehash: bool = False,
    progress_callback: Optional[ProgressCallback] = None,
) -> ScanResult:
    """Rescan every registered directory.

    New files are registered; rows whose file no longer exists are deleted
    from the source catalog. Destinations learn about the deletions on their
    next sync pass, where the tracks become orphaned.

    Args:
        rehash: Also re-read files already in the catalog and update rows whose
            tags or content changed (slow: every file is hashed again)
    """
    _require_source(catalog)
    formats = list(supported_formats)
    existing = {t.file_path: t for t in catalog.list_tracks()}
    result = ScanResult()

    # dict keeps discovery order while dropping overlaps between directories
    to_read: dict[str, None] = {}
    for directory in catalog.directories():
        path = Path(directory)
        if not path.is_dir():
            logger.warning(f"Registered directory is missing: {path}")
            continue
        for local_path in find_audio_files(path, formats):
            if rehash or str(local_path) not in existing:
                to_read[str(local_path)] = None

    scanned = register_files(
        catalog,
        list(to_read),
        resolver,
        extract=extract,
        workers=workers,
        existing=existing if rehash else None,
        progress_callback=progress_callback,
    )
    result.added = scanned.added
    result.updated = scanned.updated
    result.failures = scanned.failures

    missing = [t for t in existing.values() if not os.path.lexists(t.file_path)]
    for track in missing:
        logger.info(f"Track not on disk anymore, deleting: {track.file_path}")
    if missing:
        catalog.delete_tracks(t.surrogate_id for t in missing)
    result.removed = len(missing)

    return result
