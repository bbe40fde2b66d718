"""
Source catalog command handlers for the tracksync CLI.

Handles: init, add, update, search, albums, dupes
"""

import argparse

from tracksync.core.config import Config
from tracksync.core.console import make_progress, safe_print
from tracksync.core.database import Catalog, init_catalog, open_catalog
from tracksync.core.output import log
from tracksync.domain.library.duplicates import find_duplicate_albums
from tracksync.domain.library.identity import IdentityResolver
from tracksync.domain.library.scanner import ScanResult, add_directories, update_library


def open_source(config: Config) -> Catalog:
    """Open the source catalog configured for this run."""
    return open_catalog(config.catalog_dir(), expect_external=False)


def _report_scan(result: ScanResult) -> int:
    for failure in result.failures:
        log(f"  ✗ {failure}", level="warning")
    level = "warning" if result.failures else "success"
    log(f"✓ {result.summary}", level=level)
    return 1 if result.failures else 0


def handle_init(config: Config, args: argparse.Namespace) -> int:
    """Create the source catalog."""
    with init_catalog(config.catalog_dir(), is_external=False) as catalog:
        log(f"✓ Source catalog ready at {catalog.db_path}", level="success")
    return 0


def handle_add(config: Config, args: argparse.Namespace) -> int:
    """Register directories and scan their audio files."""
    resolver = IdentityResolver(config.sync.hash_chunk_size)

    with open_source(config) as catalog, make_progress() as progress:
        task = progress.add_task("Scanning", total=None)
        result = add_directories(
            catalog,
            args.directories,
            resolver,
            config.library.supported_formats,
            workers=config.library.scan_workers,
            progress_callback=lambda path, track: progress.advance(task),
        )

    if result.duplicates:
        log(f"{result.duplicates} files were already in the catalog", level="info")
    return _report_scan(result)


def handle_update(config: Config, args: argparse.Namespace) -> int:
    """Rescan registered directories: add new files, drop missing ones."""
    resolver = IdentityResolver(config.sync.hash_chunk_size)

    with open_source(config) as catalog:
        if not catalog.directories():
            log("No directories registered yet. Use: tracksync add DIR", level="warning")
            return 0
        with make_progress() as progress:
            task = progress.add_task("Rescanning", total=None)
            result = update_library(
                catalog,
                resolver,
                config.library.supported_formats,
                workers=config.library.scan_workers,
                rehash=args.rehash,
                progress_callback=lambda path, track: progress.advance(task),
            )

    return _report_scan(result)


def handle_search(config: Config, args: argparse.Namespace) -> int:
    """Full-text search of the source catalog."""
    query = " ".join(args.query)
    with open_source(config) as catalog:
        tracks = catalog.search(query, limit=args.limit)

    if not tracks:
        log(f"No tracks match '{query}'", level="info")
        return 0

    for track in tracks:
        safe_print(f"{track}  [{track.extension}]", markup=False)
        safe_print(f"    {track.file_path}", style="dim", markup=False)
    log(f"{len(tracks)} tracks found", level="info")
    return 0


def handle_albums(config: Config, args: argparse.Namespace) -> int:
    """List albums with their formats."""
    with open_source(config) as catalog:
        albums = catalog.list_albums()

    for album in albums:
        safe_print(f"{album.artist} - {album.title} ({album.format})", markup=False)
    log(f"{len(albums)} albums", level="info")
    return 0


def handle_dupes(config: Config, args: argparse.Namespace) -> int:
    """Show albums stored in more than one format."""
    with open_source(config) as catalog:
        duplicates = find_duplicate_albums(catalog)

    if not duplicates:
        log("✓ No album is stored in more than one format", level="success")
        return 0

    for album in duplicates:
        safe_print(f"{album.artist} - {album.title}", style="bold", markup=False)
        for directory, fmt in album.locations:
            safe_print(f"    {fmt:<6} {directory}", markup=False)
    log(f"{len(duplicates)} albums in more than one format", level="warning")
    return 0
