"""
Destination command handlers for the tracksync CLI.

Handles: dest add, dest list, filter, sync, clean, prune
"""

import argparse
import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from loguru import logger
from rich.markup import escape

from tracksync.core.config import Config, DestinationConfig, save_config
from tracksync.core.console import make_progress, safe_print
from tracksync.core.database import init_catalog, open_catalog
from tracksync.core.errors import ScriptError
from tracksync.core.output import log
from tracksync.domain.sync.engine import DestinationJob, DestinationResult, SyncAction, sync_destinations
from tracksync.domain.sync.filters import check_filter
from tracksync.domain.sync.maintenance import MaintenanceResult, clean, prune
from tracksync.domain.sync.materializer import MaterializeMode

FILTER_TEMPLATE = '''\
# Filter for destination "{name}".
# Return True to sync a track. Available fields: title, artist, album,
# number, disc_number, disc_total, file_path, extension.
# regex_match(pattern, text) searches text with a regular expression.

def filter(track):
    return True
'''


def _get_destination(config: Config, name: str) -> Optional[DestinationConfig]:
    dest = config.destinations.get(name)
    if dest is None:
        log(f"❌ Unknown destination '{name}'. Add it with: tracksync dest add {name} ROOT", level="error")
    return dest


# ---------------------------------------------------------------------------
# dest
# ---------------------------------------------------------------------------


def handle_dest_add(config: Config, args: argparse.Namespace) -> int:
    """Register a destination and initialize its catalog."""
    root = os.path.abspath(os.path.expanduser(args.root))
    mode = args.mode or config.sync.default_mode

    existing = config.destinations.get(args.name)
    if existing is not None and existing.root != root:
        log(f"❌ Destination '{args.name}' already exists at {existing.root}", level="error")
        return 1

    with init_catalog(root, is_external=True) as catalog:
        logger.debug(f"Destination catalog: {catalog.db_path}")

    config.destinations[args.name] = DestinationConfig(
        name=args.name,
        root=root,
        mode=mode,
        filter_file=existing.filter_file if existing else None,
    )
    save_config(config, args.config_path)
    log(f"✓ Destination '{args.name}' ready at {root} (mode: {mode})", level="success")
    return 0


def handle_dest_list(config: Config, args: argparse.Namespace) -> int:
    """List registered destinations."""
    if not config.destinations:
        log("No destinations registered. Use: tracksync dest add NAME ROOT", level="info")
        return 0

    for name in sorted(config.destinations):
        dest = config.destinations[name]
        filter_path = dest.filter_path()
        filter_note = str(filter_path) if filter_path.is_file() else "no filter"
        safe_print(f"{name}: {dest.root} ({dest.mode}, {filter_note})", markup=False)
    return 0


# ---------------------------------------------------------------------------
# filter
# ---------------------------------------------------------------------------


def edit_script(initial: str, editor: Optional[str] = None) -> str:
    """Open initial text in $EDITOR and return what the user saved."""
    editor = editor or os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"

    fd, temp_path = tempfile.mkstemp(prefix="tracksync-filter-", suffix=".py")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(initial)
        subprocess.run([*shlex.split(editor), temp_path], check=True)
        with open(temp_path, encoding="utf-8") as f:
            return f.read()
    finally:
        os.unlink(temp_path)


def handle_filter(config: Config, args: argparse.Namespace) -> int:
    """Show, set or edit the filter script of a destination."""
    dest = _get_destination(config, args.name)
    if dest is None:
        return 1
    script_path = dest.filter_path()
    current = script_path.read_text(encoding="utf-8") if script_path.is_file() else None

    if args.read:
        if current is None:
            log(f"Destination '{args.name}' has no filter: every track is synced", level="info")
        else:
            safe_print(current, markup=False)
        return 0

    if args.file:
        source = Path(args.file).expanduser().read_text(encoding="utf-8")
    else:
        try:
            source = edit_script(current or FILTER_TEMPLATE.format(name=args.name))
        except (OSError, subprocess.CalledProcessError) as e:
            log(f"❌ Editor failed: {e}", level="error")
            return 1

    if not source.strip():
        if current is not None:
            script_path.unlink()
            log(f"✓ Removed filter of '{args.name}': every track will be synced", level="success")
        return 0

    try:
        check_filter(source, args.name)
    except ScriptError as e:
        log(f"❌ Filter not saved: {e}", level="error")
        return 1

    script_path.parent.mkdir(parents=True, exist_ok=True)
    script_path.write_text(source, encoding="utf-8")
    log(f"✓ Filter for '{args.name}' saved to {script_path}", level="success")
    return 0


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


def _build_jobs(config: Config, names: List[str], mode_override: Optional[str]) -> Optional[List[DestinationJob]]:
    jobs = []
    for name in names:
        dest = _get_destination(config, name)
        if dest is None:
            return None
        jobs.append(
            DestinationJob(
                name=name,
                root=dest.root,
                mode=MaterializeMode.parse(mode_override or dest.mode),
                filter_path=str(dest.filter_path()),
            )
        )
    return jobs


def _report_destination(result: DestinationResult, verbose: bool) -> None:
    if result.error is not None:
        log(f"❌ {result.name}: {result.error}", level="error")
        return

    report = result.report
    if report.dry_run or verbose:
        for item in report.actions:
            if item.action is not SyncAction.SKIP:
                safe_print(f"    {item.describe()}", markup=False)
    for failure in report.failures:
        log(f"  ✗ {failure}", level="warning")

    level = "warning" if report.has_errors else "success"
    mark = "⚠" if report.has_errors else "✓"
    prefix = "[dry run] " if report.dry_run else ""
    log(f"{mark} {prefix}{result.name}: {report.summary}", level=level)


def handle_sync(config: Config, args: argparse.Namespace) -> int:
    """Sync one, several or all destinations from the source catalog."""
    names = args.names or sorted(config.destinations)
    if not names:
        log("No destinations registered. Use: tracksync dest add NAME ROOT", level="warning")
        return 0

    jobs = _build_jobs(config, names, args.mode)
    if jobs is None:
        return 1

    # Fail early on a missing source catalog instead of once per destination
    open_catalog(config.catalog_dir(), expect_external=False).close()

    with make_progress() as progress:

        def progress_for(name: str):
            task = progress.add_task(escape(name), total=None)

            def on_progress(completed, total, track):
                progress.update(task, completed=completed, total=total)

            return on_progress

        results = sync_destinations(
            config.catalog_dir(),
            jobs,
            workers=config.sync.workers,
            dry_run=args.dry_run,
            parallel=config.sync.parallel_destinations,
            on_progress=progress_for,
        )

    for result in results:
        _report_destination(result, args.verbose)

    return 0 if all(r.ok for r in results) else 1


# ---------------------------------------------------------------------------
# clean / prune
# ---------------------------------------------------------------------------


def _report_maintenance(name: str, result: MaintenanceResult) -> int:
    for failure in result.failures:
        log(f"  ✗ {failure}", level="warning")
    level = "warning" if result.failures else "success"
    log(f"✓ {name}: {result.summary}", level=level)
    return 1 if result.failures else 0


def handle_clean(config: Config, args: argparse.Namespace) -> int:
    """Remove leftovers of interrupted syncs from a destination."""
    dest = _get_destination(config, args.name)
    if dest is None:
        return 1
    with open_catalog(dest.root, expect_external=True) as catalog:
        result = clean(catalog, dry_run=args.dry_run)
    return _report_maintenance(args.name, result)


def handle_prune(config: Config, args: argparse.Namespace) -> int:
    """Delete orphaned tracks (no longer in the source) from a destination."""
    dest = _get_destination(config, args.name)
    if dest is None:
        return 1

    with open_catalog(dest.root, expect_external=True) as catalog:
        if not args.yes:
            preview = prune(catalog, dry_run=True)
            if preview.rows_removed:
                log(
                    f"{preview.rows_removed} orphaned tracks would be deleted from '{args.name}'. "
                    "Re-run with --yes to delete them.",
                    level="warning",
                )
            else:
                log(f"✓ No orphaned tracks in '{args.name}'", level="success")
            return 0
        result = prune(catalog)
    return _report_maintenance(args.name, result)
