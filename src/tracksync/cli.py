"""
tracksync CLI - Entry point

Keeps a source music catalog and mirrors filtered, reorganized subsets of it
onto destination directories.
"""

import argparse
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loguru import logger

from tracksync.commands import catalog as catalog_commands
from tracksync.commands import sync as sync_commands
from tracksync.core.config import VALID_MODES, Config, ensure_directories, get_data_dir, load_config
from tracksync.core.errors import NotInitialized, TrackSyncError
from tracksync.core.output import log, setup_loguru

Handler = Callable[[Config, argparse.Namespace], int]

HANDLERS: Dict[str, Handler] = {
    "init": catalog_commands.handle_init,
    "add": catalog_commands.handle_add,
    "update": catalog_commands.handle_update,
    "search": catalog_commands.handle_search,
    "albums": catalog_commands.handle_albums,
    "dupes": catalog_commands.handle_dupes,
    "dest add": sync_commands.handle_dest_add,
    "dest list": sync_commands.handle_dest_list,
    "filter": sync_commands.handle_filter,
    "sync": sync_commands.handle_sync,
    "clean": sync_commands.handle_clean,
    "prune": sync_commands.handle_prune,
}

# Commands that need the source catalog
SOURCE_COMMANDS = ("add", "update", "search", "albums", "dupes", "sync")


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with every subcommand."""
    parser = argparse.ArgumentParser(
        prog="tracksync",
        description="tracksync - Keep filtered copies of a music library in sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Global options
    parser.add_argument(
        "--config",
        dest="config_path",
        type=Path,
        default=None,
        help="Configuration file (default: ./config.toml or ~/.config/tracksync/config.toml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show every planned action and log debug output to stderr",
    )

    subparsers = parser.add_subparsers(dest="subcommand", help="Available commands")

    # Source catalog
    subparsers.add_parser("init", help="Create the source catalog")

    add_parser = subparsers.add_parser("add", help="Register directories and scan their tracks")
    add_parser.add_argument("directories", nargs="+", help="Directories holding audio files")

    update_parser = subparsers.add_parser(
        "update", help="Rescan registered directories (new files in, missing files out)"
    )
    update_parser.add_argument(
        "--rehash",
        action="store_true",
        help="Also re-read known files to pick up tag or content changes (slow)",
    )

    search_parser = subparsers.add_parser("search", help="Search tracks by title, artist, album...")
    search_parser.add_argument("query", nargs="+", help="Text to look for")
    search_parser.add_argument("--limit", type=int, default=None, help="Maximum number of results")

    subparsers.add_parser("albums", help="List albums and their formats")
    subparsers.add_parser("dupes", help="List albums stored in more than one format")

    # Destinations
    dest_parser = subparsers.add_parser("dest", help="Manage destinations")
    dest_sub = dest_parser.add_subparsers(dest="dest_command", help="Destination commands")
    dest_add = dest_sub.add_parser("add", help="Register a destination and create its catalog")
    dest_add.add_argument("name", help="Destination name")
    dest_add.add_argument("root", help="Directory the destination mirrors tracks into")
    dest_add.add_argument("--mode", choices=VALID_MODES, default=None, help="copy or hardlink")
    dest_sub.add_parser("list", help="List destinations")

    filter_parser = subparsers.add_parser(
        "filter", help="Edit the filter selecting which tracks a destination receives"
    )
    filter_parser.add_argument("name", help="Destination name")
    filter_source = filter_parser.add_mutually_exclusive_group()
    filter_source.add_argument("--read", action="store_true", help="Print the current filter")
    filter_source.add_argument("--file", default=None, help="Take the filter from a file instead of $EDITOR")

    sync_parser = subparsers.add_parser("sync", help="Sync destinations from the source catalog")
    sync_parser.add_argument("names", nargs="*", help="Destinations to sync (default: all)")
    sync_parser.add_argument("--mode", choices=VALID_MODES, default=None, help="Override the destination mode")
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print what would be done without touching files or catalogs",
    )

    clean_parser = subparsers.add_parser(
        "clean", help="Remove temporary files and unfinished tracks left by an interrupted sync"
    )
    clean_parser.add_argument("name", help="Destination name")
    clean_parser.add_argument("--dry-run", action="store_true", help="Only report what would be removed")

    prune_parser = subparsers.add_parser(
        "prune", help="Delete tracks that are no longer in the source from a destination"
    )
    prune_parser.add_argument("name", help="Destination name")
    prune_parser.add_argument("--yes", action="store_true", help="Really delete the files")

    return parser


def _command_key(args: argparse.Namespace) -> Optional[str]:
    if args.subcommand == "dest":
        return f"dest {args.dest_command}" if args.dest_command else None
    return args.subcommand


def setup_logging(config: Config, verbose: bool) -> None:
    log_file = Path(config.logging.log_file) if config.logging.log_file else get_data_dir() / "tracksync.log"
    level = "DEBUG" if verbose else config.logging.level
    setup_loguru(log_file, level=level, console_output=config.logging.console_output or verbose)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the tracksync command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    key = _command_key(args)
    handler = HANDLERS.get(key) if key else None
    if handler is None:
        parser.print_help()
        return 2

    ensure_directories()
    config = load_config(args.config_path)
    setup_logging(config, args.verbose)
    logger.debug(f"Running '{key}'")

    try:
        return handler(config, args)
    except NotInitialized as e:
        log(f"❌ {e}", level="error")
        if key in SOURCE_COMMANDS:
            log("Create the source catalog with: tracksync init", level="info")
        return 1
    except (TrackSyncError, OSError) as e:
        log(f"❌ {e}", level="error")
        return 1
    except KeyboardInterrupt:
        log("Interrupted. Finished tracks were saved; run 'tracksync clean NAME' if needed.", level="warning")
        return 130


if __name__ == "__main__":
    sys.exit(main())
