"""Core infrastructure layer - no business logic dependencies.

This module provides foundation-level services:
- Error taxonomy
- Configuration management (TOML)
- Catalog storage (SQLite, see .database)
- Console management (Rich)

The catalog store builds domain models, so it is imported from
tracksync.core.database directly rather than re-exported here.
"""

# Errors
from .errors import (
    CatalogError,
    CatalogKindMismatch,
    NotInitialized,
    SchemaVersionMismatch,
    TrackError,
    TrackSyncError,
)

# Configuration
from .config import (
    Config,
    DestinationConfig,
    create_default_config,
    ensure_directories,
    get_config_dir,
    get_config_path,
    get_data_dir,
    load_config,
    save_config,
)

# Console
from .console import get_console, safe_print
