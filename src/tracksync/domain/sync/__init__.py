"""Sync domain - mirroring the source catalog into destinations.

This domain handles:
- Destination path planning
- Filter evaluation (scripted or accept-all)
- Atomic file materialization (copy or hardlink)
- The sync engine and multi-destination runs
- Destination maintenance (clean, prune)
"""

# Planning
from .planner import destination_path, plan, sanitize, sort_key

# Filters
from .filters import (
    AcceptAll,
    FilterEvaluator,
    ScriptFilter,
    TrackProjection,
    check_filter,
    load_filter,
)

# Materialization
from .materializer import MaterializeMode, Materializer, materialize

# Engine
from .engine import (
    DestinationJob,
    DestinationResult,
    SyncAction,
    SyncEngine,
    SyncReport,
    sync_destinations,
)

# Maintenance
from .maintenance import MaintenanceResult, clean, prune

__all__ = [
    # Planning
    "destination_path",
    "plan",
    "sanitize",
    "sort_key",
    # Filters
    "AcceptAll",
    "FilterEvaluator",
    "ScriptFilter",
    "TrackProjection",
    "check_filter",
    "load_filter",
    # Materialization
    "MaterializeMode",
    "Materializer",
    "materialize",
    # Engine
    "DestinationJob",
    "DestinationResult",
    "SyncAction",
    "SyncEngine",
    "SyncReport",
    "sync_destinations",
    # Maintenance
    "MaintenanceResult",
    "clean",
    "prune",
]
