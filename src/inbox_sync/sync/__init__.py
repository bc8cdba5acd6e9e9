# =============================================================================
# Inbox Sync Orchestration Module
# =============================================================================
# SyncManager ties credentials, adapters, cache and watermarks together.
# =============================================================================

from inbox_sync.sync.manager import (
    DateRange,
    SearchOptions,
    SearchResult,
    SyncManager,
    SyncOptions,
    SyncResult,
    months_ago,
)
from inbox_sync.sync.single_flight import SingleFlight

__all__ = [
    "SyncManager",
    "SyncOptions",
    "SyncResult",
    "SearchOptions",
    "SearchResult",
    "DateRange",
    "SingleFlight",
    "months_ago",
]
