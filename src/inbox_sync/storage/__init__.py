# =============================================================================
# Inbox Sync Storage Module
# =============================================================================
# SQLite persistence: connection and schema (Database) and the data access
# layer (Repository) for accounts, settings, the mail cache and watermarks.
# =============================================================================

from inbox_sync.storage.database import Database
from inbox_sync.storage.repository import Repository

__all__ = ["Database", "Repository"]
