# =============================================================================
# Inbox Sync: Mail Synchronization Engine for a Webmail Backend
# =============================================================================
#
# Connects to a user's own mail account over IMAP or POP3, normalizes every
# message into one canonical shape, and keeps a bounded server-side cache
# with incremental-sync bookkeeping.
#
# Features:
#   - IMAP (SSL / STARTTLS / plaintext) with UID-based incremental sync
#   - POP3 with UIDL-derived uids and configurable STARTTLS handling
#   - Bounded SQLite cache with per-protocol flag merging
#   - Live server-side search (IMAP)
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "inbox-sync"

# Main entry point - this is what gets called by the 'inbox-sync' command
from inbox_sync.app import main

__all__ = ["main", "__version__", "__app_name__"]
