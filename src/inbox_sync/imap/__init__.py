# =============================================================================
# Inbox Sync IMAP Module
# =============================================================================
# IMAP implementation of the MailSource interface, plus the server-side
# search used by live search.
# =============================================================================

from inbox_sync.imap.client import (
    FetchRange,
    IMAPAdapter,
    IMAPAuthenticationError,
    IMAPConnectionError,
    compute_fetch_range,
    parse_fetch_response,
)

__all__ = [
    "IMAPAdapter",
    "FetchRange",
    "compute_fetch_range",
    "parse_fetch_response",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
]
