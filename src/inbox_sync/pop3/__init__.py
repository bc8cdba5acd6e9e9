# =============================================================================
# Inbox Sync POP3 Module
# =============================================================================
# POP3 implementation of the MailSource interface and UIDL helpers.
# =============================================================================

from inbox_sync.pop3.client import (
    POP3_MAILBOX,
    POP3Adapter,
    POP3AuthenticationError,
    POP3ConnectionError,
)
from inbox_sync.pop3.uidl import (
    UidlEntry,
    UidlListing,
    UidlMapping,
    UidlPairs,
    UidlText,
    derive_uid,
    page_slice,
    parse_uidl,
)

__all__ = [
    "POP3_MAILBOX",
    "POP3Adapter",
    "POP3ConnectionError",
    "POP3AuthenticationError",
    "derive_uid",
    "parse_uidl",
    "page_slice",
    "UidlEntry",
    "UidlListing",
    "UidlText",
    "UidlPairs",
    "UidlMapping",
]
