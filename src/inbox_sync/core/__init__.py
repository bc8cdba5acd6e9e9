# =============================================================================
# Inbox Sync Core Module
# =============================================================================
# Core domain models. These are plain dataclasses with no third-party
# dependencies, so they can be imported anywhere without circular imports.
#
#   - MailAccount / ConnectionProfile: where and how to connect
#   - MailRecord / AttachmentMeta: the canonical normalized message
#   - SyncWatermark: incremental sync bookkeeping
#   - MailSource / FetchOptions / FetchResult: the adapter interface
# =============================================================================

from inbox_sync.core.account import ConnectionProfile, MailAccount, Protocol, Security
from inbox_sync.core.message import NO_SUBJECT, AttachmentMeta, MailRecord
from inbox_sync.core.source import FetchOptions, FetchResult, MailSource, sort_newest_first
from inbox_sync.core.watermark import SyncWatermark

__all__ = [
    "MailAccount",
    "ConnectionProfile",
    "Protocol",
    "Security",
    "MailRecord",
    "AttachmentMeta",
    "NO_SUBJECT",
    "SyncWatermark",
    "MailSource",
    "FetchOptions",
    "FetchResult",
    "sort_newest_first",
]
