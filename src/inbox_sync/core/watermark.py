# =============================================================================
# Sync Watermark Model
# =============================================================================
# Per (user, account, mailbox) bookkeeping for incremental sync: the highest
# UID synchronized so far and the last message count seen on the server.
#
# The watermark only ever moves forward. A re-run with a stale cursor may
# re-fetch an overlapping range, but it can never move last_uid backwards.
# =============================================================================

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass
class SyncWatermark:
    """
    Incremental sync state for one mailbox.

    Attributes:
        user_id: Owner of the account.
        account_code: Account the mailbox belongs to.
        mailbox: Mailbox name.
        last_uid: Highest UID synced so far (monotonically non-decreasing).
        total_on_server: Message count observed during the last sync.
        last_synced_at: When the watermark was last advanced.
    """
    user_id: int
    account_code: str
    mailbox: str = "INBOX"
    last_uid: int = 0
    total_on_server: int | None = None
    last_synced_at: datetime | None = None

    def advanced_to(self, uid: int) -> int:
        """Returns the last_uid this watermark would hold after seeing uid."""
        return max(self.last_uid, uid)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountCode": self.account_code,
            "mailbox": self.mailbox,
            "lastUid": self.last_uid,
            "totalOnServer": self.total_on_server,
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }
