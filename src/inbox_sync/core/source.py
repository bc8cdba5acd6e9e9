# =============================================================================
# Mail Source Interface
# =============================================================================
# IMAP and POP3 are structurally incompatible (stable UIDs and flags versus
# neither), but the sync engine treats them as two variants of one
# capability set:
#
#   - resolve an incremental range (messages newer than a cursor)
#   - resolve a page range (a newest-first window over existing mail)
#   - fetch and normalize the messages in that range
#
# Each adapter instance owns exactly one network session and is thrown away
# afterwards, so no state is shared between invocations.
# =============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from inbox_sync.core.account import ConnectionProfile, Protocol
from inbox_sync.core.message import MailRecord


@dataclass
class FetchOptions:
    """
    What to fetch from the server.

    Attributes:
        mailbox: Mailbox to read (ignored by POP3, which only has one).
        limit: Page size for page-window fetches.
        page: 1-based page number (1 = newest messages).
        since_uid: Incremental cursor. When > 0 (and the protocol supports
                   it) only messages with a higher UID are fetched and
                   page/limit are ignored.
    """
    mailbox: str = "INBOX"
    limit: int = 15
    page: int = 1
    since_uid: int | None = None

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")
        if self.page < 1:
            raise ValueError(f"page must be >= 1, got {self.page}")
        if self.since_uid is not None and self.since_uid < 0:
            raise ValueError(f"since_uid must be >= 0, got {self.since_uid}")

    @property
    def is_incremental(self) -> bool:
        """True when a positive cursor was supplied."""
        return bool(self.since_uid and self.since_uid > 0)


@dataclass
class FetchResult:
    """
    Messages fetched from a server, newest first.

    Attributes:
        mails: Normalized records.
        total_on_server: Message count reported by the server.
        fetched: Number of records successfully normalized.
        skipped: Number of messages dropped because they could not be parsed.
    """
    mails: list[MailRecord] = field(default_factory=list)
    total_on_server: int = 0
    skipped: int = 0

    @property
    def fetched(self) -> int:
        return len(self.mails)

    @property
    def highest_uid(self) -> int:
        """Highest uid among the fetched records (0 when empty)."""
        return max((m.uid for m in self.mails), default=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mails": [m.to_dict() for m in self.mails],
            "totalOnServer": self.total_on_server,
            "fetched": self.fetched,
        }


class MailSource(ABC):
    """
    A retrieval protocol adapter.

    Subclasses are constructed from a ConnectionProfile and must open,
    use and close their own session inside fetch().
    """

    protocol: Protocol

    def __init__(self, profile: ConnectionProfile) -> None:
        self.profile = profile

    @abstractmethod
    async def fetch(self, options: FetchOptions) -> FetchResult:
        """
        Connect, fetch the requested range, normalize and disconnect.

        Raises:
            TransientNetworkError: If the server cannot be reached or
                                   authentication fails.
            ServiceError: If the server rejects the request.
        """


def sort_newest_first(mails: list[MailRecord]) -> list[MailRecord]:
    """Sort records by date, newest first."""
    return sorted(mails, key=lambda m: m.date, reverse=True)
