# =============================================================================
# Mail Record Model
# =============================================================================
# The canonical, protocol-agnostic shape of one message. Both the IMAP and
# the POP3 adapters produce MailRecords, the cache stores them, and every
# external operation returns them.
#
# Identity is (account_code, mailbox, uid). A uid is only unique inside that
# scope: for IMAP it is the server-assigned UID, for POP3 it is derived from
# the UIDL string (see inbox_sync.pop3.uidl.derive_uid).
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from inbox_sync.core.account import Protocol

# Subject used when a message has none
NO_SUBJECT = "(No Subject)"


@dataclass
class AttachmentMeta:
    """
    Metadata about one attachment. The content itself is never cached.

    Attributes:
        filename: Attachment filename ("attachment" when the part has none).
        content_type: MIME type ("application/octet-stream" when unknown).
        size: Decoded size in bytes.
    """
    filename: str
    content_type: str
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "contentType": self.content_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttachmentMeta":
        return cls(
            filename=data.get("filename") or "attachment",
            content_type=data.get("contentType") or "application/octet-stream",
            size=int(data.get("size") or 0),
        )


@dataclass
class MailRecord:
    """
    A normalized message.

    Attributes:
        uid: IMAP UID or derived POP3 UID (unique within account + mailbox).
        account_code: Account the message belongs to.
        mailbox: Mailbox name ("INBOX" for POP3).
        message_id: RFC 5322 Message-ID, if present.
        from_addresses: All addresses found in From headers, in order.
        from_name: First display name found in From, if any.
        to_addresses / cc_addresses / bcc_addresses: Recipient lists.
        subject: Subject line (placeholder when absent).
        text_body: Plain-text body, or None.
        html_body: HTML body, or None.
        date: Message date in UTC (fetch time when the message has none).
        is_read: \\Seen on IMAP; never authoritative for POP3.
        is_starred: \\Flagged on IMAP; never authoritative for POP3.
        attachments: Attachment metadata.
        labels: Keywords (non-system IMAP flags).
        source: Protocol the record was fetched with. Drives the cache
                merge rule for read/starred state.
        id: Cache row id once the record has been stored.
        updated_at: Last time the cache row was written.
    """

    uid: int
    account_code: str
    mailbox: str = "INBOX"
    message_id: str | None = None

    from_addresses: list[str] = field(default_factory=list)
    from_name: str | None = None
    to_addresses: list[str] = field(default_factory=list)
    cc_addresses: list[str] = field(default_factory=list)
    bcc_addresses: list[str] = field(default_factory=list)

    subject: str = NO_SUBJECT
    text_body: str | None = None
    html_body: str | None = None
    date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    is_read: bool = False
    is_starred: bool = False
    attachments: list[AttachmentMeta] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    source: Protocol = Protocol.IMAP

    # Cache fields
    id: int | None = None
    updated_at: datetime | None = None

    @property
    def has_attachments(self) -> bool:
        """Returns True if the message has any attachments."""
        return len(self.attachments) > 0

    @property
    def from_address(self) -> str:
        """Returns the first sender address, or an empty string."""
        return self.from_addresses[0] if self.from_addresses else ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for external layers (camelCase keys, ISO dates)."""
        return {
            "id": self.id,
            "uid": self.uid,
            "accountCode": self.account_code,
            "mailbox": self.mailbox,
            "messageId": self.message_id,
            "fromAddress": self.from_address,
            "fromAddresses": list(self.from_addresses),
            "fromName": self.from_name,
            "toAddresses": list(self.to_addresses),
            "ccAddresses": list(self.cc_addresses),
            "bccAddresses": list(self.bcc_addresses),
            "subject": self.subject,
            "textBody": self.text_body,
            "htmlBody": self.html_body,
            "date": self.date.isoformat(),
            "isRead": self.is_read,
            "isStarred": self.is_starred,
            "hasAttachments": self.has_attachments,
            "attachmentsMetadata": [a.to_dict() for a in self.attachments],
            "labels": list(self.labels),
        }

    def __repr__(self) -> str:
        return (
            f"MailRecord(uid={self.uid}, account={self.account_code!r}, "
            f"mailbox={self.mailbox!r}, subject={self.subject!r})"
        )
