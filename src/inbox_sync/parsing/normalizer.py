# =============================================================================
# Message Normalizer
# =============================================================================
# Turns one raw RFC 5322 message source into a MailRecord.
#
# Both protocol adapters hand their raw bytes here, so IMAP and POP3 mail end
# up in exactly the same shape. Protocol-specific data the source itself
# does not carry (uid, flags, mailbox) is passed in by the adapter.
#
# Rules:
#   - From/To/Cc/Bcc: every header instance and every group member is
#     flattened into one ordered address list
#   - Subject: "(No Subject)" when absent or blank
#   - Bodies: the first non-attachment text/plain and text/html parts,
#     resolved independently (either may be None)
#   - Attachments: metadata only (filename, content type, decoded size)
#   - Date: normalized to UTC; fetch time when missing or unparseable
# =============================================================================

import email
import email.header
import email.policy
import email.utils
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from email.message import Message as EmailMessage

from inbox_sync.core import NO_SUBJECT, AttachmentMeta, MailRecord, Protocol
from inbox_sync.errors import MessageParseError

logger = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_NAME = "attachment"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def normalize(
    raw: bytes | str,
    *,
    uid: int,
    account_code: str,
    mailbox: str = "INBOX",
    source: Protocol = Protocol.IMAP,
    flags: Iterable[str] = (),
    fetched_at: datetime | None = None,
) -> MailRecord:
    """
    Parse a raw message source into a MailRecord.

    Args:
        raw: Full message source (headers and body).
        uid: IMAP UID or derived POP3 UID.
        account_code: Account the message was fetched from.
        mailbox: Mailbox the message lives in.
        source: Protocol the message was fetched with.
        flags: IMAP flags reported by the server (empty for POP3).
        fetched_at: Fallback date when the message carries none.

    Returns:
        The normalized record.

    Raises:
        MessageParseError: If the source is empty or cannot be parsed as
                           a message.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8", errors="replace")
    if not raw or not raw.strip():
        raise MessageParseError(f"Empty message source for uid {uid}")

    fetched_at = fetched_at or datetime.now(timezone.utc)

    try:
        msg = email.message_from_bytes(raw, policy=email.policy.compat32)
        if not msg.keys():
            raise MessageParseError(f"Message uid {uid} has no headers")

        from_pairs = _address_pairs(msg, "From")
        text_body, html_body, attachments = _parse_body(msg)
        is_read, is_starred, labels = map_flags(flags)

        return MailRecord(
            uid=uid,
            account_code=account_code,
            mailbox=mailbox,
            message_id=(msg.get("Message-ID") or "").strip() or None,
            from_addresses=[addr for _, addr in from_pairs],
            from_name=next((name for name, _ in from_pairs if name), None),
            to_addresses=_addresses(msg, "To"),
            cc_addresses=_addresses(msg, "Cc"),
            bcc_addresses=_addresses(msg, "Bcc"),
            subject=decode_header(msg.get("Subject", "")).strip() or NO_SUBJECT,
            text_body=text_body,
            html_body=html_body,
            date=parse_date(msg.get("Date"), fallback=fetched_at),
            is_read=is_read,
            is_starred=is_starred,
            attachments=attachments,
            labels=labels,
            source=source,
        )
    except MessageParseError:
        raise
    except Exception as e:
        raise MessageParseError(f"Could not parse message uid {uid}: {e}") from e


# =============================================================================
# Flags
# =============================================================================

def map_flags(flags: Iterable[str]) -> tuple[bool, bool, list[str]]:
    """
    Map IMAP flags onto read/starred state and labels.

    \\Seen means read, \\Flagged means starred, and every keyword that is not
    a system flag (no leading backslash) becomes a label.

    Returns:
        Tuple of (is_read, is_starred, labels).
    """
    is_read = False
    is_starred = False
    labels: list[str] = []

    for flag in flags:
        upper = flag.upper()
        if upper == "\\SEEN":
            is_read = True
        elif upper == "\\FLAGGED":
            is_starred = True
        elif flag and not flag.startswith("\\") and flag not in labels:
            labels.append(flag)

    return is_read, is_starred, labels


# =============================================================================
# Headers
# =============================================================================

def decode_header(value: str | None) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    try:
        decoded_parts = email.header.decode_header(str(value))
        result = ""
        for part, charset in decoded_parts:
            if isinstance(part, bytes):
                try:
                    result += part.decode(charset or "utf-8", errors="replace")
                except LookupError:
                    result += part.decode("utf-8", errors="replace")
            else:
                result += part
        return result
    except Exception:
        return str(value)


def _address_pairs(msg: EmailMessage, header: str) -> list[tuple[str, str]]:
    """Return (display name, address) for every address in every instance."""
    values = [str(v) for v in msg.get_all(header, [])]
    pairs = []
    for name, addr in email.utils.getaddresses(values):
        if not addr:
            continue
        pairs.append((decode_header(name).strip(), addr.strip()))
    return pairs


def _addresses(msg: EmailMessage, header: str) -> list[str]:
    return [addr for _, addr in _address_pairs(msg, header)]


def parse_date(value: str | None, *, fallback: datetime) -> datetime:
    """
    Parse a Date header and normalize it to UTC.

    Dates without a timezone are assumed to already be UTC. Missing or
    unparseable dates return the fallback.
    """
    if not value:
        return fallback
    try:
        parsed = email.utils.parsedate_to_datetime(str(value))
    except (TypeError, ValueError, IndexError):
        logger.debug(f"Unparseable Date header {value!r}, using fetch time")
        return fallback
    if parsed is None:
        return fallback
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# =============================================================================
# Body
# =============================================================================

def _parse_body(msg: EmailMessage) -> tuple[str | None, str | None, list[AttachmentMeta]]:
    """
    Split a message into text body, HTML body and attachment metadata.

    Returns:
        Tuple of (text_body, html_body, attachments).
    """
    text_body: str | None = None
    html_body: str | None = None
    attachments: list[AttachmentMeta] = []

    if not msg.is_multipart():
        if _is_attachment(msg):
            attachments.append(_attachment_meta(msg))
        else:
            content_type = msg.get_content_type()
            if content_type == "text/html":
                html_body = _decode_part(msg)
            elif content_type == "text/plain":
                text_body = _decode_part(msg)
        return text_body, html_body, attachments

    for part in msg.walk():
        # Skip multipart containers
        if part.is_multipart():
            continue

        content_type = part.get_content_type()

        if _is_attachment(part):
            attachments.append(_attachment_meta(part))
        elif content_type == "text/plain" and text_body is None:
            text_body = _decode_part(part)
        elif content_type == "text/html" and html_body is None:
            html_body = _decode_part(part)

    return text_body, html_body, attachments


def _is_attachment(part: EmailMessage) -> bool:
    disposition = str(part.get("Content-Disposition", "")).lower()
    if disposition.startswith("attachment"):
        return True
    # Inline images and application/* parts are attachments too
    return part.get_content_maintype() not in ("text", "multipart", "message")


def _decode_part(part: EmailMessage) -> str:
    """Decode a message part to string."""
    payload = part.get_payload(decode=True)
    if isinstance(payload, bytes):
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except (LookupError, UnicodeDecodeError):
            return payload.decode("utf-8", errors="replace")
    return str(payload) if payload else ""


def _attachment_meta(part: EmailMessage) -> AttachmentMeta:
    """Extract attachment metadata from a message part."""
    filename = decode_header(part.get_filename()).strip() or DEFAULT_ATTACHMENT_NAME

    # get_content_type() falls back to text/plain; a part without any
    # Content-Type header is reported as octet-stream instead
    if part.get("Content-Type") is None:
        content_type = DEFAULT_CONTENT_TYPE
    else:
        content_type = part.get_content_type()

    payload = part.get_payload(decode=True)
    size = len(payload) if isinstance(payload, bytes) else 0

    return AttachmentMeta(filename=filename, content_type=content_type, size=size)
