# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the inbox-sync test suite.
#
#   - db / repo: a fresh SQLite database per test
#   - cipher / add_account: encrypted account rows, as the account
#     management side would store them
#   - make_raw / make_mail: builders for raw sources and MailRecords
#   - imap_response / imap_fetch_lines: canned aioimaplib responses
# =============================================================================

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from inbox_sync.core import MailRecord, Protocol
from inbox_sync.credentials import SecretCipher
from inbox_sync.storage import Database, Repository


@pytest.fixture
async def db(tmp_path):
    """Connected database in a temporary directory."""
    database = Database(tmp_path / "inbox-sync.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def repo(db):
    """Repository over the temporary database."""
    return Repository(db)


@pytest.fixture
def cipher():
    """Cipher with a fresh random key."""
    return SecretCipher(SecretCipher.generate_key())


@pytest.fixture
def add_account(db, cipher):
    """Insert an account row the way the account-management side would."""

    async def _add(
        user_id: int = 1,
        account_code: str = "main",
        *,
        email: str = "user@example.com",
        protocol: str = "IMAP",
        host: str = "mail.example.com",
        port: int = 993,
        security: str = "SSL",
        username: str | None = None,
        password: str = "hunter2",
        encrypted_password: str | None = None,
        is_active: bool = True,
        is_primary: bool = False,
    ) -> None:
        token = encrypted_password if encrypted_password is not None else cipher.encrypt(password)
        async with db.transaction() as conn:
            await conn.execute(
                """INSERT INTO email_accounts
                   (user_id, account_code, email, incoming_type, incoming_host,
                    incoming_port, incoming_username, password, incoming_security,
                    is_active, is_primary)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (user_id, account_code, email, protocol, host, port, username,
                 token, security, int(is_active), int(is_primary)),
            )

    return _add


@pytest.fixture
def make_raw():
    """Build a raw RFC 5322 message source."""

    def _make(
        subject: str | None = "Hello",
        *,
        sender: str = "Alice <alice@example.com>",
        to: str = "bob@example.com",
        date: str | None = "Mon, 15 Jan 2024 10:30:00 +0000",
        message_id: str | None = "<msg@example.com>",
        body: str = "Hi Bob,\r\nSee you soon.\r\n",
        extra_headers: str = "",
    ) -> bytes:
        headers = [f"From: {sender}", f"To: {to}"]
        if subject is not None:
            headers.append(f"Subject: {subject}")
        if date is not None:
            headers.append(f"Date: {date}")
        if message_id is not None:
            headers.append(f"Message-ID: {message_id}")
        headers.append("Content-Type: text/plain; charset=utf-8")
        text = "\r\n".join(headers) + "\r\n" + extra_headers + "\r\n" + body
        return text.encode("utf-8")

    return _make


@pytest.fixture
def make_mail():
    """Build a normalized MailRecord."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _make(
        uid: int,
        *,
        account_code: str = "main",
        source: Protocol = Protocol.IMAP,
        is_read: bool = False,
        is_starred: bool = False,
        subject: str | None = None,
        labels: list[str] | None = None,
        date: datetime | None = None,
    ) -> MailRecord:
        return MailRecord(
            uid=uid,
            account_code=account_code,
            mailbox="INBOX",
            message_id=f"<{uid}@example.com>",
            from_addresses=["alice@example.com"],
            from_name="Alice",
            to_addresses=["bob@example.com"],
            subject=subject or f"Message {uid}",
            text_body=f"Body {uid}",
            date=date or base + timedelta(hours=uid),
            is_read=is_read,
            is_starred=is_starred,
            labels=labels or [],
            source=source,
        )

    return _make


def imap_response(result: str = "OK", lines: list | None = None) -> SimpleNamespace:
    """Shape of an aioimaplib Response (result + lines)."""
    return SimpleNamespace(result=result, lines=lines or [])


def imap_fetch_lines(messages: list[tuple[int, int, str, bytes]]) -> list:
    """
    Build FETCH response lines as aioimaplib returns them.

    Args:
        messages: (sequence number, uid, flags, raw source) per message.
    """
    lines: list = []
    for seq, uid, flags, raw in messages:
        lines.append(f"{seq} FETCH (UID {uid} FLAGS ({flags}) BODY[] {{{len(raw)}}}".encode())
        lines.append(bytearray(raw))
        lines.append(b")")
    lines.append(b"FETCH completed.")
    return lines


@pytest.fixture
def imap_helpers():
    """Expose the aioimaplib response builders to tests."""
    return SimpleNamespace(response=imap_response, fetch_lines=imap_fetch_lines)
