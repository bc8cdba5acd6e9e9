# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# High-level operations on the sync engine's tables.
#
# Sections:
#   - Accounts: read-only lookups of users' mail accounts
#   - User Settings: per-user key/value preferences
#   - Cache Store: upsert with the flag-merge rule, retention trim, read-back
#   - Sync Tracker: monotonic incremental-sync watermarks
#
# Flag-merge rule:
#   IMAP records carry authoritative flags, so a re-sync overwrites the
#   cached is_read/is_starred. POP3 can't report flags, so a re-sync keeps
#   whatever read/starred state is already cached.
#
# All methods are async for non-blocking database access.
# =============================================================================

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import aiosqlite

from inbox_sync.core import (
    NO_SUBJECT,
    AttachmentMeta,
    MailAccount,
    MailRecord,
    Protocol,
    Security,
    SyncWatermark,
)
from inbox_sync.errors import PersistenceError

if TYPE_CHECKING:
    from inbox_sync.storage.database import Database

logger = logging.getLogger(__name__)


def _utc_iso(value: datetime) -> str:
    """Fixed-width UTC ISO timestamp, so text order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> str:
    return _utc_iso(datetime.now(timezone.utc))


def _json_list(value: str | None) -> list:
    return json.loads(value) if value else []


_CACHE_COLUMNS = """
    id, uid, account_code, mailbox, message_id,
    from_address, from_name, from_addresses, to_addresses, cc_addresses, bcc_addresses,
    subject, text_body, html_body, date,
    is_read, is_starred, attachments_metadata, labels, updated_at
"""

_UPSERT_SQL = """
    INSERT INTO inbox_cache (
        user_id, account_code, uid, message_id, mailbox,
        from_address, from_name, from_addresses, to_addresses, cc_addresses, bcc_addresses,
        subject, text_body, html_body, date,
        is_read, is_starred, has_attachments, attachments_metadata, labels,
        created_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (user_id, account_code, mailbox, uid) DO UPDATE SET
        {flag_updates}
        subject = excluded.subject,
        text_body = excluded.text_body,
        html_body = excluded.html_body,
        labels = excluded.labels,
        updated_at = excluded.updated_at
    RETURNING id, is_read, is_starred
"""

# Server flags are authoritative for IMAP only
_UPSERT_IMAP = _UPSERT_SQL.format(
    flag_updates="is_read = excluded.is_read, is_starred = excluded.is_starred,"
)
_UPSERT_POP3 = _UPSERT_SQL.format(flag_updates="")


class Repository:
    """
    Data access layer for the sync engine.

    Usage:
        >>> repo = Repository(database)
        >>> stored = await repo.upsert_mails(user_id, "main", mails, cache_limit=15)
        >>> await repo.advance_watermark(user_id, "main", "INBOX", 120, 50)

    Attributes:
        db: Database instance for executing queries.
    """

    def __init__(self, db: "Database") -> None:
        """
        Initialize the repository.

        Args:
            db: Connected Database instance.
        """
        self.db = db

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def get_account(self, user_id: int, account_code: str) -> MailAccount | None:
        """
        Get one of a user's accounts, active or not.

        Returns:
            The account, or None if the user has no such account.
        """
        async with self.db.lock:
            async with self.db.conn.execute(
                """SELECT user_id, account_code, email, incoming_type, incoming_host,
                          incoming_port, incoming_username, password, incoming_security,
                          is_active, is_primary
                   FROM email_accounts WHERE user_id = ? AND account_code = ?""",
                (user_id, account_code)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def list_accounts(self, user_id: int) -> list[MailAccount]:
        """Get a user's active accounts, primary first."""
        async with self.db.lock:
            async with self.db.conn.execute(
                """SELECT user_id, account_code, email, incoming_type, incoming_host,
                          incoming_port, incoming_username, password, incoming_security,
                          is_active, is_primary
                   FROM email_accounts
                   WHERE user_id = ? AND is_active = 1
                   ORDER BY is_primary DESC, created_at ASC, id ASC""",
                (user_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_account(row) for row in rows]

    def _row_to_account(self, row) -> MailAccount:
        """Convert a database row to a MailAccount object."""
        return MailAccount(
            user_id=row[0],
            account_code=row[1],
            email=row[2],
            protocol=Protocol(row[3]),
            host=row[4],
            port=row[5],
            username=row[6] or "",
            encrypted_password=row[7],
            security=Security(row[8]),
            is_active=bool(row[9]),
            is_primary=bool(row[10]),
        )

    # =========================================================================
    # User Settings
    # =========================================================================

    async def get_user_setting(self, user_id: int, key: str, default: str | None = None) -> str | None:
        """Get one setting value, or default when unset."""
        async with self.db.lock:
            async with self.db.conn.execute(
                "SELECT setting_value FROM user_settings WHERE user_id = ? AND setting_key = ?",
                (user_id, key)
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else default

    async def set_user_setting(self, user_id: int, key: str, value: str) -> None:
        """Create or replace a setting."""
        async with self.db.transaction() as conn:
            await conn.execute(
                """INSERT INTO user_settings (user_id, setting_key, setting_value, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT (user_id, setting_key)
                   DO UPDATE SET setting_value = excluded.setting_value,
                                 updated_at = excluded.updated_at""",
                (user_id, key, str(value), _now())
            )

    async def get_all_user_settings(self, user_id: int) -> dict[str, str]:
        """Get every setting of a user as a dict."""
        async with self.db.lock:
            async with self.db.conn.execute(
                "SELECT setting_key, setting_value FROM user_settings WHERE user_id = ?",
                (user_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    # =========================================================================
    # Cache Store
    # =========================================================================

    async def upsert_mails(
        self,
        user_id: int,
        account_code: str,
        mails: list[MailRecord],
        cache_limit: int,
    ) -> list[MailRecord]:
        """
        Store fetched mail and trim the account's cache, atomically.

        Existing rows (same account, mailbox and uid) are updated: subject,
        bodies and labels are refreshed; read/starred state is overwritten
        for IMAP records and kept for POP3 records. Afterwards only the
        newest cache_limit rows of the account are kept.

        Args:
            user_id: Owner of the cache.
            account_code: Account the mails belong to.
            mails: Normalized records to store.
            cache_limit: Maximum rows kept for this account.

        Returns:
            The records as stored (with id and the cached read/starred state),
            leaving out any the trim removed again.

        Raises:
            PersistenceError: If anything fails; nothing is written then.
        """
        if not mails:
            return []
        if cache_limit < 1:
            raise ValueError(f"cache_limit must be >= 1, got {cache_limit}")

        stored: list[MailRecord] = []
        now = _now()

        try:
            async with self.db.transaction() as conn:
                for mail in mails:
                    sql = _UPSERT_POP3 if mail.source == Protocol.POP3 else _UPSERT_IMAP
                    async with conn.execute(sql, self._mail_values(user_id, account_code, mail, now)) as cursor:
                        row = await cursor.fetchone()

                    stored.append(replace(
                        mail,
                        id=row[0],
                        is_read=bool(row[1]),
                        is_starred=bool(row[2]),
                        updated_at=datetime.fromisoformat(now),
                    ))

                trimmed = await self._trim(conn, user_id, account_code, cache_limit)
                if trimmed:
                    async with conn.execute(
                        "SELECT id FROM inbox_cache WHERE user_id = ? AND account_code = ?",
                        (user_id, account_code)
                    ) as cursor:
                        kept = {row[0] for row in await cursor.fetchall()}
                    stored = [mail for mail in stored if mail.id in kept]
        except PersistenceError:
            logger.error(f"Failed to cache {len(mails)} mails for {account_code}", exc_info=True)
            raise

        logger.info(
            f"Cached {len(stored)} mails for {account_code} "
            f"(limit={cache_limit}, trimmed={trimmed})"
        )
        return stored

    def _mail_values(self, user_id: int, account_code: str, mail: MailRecord, now: str) -> tuple:
        return (
            user_id, account_code, mail.uid, mail.message_id, mail.mailbox,
            mail.from_address, mail.from_name,
            json.dumps(mail.from_addresses), json.dumps(mail.to_addresses),
            json.dumps(mail.cc_addresses), json.dumps(mail.bcc_addresses),
            mail.subject, mail.text_body, mail.html_body, _utc_iso(mail.date),
            int(mail.is_read), int(mail.is_starred), int(mail.has_attachments),
            json.dumps([a.to_dict() for a in mail.attachments]),
            json.dumps(mail.labels),
            now, now,
        )

    async def _trim(
        self,
        conn: aiosqlite.Connection,
        user_id: int,
        account_code: str,
        cache_limit: int,
    ) -> int:
        """Delete everything but the newest cache_limit rows of an account."""
        cursor = await conn.execute(
            """DELETE FROM inbox_cache
               WHERE user_id = ? AND account_code = ? AND id NOT IN (
                   SELECT id FROM inbox_cache
                   WHERE user_id = ? AND account_code = ?
                   ORDER BY date DESC, id DESC
                   LIMIT ?
               )""",
            (user_id, account_code, user_id, account_code, cache_limit)
        )
        return cursor.rowcount

    async def get_cached_mails(
        self,
        user_id: int,
        account_code: str | None = None,
        mailbox: str = "INBOX",
    ) -> list[MailRecord]:
        """
        Read cached mail, newest first.

        Args:
            user_id: Owner of the cache.
            account_code: Limit to one account; None means all accounts.
            mailbox: Mailbox to read.
        """
        if account_code:
            query = f"""SELECT {_CACHE_COLUMNS} FROM inbox_cache
                        WHERE user_id = ? AND account_code = ? AND mailbox = ?
                        ORDER BY date DESC, id DESC"""
            params: tuple = (user_id, account_code, mailbox)
        else:
            query = f"""SELECT {_CACHE_COLUMNS} FROM inbox_cache
                        WHERE user_id = ? AND mailbox = ?
                        ORDER BY date DESC, id DESC"""
            params = (user_id, mailbox)

        try:
            async with self.db.lock:
                async with self.db.conn.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Could not read cache: {e}") from e

        return [self._row_to_mail(row) for row in rows]

    async def count_cached(self, user_id: int, account_code: str) -> int:
        """Number of cached rows for one account."""
        async with self.db.lock:
            async with self.db.conn.execute(
                "SELECT COUNT(*) FROM inbox_cache WHERE user_id = ? AND account_code = ?",
                (user_id, account_code)
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

    def _row_to_mail(self, row) -> MailRecord:
        """Convert a database row to a MailRecord object."""
        from_addresses = _json_list(row[7])
        if not from_addresses and row[5]:
            from_addresses = [row[5]]
        return MailRecord(
            id=row[0],
            uid=row[1],
            account_code=row[2],
            mailbox=row[3],
            message_id=row[4],
            from_name=row[6],
            from_addresses=from_addresses,
            to_addresses=_json_list(row[8]),
            cc_addresses=_json_list(row[9]),
            bcc_addresses=_json_list(row[10]),
            subject=row[11] or NO_SUBJECT,
            text_body=row[12],
            html_body=row[13],
            date=datetime.fromisoformat(row[14]),
            is_read=bool(row[15]),
            is_starred=bool(row[16]),
            attachments=[AttachmentMeta.from_dict(a) for a in _json_list(row[17])],
            labels=_json_list(row[18]),
            updated_at=datetime.fromisoformat(row[19]) if row[19] else None,
        )

    # =========================================================================
    # Sync Tracker
    # =========================================================================
    # The watermark only moves forward: advance_watermark() keeps the larger
    # of the stored and the new last_uid.

    async def get_watermark(
        self,
        user_id: int,
        account_code: str,
        mailbox: str = "INBOX",
    ) -> SyncWatermark | None:
        """Get the watermark of a mailbox, or None if it was never synced."""
        async with self.db.lock:
            async with self.db.conn.execute(
                """SELECT last_uid, total_on_server, last_synced_at FROM sync_tracking
                   WHERE user_id = ? AND account_code = ? AND mailbox = ?""",
                (user_id, account_code, mailbox)
            ) as cursor:
                row = await cursor.fetchone()

        if not row:
            return None
        return SyncWatermark(
            user_id=user_id,
            account_code=account_code,
            mailbox=mailbox,
            last_uid=row[0],
            total_on_server=row[1],
            last_synced_at=datetime.fromisoformat(row[2]) if row[2] else None,
        )

    async def get_last_synced_uid(
        self,
        user_id: int,
        account_code: str,
        mailbox: str = "INBOX",
    ) -> int:
        """Highest synced UID of a mailbox (0 when never synced)."""
        watermark = await self.get_watermark(user_id, account_code, mailbox)
        return watermark.last_uid if watermark else 0

    async def advance_watermark(
        self,
        user_id: int,
        account_code: str,
        mailbox: str,
        last_uid: int,
        total_on_server: int | None = None,
    ) -> None:
        """
        Record a successful sync.

        last_uid becomes MAX(stored, last_uid); total_on_server is only
        replaced when a new value is given.

        Raises:
            PersistenceError: If the write fails.
        """
        async with self.db.transaction() as conn:
            await conn.execute(
                """INSERT INTO sync_tracking
                       (user_id, account_code, mailbox, last_uid, total_on_server, last_synced_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (user_id, account_code, mailbox) DO UPDATE SET
                       last_uid = MAX(sync_tracking.last_uid, excluded.last_uid),
                       total_on_server = COALESCE(excluded.total_on_server,
                                                  sync_tracking.total_on_server),
                       last_synced_at = excluded.last_synced_at""",
                (user_id, account_code, mailbox, last_uid, total_on_server, _now())
            )
