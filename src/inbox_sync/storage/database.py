# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite database connection, schema and transactions.
#
# Schema overview:
#   - email_accounts: Users' incoming mail accounts (owned by the account
#                     management side, read-only for the sync engine)
#   - user_settings: Per-user key/value preferences (e.g. inbox_cache_limit)
#   - inbox_cache: Bounded cache of normalized messages
#   - sync_tracking: Incremental sync watermarks
#
# Uses aiosqlite for async operations, with WAL mode for better concurrent
# read performance. The connection runs in autocommit mode and transactions
# are opened explicitly through Database.transaction(), which serializes
# writers on the shared connection.
# =============================================================================

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from inbox_sync.config import Config
from inbox_sync.errors import PersistenceError

logger = logging.getLogger(__name__)

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1


class Database:
    """
    Manages the SQLite database connection and schema.

    There is a single shared connection. Every statement that must not
    interleave with another coroutine's transaction (all writes, and reads
    that expect committed data) runs under the database lock.

    Usage:
        >>> db = Database(path)
        >>> await db.connect()
        >>> async with db.transaction() as conn:
        ...     await conn.execute("INSERT ...")
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = db_path or Config.default_database_path()
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # isolation_level=None: no implicit transactions, see transaction()
        self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)

        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()
        logger.debug(f"Database ready at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def lock(self) -> asyncio.Lock:
        """Lock guarding the shared connection."""
        return self._lock

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a block of statements as one atomic transaction.

        Commits when the block finishes, rolls back if it raises. Database
        errors are re-raised as PersistenceError.

        Raises:
            PersistenceError: If any statement (or the commit) fails.
        """
        async with self._lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException as e:
                await self._rollback()
                if isinstance(e, aiosqlite.Error):
                    raise PersistenceError(f"Transaction failed: {e}") from e
                raise
            try:
                await self.conn.execute("COMMIT")
            except aiosqlite.Error as e:
                await self._rollback()
                raise PersistenceError(f"Commit failed: {e}") from e

    async def _rollback(self) -> None:
        try:
            await self.conn.execute("ROLLBACK")
        except aiosqlite.Error as e:
            logger.warning(f"Rollback failed: {e}")

    # =========================================================================
    # Schema
    # =========================================================================

    async def _init_schema(self) -> None:
        """
        Initialize the database schema.

        Creates tables if they don't exist, runs migrations if needed.
        """
        try:
            async with self.conn.execute(
                "SELECT version FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self._create_schema()

    async def _create_schema(self) -> None:
        """Create the database schema from scratch."""
        schema = """
        BEGIN;

        -- Schema version tracking
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        -- Incoming mail accounts
        CREATE TABLE IF NOT EXISTS email_accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            account_code TEXT NOT NULL,
            email TEXT NOT NULL,
            incoming_type TEXT NOT NULL DEFAULT 'IMAP'
                CHECK (incoming_type IN ('IMAP', 'POP3')),
            incoming_host TEXT NOT NULL,
            incoming_port INTEGER NOT NULL,
            incoming_username TEXT,
            password TEXT NOT NULL,
            incoming_security TEXT NOT NULL DEFAULT 'SSL'
                CHECK (incoming_security IN ('SSL', 'STARTTLS', 'NONE')),
            is_active INTEGER NOT NULL DEFAULT 1,
            is_primary INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, account_code)
        );

        -- Per-user preferences
        CREATE TABLE IF NOT EXISTS user_settings (
            user_id INTEGER NOT NULL,
            setting_key TEXT NOT NULL,
            setting_value TEXT NOT NULL,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (user_id, setting_key)
        );

        -- Cached messages
        CREATE TABLE IF NOT EXISTS inbox_cache (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            account_code TEXT NOT NULL,
            uid INTEGER NOT NULL,
            message_id TEXT,
            mailbox TEXT NOT NULL DEFAULT 'INBOX',
            from_address TEXT,
            from_name TEXT,
            from_addresses TEXT,                -- JSON array
            to_addresses TEXT,                  -- JSON array
            cc_addresses TEXT,                  -- JSON array
            bcc_addresses TEXT,                 -- JSON array
            subject TEXT,
            text_body TEXT,
            html_body TEXT,
            date TEXT NOT NULL,                 -- ISO 8601, UTC
            is_read INTEGER NOT NULL DEFAULT 0,
            is_starred INTEGER NOT NULL DEFAULT 0,
            has_attachments INTEGER NOT NULL DEFAULT 0,
            attachments_metadata TEXT,          -- JSON array
            labels TEXT,                        -- JSON array
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, account_code, mailbox, uid)
        );

        -- Incremental sync watermarks
        CREATE TABLE IF NOT EXISTS sync_tracking (
            user_id INTEGER NOT NULL,
            account_code TEXT NOT NULL,
            mailbox TEXT NOT NULL DEFAULT 'INBOX',
            last_uid INTEGER NOT NULL DEFAULT 0,
            total_on_server INTEGER,
            last_synced_at TEXT NOT NULL,
            PRIMARY KEY (user_id, account_code, mailbox)
        );

        -- Indexes for common queries
        CREATE INDEX IF NOT EXISTS idx_accounts_user ON email_accounts(user_id, is_active);
        CREATE INDEX IF NOT EXISTS idx_cache_account_date
            ON inbox_cache(user_id, account_code, date DESC);
        CREATE INDEX IF NOT EXISTS idx_cache_mailbox_date
            ON inbox_cache(user_id, mailbox, date DESC);

        INSERT OR REPLACE INTO schema_version (version) VALUES (%d);

        COMMIT;
        """ % SCHEMA_VERSION

        await self.conn.executescript(schema)
