# =============================================================================
# POP3 Adapter
# =============================================================================
# POP3 implementation of MailSource, built on the standard library's poplib.
#
# poplib is blocking, so the whole session runs in a worker thread via
# asyncio.to_thread(); a slow POP3 server never stalls the event loop.
#
# Session:
#   connect (SSL / plaintext / STARTTLS) -> USER/PASS -> UIDL -> RETR... -> QUIT
#
# POP3 limitations the rest of the engine has to live with:
#   - one mailbox only (always reported as INBOX)
#   - no flags: records are always unread/unstarred, and the cache keeps
#     whatever read/starred state it already had
#   - no stable numeric UIDs: uids are derived from UIDL identifiers
#   - no incremental cursor: since_uid is ignored, pages are always used
# =============================================================================

import asyncio
import logging
import poplib
import ssl
from datetime import datetime, timezone

from inbox_sync.core import (
    ConnectionProfile,
    FetchOptions,
    FetchResult,
    MailRecord,
    MailSource,
    Protocol,
    Security,
    sort_newest_first,
)
from inbox_sync.errors import MessageParseError, ServiceError, TransientNetworkError
from inbox_sync.parsing import normalize
from inbox_sync.pop3.uidl import UidlEntry, page_slice, parse_uidl

logger = logging.getLogger(__name__)

# POP3 has a single mailbox
POP3_MAILBOX = "INBOX"

# How an account configured for STARTTLS is connected
STARTTLS_IMPLICIT = "implicit"
STARTTLS_UPGRADE = "upgrade"


class POP3Adapter(MailSource):
    """
    POP3 implementation of MailSource.

    Attributes:
        profile: Decrypted connection settings.
        timeout: Socket timeout in seconds.
        starttls_mode: "implicit" connects with TLS from the first byte when
                       the account asks for STARTTLS; "upgrade" issues a
                       real STLS on a plaintext connection.
    """

    protocol = Protocol.POP3

    # Default socket timeout (seconds)
    TIMEOUT = 30.0

    def __init__(
        self,
        profile: ConnectionProfile,
        *,
        timeout: float | None = None,
        starttls_mode: str = STARTTLS_IMPLICIT,
    ) -> None:
        super().__init__(profile)
        self.timeout = timeout or self.TIMEOUT
        self.starttls_mode = starttls_mode

    async def fetch(self, options: FetchOptions) -> FetchResult:
        """
        Fetch one newest-first page of messages.

        Args:
            options: Page window. The mailbox and since_uid are ignored.

        Returns:
            Normalized records, newest first, with the server's message count.
        """
        if options.since_uid:
            logger.debug(
                f"since_uid={options.since_uid} ignored for POP3 account "
                f"{self.profile.account_code} (no incremental sync)"
            )
        return await asyncio.to_thread(self._fetch_blocking, options)

    # =========================================================================
    # Blocking Session (runs in a worker thread)
    # =========================================================================

    def _fetch_blocking(self, options: FetchOptions) -> FetchResult:
        conn = self.connect()
        try:
            entries = self.list_identifiers(conn)
            total = len(entries)
            logger.info(f"POP3 server has {total} messages")

            if total == 0:
                return FetchResult(mails=[], total_on_server=0)

            window = page_slice(entries, options.page, options.limit)
            if window:
                logger.info(
                    f"Fetching POP3 messages {window[-1].message_number}-"
                    f"{window[0].message_number} ({len(window)} mails)"
                )

            fetched_at = datetime.now(timezone.utc)
            mails: list[MailRecord] = []
            skipped = 0
            for entry in window:
                record = self._retrieve(conn, entry, fetched_at)
                if record is None:
                    skipped += 1
                else:
                    mails.append(record)

            logger.info(f"Fetched {len(mails)} POP3 mails")
            return FetchResult(
                mails=sort_newest_first(mails),
                total_on_server=total,
                skipped=skipped,
            )
        except (OSError, EOFError) as e:
            raise POP3ConnectionError(f"POP3 session to {self.profile.host} failed: {e}") from e
        except poplib.error_proto as e:
            raise ServiceError(f"POP3 server error from {self.profile.host}: {e}") from e
        finally:
            self._quit(conn)

    def connect(self) -> poplib.POP3:
        """
        Open and authenticate a POP3 connection.

        Raises:
            POP3ConnectionError: If the server can't be reached or TLS fails.
            POP3AuthenticationError: If USER/PASS is rejected.
        """
        profile = self.profile
        logger.info(f"Connecting to {profile.host}:{profile.port} ({profile.security.value})")

        try:
            conn = self._open_connection()
        except (OSError, EOFError, poplib.error_proto) as e:
            raise POP3ConnectionError(
                f"Failed to connect to {profile.host}:{profile.port}: {e}"
            ) from e

        try:
            conn.user(profile.username)
            conn.pass_(profile.password)
        except poplib.error_proto as e:
            self._quit(conn)
            raise POP3AuthenticationError(
                f"Authentication failed for {profile.username}: {e}"
            ) from e
        except (OSError, EOFError) as e:
            self._quit(conn)
            raise POP3ConnectionError(f"Connection lost during login: {e}") from e

        logger.info(f"Connected to {profile.host} as {profile.username}")
        return conn

    def _open_connection(self) -> poplib.POP3:
        profile = self.profile

        if profile.security == Security.SSL:
            return poplib.POP3_SSL(
                profile.host, profile.port,
                timeout=self.timeout, context=ssl.create_default_context(),
            )

        if profile.security == Security.STARTTLS:
            if self.starttls_mode == STARTTLS_UPGRADE:
                conn = poplib.POP3(profile.host, profile.port, timeout=self.timeout)
                try:
                    conn.stls(context=ssl.create_default_context())
                except poplib.error_proto:
                    self._quit(conn)
                    raise
                return conn

            logger.warning(
                f"STARTTLS requested for POP3 account {profile.account_code}, "
                f"using implicit TLS instead"
            )
            return poplib.POP3_SSL(
                profile.host, profile.port,
                timeout=self.timeout, context=ssl.create_default_context(),
            )

        logger.warning(f"POP3 session to {profile.host} is not encrypted")
        return poplib.POP3(profile.host, profile.port, timeout=self.timeout)

    def list_identifiers(self, conn: poplib.POP3) -> list[UidlEntry]:
        """UIDL, normalized into entries ordered by message number."""
        _, listing, _ = conn.uidl()
        try:
            return parse_uidl(listing).entries()
        except ValueError as e:
            raise ServiceError(f"Unreadable UIDL response from {self.profile.host}: {e}") from e

    def _retrieve(
        self,
        conn: poplib.POP3,
        entry: UidlEntry,
        fetched_at: datetime,
    ) -> MailRecord | None:
        """RETR and normalize one message. Returns None if it was skipped."""
        try:
            _, lines, _ = conn.retr(entry.message_number)
        except poplib.error_proto as e:
            logger.warning(f"RETR {entry.message_number} failed, skipping: {e}")
            return None

        if not lines:
            logger.warning(f"Message {entry.message_number} has no content, skipping")
            return None

        raw = b"\r\n".join(lines) + b"\r\n"
        try:
            record = normalize(
                raw,
                uid=entry.uid,
                account_code=self.profile.account_code,
                mailbox=POP3_MAILBOX,
                source=Protocol.POP3,
                fetched_at=fetched_at,
            )
        except MessageParseError as e:
            logger.error(f"Skipping POP3 message {entry.message_number}: {e}", exc_info=True)
            return None

        if record.message_id is None:
            record.message_id = f"pop3:{entry.identifier}"
        return record

    def _quit(self, conn: poplib.POP3) -> None:
        """Send QUIT; errors are logged, never raised."""
        try:
            conn.quit()
        except Exception as e:
            logger.warning(f"Error during POP3 QUIT: {e}")


# =============================================================================
# Exceptions
# =============================================================================

class POP3ConnectionError(TransientNetworkError):
    """Raised when unable to connect to the POP3 server."""
    pass


class POP3AuthenticationError(TransientNetworkError):
    """Raised when POP3 authentication fails."""
    user_message = "The mail server rejected the account credentials"
