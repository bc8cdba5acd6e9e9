# =============================================================================
# IMAP Adapter
# =============================================================================
# Async IMAP adapter built on aioimaplib.
#
# One IMAPAdapter instance owns exactly one session:
#   connect -> (STARTTLS) -> LOGIN -> SELECT mailbox -> FETCH -> CLOSE -> LOGOUT
#
# Which messages get fetched is decided by compute_fetch_range():
#   - incremental: a positive cursor gives the UID range "cursor+1:*"
#   - page window: otherwise a newest-first sequence window over EXISTS
#
# Every message is fetched with BODY.PEEK[] so fetching never marks mail as
# read on the server. The raw source goes to the normalizer; UID and FLAGS
# come from the FETCH response itself.
#
# Usage:
#   adapter = IMAPAdapter(profile)
#   result = await adapter.fetch(FetchOptions(limit=15))
# =============================================================================

import asyncio
import logging
import re
import ssl
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from aioimaplib import aioimaplib

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
from inbox_sync.errors import MailboxError, MessageParseError, ServiceError, TransientNetworkError
from inbox_sync.parsing import normalize

logger = logging.getLogger(__name__)

# Items requested for every message. PEEK keeps \Seen untouched.
FETCH_ITEMS = "(UID FLAGS BODY.PEEK[])"

# IMAP dates are always English month abbreviations, whatever the locale
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_FETCH_START_RE = re.compile(rb"^\d+\s+FETCH\s*\(", re.IGNORECASE)
_LITERAL_RE = re.compile(rb"\{(\d+)\}\s*$")
_UID_RE = re.compile(r"UID\s+(\d+)", re.IGNORECASE)
_FLAGS_RE = re.compile(r"FLAGS\s*\(([^)]*)\)", re.IGNORECASE)
_EXISTS_RE = re.compile(r"(\d+)\s+EXISTS", re.IGNORECASE)

# What a dead or stalled session raises. aioimaplib enforces command
# timeouts itself (CommandTimeout) and raises Abort once the connection is gone.
_TRANSPORT_ERRORS = (asyncio.TimeoutError, OSError, aioimaplib.CommandTimeout, aioimaplib.Abort)


def _quote_mailbox_name(name: str) -> str:
    """
    Quote a mailbox name for IMAP commands if needed.

    Names containing spaces or special characters must be quoted.
    """
    if " " in name or '"' in name or "\\" in name:
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _quote_search_string(value: str) -> str:
    """Quote a string argument for SEARCH."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def imap_date(day: date) -> str:
    """Format a date the way SEARCH SINCE expects it (e.g. 01-Feb-2024)."""
    return f"{day.day:02d}-{_MONTHS[day.month - 1]}-{day.year:04d}"


# =============================================================================
# Range Computation
# =============================================================================

@dataclass(frozen=True)
class FetchRange:
    """
    A resolved set of messages to fetch.

    Attributes:
        sequence_set: IMAP sequence set, e.g. "36:50" or "41:*".
        by_uid: True for UID FETCH, False for sequence-number FETCH.
        cursor: UIDs at or below this are not part of the range.
    """
    sequence_set: str
    by_uid: bool
    cursor: int = 0


def compute_fetch_range(
    total: int,
    limit: int,
    page: int = 1,
    since_uid: int | None = None,
) -> FetchRange:
    """
    Decide which messages to fetch.

    A positive cursor always wins: page and limit are ignored and every
    message with a UID above the cursor is requested. Otherwise a page
    window is taken from the newest end of the mailbox, using sequence
    numbers (UIDs can be sparse, sequence numbers never are).

    Args:
        total: Message count (EXISTS) of the selected mailbox.
        limit: Page size.
        page: 1-based page number, 1 being the newest messages.
        since_uid: Incremental cursor.

    Returns:
        The range to fetch.

    Example:
        >>> compute_fetch_range(50, 15, 1)
        FetchRange(sequence_set='36:50', by_uid=False, cursor=0)
        >>> compute_fetch_range(50, 15, 3, since_uid=40)
        FetchRange(sequence_set='41:*', by_uid=True, cursor=40)
    """
    if since_uid and since_uid > 0:
        return FetchRange(f"{since_uid + 1}:*", by_uid=True, cursor=since_uid)

    end = max(1, total - (page - 1) * limit)
    start = max(1, end - limit + 1)
    return FetchRange(f"{start}:{end}", by_uid=False)


# =============================================================================
# Fetch Response Parsing
# =============================================================================

@dataclass
class FetchedMessage:
    """One message as returned by FETCH, before normalization."""
    uid: int | None = None
    flags: list[str] = field(default_factory=list)
    raw: bytes = b""


def parse_fetch_response(lines: list) -> list[FetchedMessage]:
    """
    Group a FETCH response into one entry per message.

    aioimaplib returns the response as a flat list mixing text lines and
    raw literals. A message starts with a "N FETCH (" line; a line ending
    in {N} announces that the next item is a literal (the message source).
    Any text after the literal (e.g. a trailing "UID 12)") still belongs to
    the same message.
    """
    messages: list[FetchedMessage] = []
    current: FetchedMessage | None = None
    text = ""
    expect_literal = False

    def finish() -> None:
        if current is None:
            return
        uid_match = _UID_RE.search(text)
        if uid_match:
            current.uid = int(uid_match.group(1))
        flags_match = _FLAGS_RE.search(text)
        if flags_match:
            current.flags = flags_match.group(1).split()
        messages.append(current)

    for item in lines:
        item_bytes = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode("utf-8")

        if expect_literal and current is not None:
            current.raw = item_bytes
            expect_literal = False
            continue

        if _FETCH_START_RE.match(item_bytes):
            finish()
            current = FetchedMessage()
            text = item_bytes.decode("utf-8", errors="replace")
        elif current is not None:
            text += " " + item_bytes.decode("utf-8", errors="replace").strip()
        else:
            continue

        if _LITERAL_RE.search(item_bytes):
            expect_literal = True

    finish()
    return messages


# =============================================================================
# STARTTLS
# =============================================================================

class IMAP4StartTLS(aioimaplib.IMAP4):
    """
    Plaintext aioimaplib client that can upgrade itself to TLS.

    aioimaplib knows the STARTTLS command but has no client method for it,
    so the command goes through the protocol layer and the event loop then
    wraps the existing transport in TLS.
    """

    async def starttls(self, server_hostname: str, ssl_context: ssl.SSLContext | None = None):
        """
        Send STARTTLS and, if the server agrees, upgrade the transport.

        Returns:
            The server's response to STARTTLS.
        """
        protocol = self.protocol
        command = aioimaplib.Command("STARTTLS", protocol.new_tag())
        response = await asyncio.wait_for(protocol.execute(command), self.timeout)
        if response.result != "OK":
            return response

        loop = asyncio.get_running_loop()
        protocol.transport = await loop.start_tls(
            protocol.transport,
            protocol,
            ssl_context or ssl.create_default_context(),
            server_hostname=server_hostname,
        )
        return response


# =============================================================================
# Adapter
# =============================================================================

class IMAPAdapter(MailSource):
    """
    IMAP implementation of MailSource.

    Attributes:
        profile: Decrypted connection settings.
        timeout: Seconds allowed for connect and each command.
    """

    protocol = Protocol.IMAP

    # Default timeout for operations (seconds)
    TIMEOUT = 30.0

    def __init__(self, profile: ConnectionProfile, *, timeout: float | None = None) -> None:
        super().__init__(profile)
        self.timeout = timeout or self.TIMEOUT
        self._client: aioimaplib.IMAP4 | None = None
        self._mailbox_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish and authenticate the session.

        SSL connects with implicit TLS, STARTTLS upgrades a plaintext
        connection (and fails if the server can't), NONE stays plaintext.

        Raises:
            IMAPConnectionError: If unable to connect to server.
            IMAPAuthenticationError: If login fails.
        """
        profile = self.profile
        logger.info(f"Connecting to {profile.host}:{profile.port} ({profile.security.value})")

        try:
            if profile.security == Security.SSL:
                self._client = aioimaplib.IMAP4_SSL(
                    host=profile.host,
                    port=profile.port,
                    timeout=self.timeout,
                )
            elif profile.security == Security.STARTTLS:
                self._client = IMAP4StartTLS(
                    host=profile.host,
                    port=profile.port,
                    timeout=self.timeout,
                )
            else:
                self._client = aioimaplib.IMAP4(
                    host=profile.host,
                    port=profile.port,
                    timeout=self.timeout,
                )

            await self._client.wait_hello_from_server()

            if profile.security == Security.STARTTLS:
                if not self._client.has_capability("STARTTLS"):
                    raise IMAPConnectionError(
                        f"{profile.host} does not support STARTTLS"
                    )
                logger.debug("Upgrading to TLS via STARTTLS")
                response = await self._client.starttls(profile.host)
                if response.result != "OK":
                    raise IMAPConnectionError(f"STARTTLS refused by {profile.host}: {response.lines}")
            elif profile.security == Security.NONE:
                logger.warning(f"IMAP session to {profile.host} is not encrypted")

        except _TRANSPORT_ERRORS as e:
            self._client = None
            raise IMAPConnectionError(
                f"Failed to connect to {profile.host}:{profile.port}: {e}"
            ) from e

        await self._authenticate()
        logger.info(f"Connected to {profile.host} as {profile.username}")

    async def _authenticate(self) -> None:
        """
        Log in with the profile's credentials.

        Raises:
            IMAPAuthenticationError: If the server rejects the login.
        """
        logger.debug(f"Authenticating as {self.profile.username}")

        try:
            response = await self._client.login(self.profile.username, self.profile.password)
        except _TRANSPORT_ERRORS as e:
            raise IMAPConnectionError(f"Connection lost during login: {e}") from e

        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.profile.username}: {response.lines}"
            )

    async def disconnect(self) -> None:
        """
        Send LOGOUT and drop the connection.

        Errors are logged and swallowed so they never mask the error that
        ended the session.
        """
        if self._client is None:
            return
        try:
            logger.debug("Sending LOGOUT")
            await self._client.logout()
        except Exception as e:
            logger.warning(f"Error during logout: {e}")
        finally:
            self._client = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator["IMAPAdapter"]:
        """Connect for the duration of the block; always logs out."""
        try:
            await self.connect()
            yield self
        finally:
            await self.disconnect()

    @asynccontextmanager
    async def open_mailbox(self, mailbox: str) -> AsyncIterator[int]:
        """
        Select a mailbox while holding the adapter's mailbox lock.

        Yields:
            The mailbox's message count (EXISTS).

        Raises:
            MailboxError: If the mailbox can't be selected.
        """
        async with self._mailbox_lock:
            logger.debug(f"Selecting mailbox: {mailbox}")
            try:
                response = await self._client.select(_quote_mailbox_name(mailbox))
            except _TRANSPORT_ERRORS as e:
                raise IMAPConnectionError(f"Connection lost selecting {mailbox}: {e}") from e

            if response.result != "OK":
                raise MailboxError(f"Failed to select mailbox '{mailbox}': {response.lines}")

            total = self._parse_exists(response.lines)
            logger.debug(f"Selected {mailbox}: {total} messages")
            try:
                yield total
            finally:
                try:
                    await self._client.close()
                except Exception as e:
                    logger.warning(f"Error closing mailbox {mailbox}: {e}")

    def _parse_exists(self, lines: list) -> int:
        """Pull the EXISTS count out of a SELECT response."""
        for line in lines:
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("utf-8", errors="replace")
            match = _EXISTS_RE.search(str(line))
            if match:
                return int(match.group(1))
        return 0

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch(self, options: FetchOptions) -> FetchResult:
        """
        Fetch one page (or everything after a cursor) from a mailbox.

        Args:
            options: Mailbox, page window and optional cursor.

        Returns:
            Normalized records, newest first, with the mailbox size.
        """
        async with self.session():
            async with self.open_mailbox(options.mailbox) as total:
                if total == 0:
                    logger.info(f"{options.mailbox} is empty")
                    return FetchResult(mails=[], total_on_server=0)

                fetch_range = compute_fetch_range(
                    total, options.limit, options.page, options.since_uid
                )
                mails, skipped = await self.fetch_range(fetch_range, options.mailbox)

        return FetchResult(
            mails=sort_newest_first(mails),
            total_on_server=total,
            skipped=skipped,
        )

    async def fetch_range(self, fetch_range: FetchRange, mailbox: str) -> tuple[list[MailRecord], int]:
        """
        FETCH a resolved range from the selected mailbox.

        Returns:
            Tuple of (records, number of messages skipped as unparseable).
        """
        logger.info(
            f"Fetching {fetch_range.sequence_set} from {mailbox} "
            f"({'UID' if fetch_range.by_uid else 'sequence'})"
        )

        try:
            if fetch_range.by_uid:
                response = await self._client.uid("fetch", fetch_range.sequence_set, FETCH_ITEMS)
            else:
                response = await self._client.fetch(fetch_range.sequence_set, FETCH_ITEMS)
        except _TRANSPORT_ERRORS as e:
            raise IMAPConnectionError(f"Connection lost during FETCH: {e}") from e
        except Exception as e:
            raise ServiceError(f"FETCH {fetch_range.sequence_set} failed: {e}") from e

        if response.result != "OK":
            raise ServiceError(f"FETCH {fetch_range.sequence_set} failed: {response.lines}")

        fetched = parse_fetch_response(response.lines)

        # "n:*" always matches the highest UID, even when it is below n
        if fetch_range.cursor:
            fetched = [m for m in fetched if m.uid is not None and m.uid > fetch_range.cursor]

        return self._normalize_all(fetched, mailbox)

    async def fetch_uids(self, uids: list[int], mailbox: str) -> tuple[list[MailRecord], int]:
        """FETCH specific UIDs from the selected mailbox."""
        if not uids:
            return [], 0
        uid_set = ",".join(str(u) for u in uids)
        return await self.fetch_range(FetchRange(uid_set, by_uid=True), mailbox)

    def _normalize_all(self, fetched: list[FetchedMessage], mailbox: str) -> tuple[list[MailRecord], int]:
        """Normalize every fetched message, skipping the ones that fail."""
        fetched_at = datetime.now(timezone.utc)
        mails: list[MailRecord] = []
        skipped = 0

        for item in fetched:
            if item.uid is None:
                logger.warning("Skipping FETCH response without a UID")
                skipped += 1
                continue
            try:
                mails.append(
                    normalize(
                        item.raw,
                        uid=item.uid,
                        account_code=self.profile.account_code,
                        mailbox=mailbox,
                        source=Protocol.IMAP,
                        flags=item.flags,
                        fetched_at=fetched_at,
                    )
                )
            except MessageParseError as e:
                logger.error(f"Skipping message uid {item.uid}: {e}", exc_info=True)
                skipped += 1

        logger.debug(f"Normalized {len(mails)} messages, skipped {skipped}")
        return mails, skipped

    # =========================================================================
    # Search
    # =========================================================================

    async def search(self, query: str, since: date | None = None) -> list[int]:
        """
        Full-text search on the server (UID SEARCH TEXT).

        Args:
            query: Text to look for anywhere in the message.
            since: Only match messages on or after this day.

        Returns:
            Matching UIDs, ascending.
        """
        criteria = []
        if since is not None:
            criteria.append(f"SINCE {imap_date(since)}")
        criteria.append(f"TEXT {_quote_search_string(query)}")
        criteria_str = " ".join(criteria)

        logger.debug(f"UID SEARCH {criteria_str}")
        try:
            response = await self._client.uid_search(criteria_str)
        except _TRANSPORT_ERRORS as e:
            raise IMAPConnectionError(f"Connection lost during SEARCH: {e}") from e

        if response.result != "OK":
            raise ServiceError(f"SEARCH failed: {response.lines}")

        # aioimaplib returns the space-separated UIDs in the first line
        uid_data = response.lines[0] if response.lines else b""
        if isinstance(uid_data, (bytes, bytearray)):
            uid_data = bytes(uid_data).decode("ascii", errors="replace")
        return sorted(int(token) for token in uid_data.split() if token.isdigit())


# =============================================================================
# Exceptions
# =============================================================================

class IMAPConnectionError(TransientNetworkError):
    """Raised when unable to connect to the IMAP server."""
    pass


class IMAPAuthenticationError(TransientNetworkError):
    """Raised when IMAP authentication fails."""
    user_message = "The mail server rejected the account credentials"
