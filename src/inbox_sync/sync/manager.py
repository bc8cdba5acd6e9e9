# =============================================================================
# Sync Manager
# =============================================================================
# Orchestrates the engine's external operations:
#
#   fetch_mails_from_server  one page (or everything after a cursor), no cache
#   sync_inbox               fetch + cache + watermark
#   search_mails_on_server   live server-side search, never cached
#   get_cached_mails         read back the cache
#
# sync_inbox strategy:
#   1. Cursor: the caller's since_uid (an explicit 0 included) wins,
#      otherwise the stored watermark (0 when the mailbox was never synced)
#   2. Cache limit: the caller's value, else the user's inbox_cache_limit
#      setting, else the configured default
#   3. Fetch through the adapter matching the account's protocol
#   4. Store everything fetched and trim the cache, in one transaction
#   5. If anything was fetched, advance the watermark to the highest UID
#      (the watermark never moves backwards)
#
# A failed store aborts the sync before the watermark moves, so the next
# run fetches the same messages again. Re-running a sync is always safe.
#
# Concurrent sync_inbox calls with identical arguments share one run (see
# SingleFlight). Calls with different arguments are not coordinated.
# =============================================================================

import calendar
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any

from inbox_sync.config import Config
from inbox_sync.core import (
    ConnectionProfile,
    FetchOptions,
    FetchResult,
    MailAccount,
    MailRecord,
    MailSource,
    Protocol,
    sort_newest_first,
)
from inbox_sync.credentials import CredentialResolver
from inbox_sync.errors import InboxSyncError, ServiceError
from inbox_sync.imap import IMAPAdapter
from inbox_sync.pop3 import POP3_MAILBOX, POP3Adapter
from inbox_sync.storage import Repository
from inbox_sync.sync.single_flight import SingleFlight

logger = logging.getLogger(__name__)

# Builds the adapter for a profile
SourceFactory = Callable[[ConnectionProfile], MailSource]


# =============================================================================
# Options and Results
# =============================================================================

@dataclass
class SyncOptions:
    """
    Arguments of sync_inbox. None means "use the default".

    Attributes:
        mailbox: Mailbox to sync.
        limit: Page size.
        page: 1-based page (1 = newest).
        since_uid: Explicit cursor; overrides the stored watermark.
        cache_limit: Cached messages to keep for the account.
    """
    mailbox: str | None = None
    limit: int | None = None
    page: int = 1
    since_uid: int | None = None
    cache_limit: int | None = None


@dataclass
class SyncResult:
    """
    Result of sync_inbox.

    Attributes:
        mails: Records as stored, or the fetched records if none were stored.
        total_on_server: Message count reported by the server.
        fetched: Number of messages fetched and normalized.
        cached: Number of records written to the cache.
    """
    mails: list[MailRecord] = field(default_factory=list)
    total_on_server: int = 0
    fetched: int = 0
    cached: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mails": [m.to_dict() for m in self.mails],
            "totalOnServer": self.total_on_server,
            "fetched": self.fetched,
            "cached": self.cached,
        }


@dataclass
class SearchOptions:
    """
    Arguments of search_mails_on_server.

    Attributes:
        since_months: Only match mail from the last N months (0 = all time).
        mailbox: Mailbox to search.
    """
    since_months: int | None = None
    mailbox: str | None = None


@dataclass
class DateRange:
    """Date bounds applied to a search."""
    since: datetime | None = None
    before: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "since": self.since.isoformat() if self.since else None,
            "before": self.before.isoformat() if self.before else None,
        }


@dataclass
class SearchResult:
    """
    Result of search_mails_on_server.

    Attributes:
        mails: Matching records, newest first.
        searched: Number of records returned.
        date_range: Bounds the search used.
        protocol: "IMAP" or "POP3".
    """
    mails: list[MailRecord] = field(default_factory=list)
    searched: int = 0
    date_range: DateRange = field(default_factory=DateRange)
    protocol: str = Protocol.IMAP.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "mails": [m.to_dict() for m in self.mails],
            "searched": self.searched,
            "dateRange": self.date_range.to_dict(),
            "protocol": self.protocol,
        }


def months_ago(today: date, months: int) -> date:
    """
    Same day N months earlier, clamped to the end of shorter months.

    Example:
        >>> months_ago(date(2024, 8, 31), 6)
        datetime.date(2024, 2, 29)
    """
    month_index = today.year * 12 + (today.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(today.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


# =============================================================================
# Sync Manager
# =============================================================================

class SyncManager:
    """
    Entry point of the sync engine.

    Usage:
        >>> manager = SyncManager(repository, resolver, config)
        >>> result = await manager.sync_inbox(user_id, "main")
        >>> print(result.fetched, result.cached)

    Attributes:
        repo: Repository for cache, watermarks, settings and accounts.
        resolver: Turns accounts into connection profiles.
        config: Engine configuration.
    """

    def __init__(
        self,
        repository: Repository,
        resolver: CredentialResolver,
        config: Config | None = None,
        *,
        source_factory: SourceFactory | None = None,
    ) -> None:
        """
        Initialize the sync manager.

        Args:
            repository: Data access layer.
            resolver: Credential resolver.
            config: Engine configuration (defaults if omitted).
            source_factory: Builds the adapter for a profile. Defaults to
                            IMAPAdapter/POP3Adapter by protocol.
        """
        self.repo = repository
        self.resolver = resolver
        self.config = config or Config()
        self._source_factory = source_factory or self._make_source
        self._flight: SingleFlight[SyncResult] = SingleFlight()

    def _make_source(self, profile: ConnectionProfile) -> MailSource:
        """Pick the adapter for the account's protocol."""
        if profile.protocol == Protocol.POP3:
            return POP3Adapter(
                profile,
                timeout=self.config.network.timeout,
                starttls_mode=self.config.pop3.starttls,
            )
        return IMAPAdapter(profile, timeout=self.config.network.timeout)

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch_mails_from_server(
        self,
        user_id: int,
        account_code: str,
        options: FetchOptions | None = None,
    ) -> FetchResult:
        """
        Fetch mail from the server without touching the cache.

        Args:
            user_id: Owner of the account.
            account_code: Account to fetch from.
            options: Mailbox, page window and optional cursor.

        Returns:
            Normalized records, newest first.

        Raises:
            ConfigurationError: If the account is missing, inactive or its
                                secret can't be decrypted.
            ServiceError: If the server can't be reached or fails.
        """
        options = options or FetchOptions(
            mailbox=self.config.sync.mailbox,
            limit=self.config.sync.limit,
        )
        profile = await self.resolver.resolve(user_id, account_code)
        source = self._source_factory(profile)

        logger.info(
            f"Fetching {account_code}/{options.mailbox} via {profile.protocol.value} "
            f"(page={options.page}, limit={options.limit}, since_uid={options.since_uid})"
        )
        try:
            result = await source.fetch(options)
        except InboxSyncError as e:
            logger.error(f"Fetch failed for {account_code}: {e.message}", exc_info=True)
            raise
        except Exception as e:
            logger.error(f"Unexpected error fetching {account_code}", exc_info=True)
            raise ServiceError(f"Fetch failed for {account_code}: {e}") from e

        if result.skipped:
            logger.warning(f"Skipped {result.skipped} unparseable messages from {account_code}")
        logger.info(f"Fetched {result.fetched} of {result.total_on_server} messages from {account_code}")
        return result

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync_inbox(
        self,
        user_id: int,
        account_code: str,
        options: SyncOptions | None = None,
    ) -> SyncResult:
        """
        Fetch new mail, store it in the cache and advance the watermark.

        Identical concurrent calls share one run.

        Args:
            user_id: Owner of the account.
            account_code: Account to sync.
            options: Overrides for mailbox, page, cursor and cache limit.

        Returns:
            What was fetched and cached.

        Raises:
            ConfigurationError: Account or secret problems.
            ServiceError: Server problems (retryable).
            PersistenceError: The cache could not be written; the watermark
                              was not advanced.
        """
        options = options or SyncOptions()
        mailbox = options.mailbox or self.config.sync.mailbox
        account = await self.repo.get_account(user_id, account_code)
        if account is not None and account.protocol == Protocol.POP3 and mailbox != POP3_MAILBOX:
            logger.debug(f"POP3 account {account_code} has no mailbox {mailbox!r}, using {POP3_MAILBOX}")
            mailbox = POP3_MAILBOX
        key = (
            user_id, account_code, mailbox, options.since_uid,
            options.page, options.limit, options.cache_limit,
        )
        return await self._flight.run(
            key, lambda: self._sync(user_id, account_code, mailbox, options)
        )

    async def _sync(
        self,
        user_id: int,
        account_code: str,
        mailbox: str,
        options: SyncOptions,
    ) -> SyncResult:
        watermark = await self.repo.get_watermark(user_id, account_code, mailbox)

        if options.since_uid is not None:
            cursor = options.since_uid
        else:
            cursor = watermark.last_uid if watermark else 0
            if cursor > 0:
                logger.info(f"Using stored cursor since_uid={cursor} for {account_code}/{mailbox}")

        cache_limit = await self._resolve_cache_limit(user_id, options.cache_limit)

        fetch_options = FetchOptions(
            mailbox=mailbox,
            limit=options.limit or self.config.sync.limit,
            page=options.page,
            since_uid=cursor if cursor > 0 else None,
        )
        result = await self.fetch_mails_from_server(user_id, account_code, fetch_options)

        stored = await self.repo.upsert_mails(user_id, account_code, result.mails, cache_limit)

        if result.mails:
            highest = result.highest_uid
            await self.repo.advance_watermark(
                user_id, account_code, mailbox, highest, result.total_on_server
            )
            new_last = watermark.advanced_to(highest) if watermark else highest
            logger.info(f"Sync tracking {account_code}/{mailbox}: last_uid={new_last}")

        return SyncResult(
            mails=stored,
            total_on_server=result.total_on_server,
            fetched=result.fetched,
            cached=len(stored),
        )

    async def _resolve_cache_limit(self, user_id: int, requested: int | None) -> int:
        """Caller value, else the user's setting, else the configured default."""
        if requested is not None:
            if requested < 1:
                raise ValueError(f"cache_limit must be >= 1, got {requested}")
            return requested

        default = self.config.sync.cache_limit
        value = await self.repo.get_user_setting(user_id, self.config.sync.cache_limit_setting)
        if value is None:
            return default
        try:
            limit = int(value)
        except ValueError:
            limit = 0
        if limit < 1:
            logger.warning(
                f"Ignoring invalid {self.config.sync.cache_limit_setting}={value!r} "
                f"for user {user_id}, using {default}"
            )
            return default
        return limit

    # =========================================================================
    # Search
    # =========================================================================

    async def search_mails_on_server(
        self,
        user_id: int,
        account_code: str,
        query: str,
        options: SearchOptions | None = None,
    ) -> SearchResult:
        """
        Search the server for mail containing query. Nothing is cached.

        POP3 has no server-side search, so POP3 accounts always get an
        empty result tagged "POP3".

        Args:
            user_id: Owner of the account.
            account_code: Account to search.
            query: Text to look for in headers and body.
            options: Date bound in months and mailbox.

        Returns:
            At most [search] max_results matches (the newest), newest first.
        """
        options = options or SearchOptions()
        mailbox = options.mailbox or self.config.sync.mailbox
        since_months = (
            options.since_months if options.since_months is not None
            else self.config.search.since_months
        )

        profile = await self.resolver.resolve(user_id, account_code)
        if profile.protocol == Protocol.POP3:
            logger.info(f"POP3 account {account_code}: server search not supported")
            return SearchResult(protocol=Protocol.POP3.value)

        since: datetime | None = None
        if since_months > 0:
            since_day = months_ago(datetime.now(timezone.utc).date(), since_months)
            since = datetime.combine(since_day, time.min, tzinfo=timezone.utc)

        logger.info(
            f"Searching {account_code}/{mailbox} for {query!r} since "
            f"{since.date() if since else 'all time'}"
        )

        adapter = self._source_factory(profile)
        try:
            async with adapter.session():
                async with adapter.open_mailbox(mailbox):
                    uids = await adapter.search(query, since.date() if since else None)
                    logger.info(f"Found {len(uids)} matching UIDs")
                    # Newest matches are the highest UIDs
                    wanted = uids[-self.config.search.max_results:]
                    mails, skipped = await adapter.fetch_uids(wanted, mailbox)
        except InboxSyncError as e:
            logger.error(f"Search failed for {account_code}: {e.message}", exc_info=True)
            raise
        except Exception as e:
            logger.error(f"Unexpected error searching {account_code}", exc_info=True)
            raise ServiceError(f"Search failed for {account_code}: {e}") from e

        if skipped:
            logger.warning(f"Skipped {skipped} unparseable search results")

        mails = sort_newest_first(mails)
        return SearchResult(
            mails=mails,
            searched=len(mails),
            date_range=DateRange(since=since),
            protocol=Protocol.IMAP.value,
        )

    # =========================================================================
    # Cache and Accounts
    # =========================================================================

    async def get_cached_mails(
        self,
        user_id: int,
        account_code: str | None = None,
        mailbox: str = "INBOX",
    ) -> list[MailRecord]:
        """Cached mail, newest first; all accounts when account_code is None."""
        return await self.repo.get_cached_mails(user_id, account_code, mailbox)

    async def list_accounts(self, user_id: int) -> list[MailAccount]:
        """The user's active accounts, primary first."""
        return await self.repo.list_accounts(user_id)

    async def primary_account_code(self, user_id: int) -> str | None:
        """The primary account, else the first active one, else None."""
        accounts = await self.repo.list_accounts(user_id)
        if not accounts:
            return None
        primary = next((a for a in accounts if a.is_primary), accounts[0])
        return primary.account_code
