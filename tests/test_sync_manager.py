# =============================================================================
# Sync Manager Tests
# =============================================================================
# The manager runs against a real repository; network adapters are replaced
# through the source_factory hook.
# =============================================================================

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from types import SimpleNamespace

import pytest

from inbox_sync.config import Config
from inbox_sync.core import FetchResult, MailSource, Protocol
from inbox_sync.credentials import CredentialResolver
from inbox_sync.errors import (
    AccountNotFoundError,
    PersistenceError,
    ServiceError,
    TransientNetworkError,
)
from inbox_sync.imap import IMAPAdapter
from inbox_sync.pop3 import POP3Adapter
from inbox_sync.sync import SearchOptions, SyncManager, SyncOptions, months_ago


class FakeSource(MailSource):
    """
    Stand-in adapter: replays a canned FetchResult for fetch(), and offers
    the session/search slice of IMAPAdapter for server search.
    """

    protocol = Protocol.IMAP

    def __init__(self, profile, state):
        super().__init__(profile)
        self.state = state

    async def fetch(self, options):
        self.state.calls.append(options)
        if self.state.gate is not None:
            await self.state.gate.wait()
        if isinstance(self.state.result, Exception):
            raise self.state.result
        return self.state.result

    @asynccontextmanager
    async def session(self):
        self.state.events.append("connect")
        try:
            yield self
        finally:
            self.state.events.append("disconnect")

    @asynccontextmanager
    async def open_mailbox(self, mailbox):
        self.state.events.append(f"select {mailbox}")
        yield 0

    async def search(self, query, since):
        self.state.search_args = (query, since)
        if isinstance(self.state.uids, Exception):
            raise self.state.uids
        return self.state.uids

    async def fetch_uids(self, uids, mailbox):
        self.state.fetched_uids = list(uids)
        return [self.state.make_mail(uid) for uid in uids], 0


@pytest.fixture
def state(make_mail):
    return SimpleNamespace(
        result=FetchResult(),
        calls=[],
        gate=None,
        events=[],
        uids=[],
        search_args=None,
        fetched_uids=None,
        make_mail=make_mail,
    )


@pytest.fixture
def manager(repo, cipher, state):
    return SyncManager(
        repo,
        CredentialResolver(repo, cipher),
        Config(),
        source_factory=lambda profile: FakeSource(profile, state),
    )


@pytest.fixture
async def account(add_account):
    await add_account(1, "main")
    return "main"


class TestFetch:
    """Tests for fetch_mails_from_server."""

    async def test_defaults(self, manager, state, account, make_mail):
        state.result = FetchResult(mails=[make_mail(2), make_mail(1)], total_on_server=2)

        result = await manager.fetch_mails_from_server(1, account)

        assert result.fetched == 2
        assert state.calls[0].mailbox == "INBOX"
        assert state.calls[0].limit == 15
        assert state.calls[0].since_uid is None

    async def test_nothing_is_cached(self, manager, state, account, make_mail, repo):
        state.result = FetchResult(mails=[make_mail(1)], total_on_server=1)

        await manager.fetch_mails_from_server(1, account)

        assert await repo.count_cached(1, account) == 0
        assert await repo.get_watermark(1, account) is None

    async def test_unknown_account(self, manager, state):
        with pytest.raises(AccountNotFoundError):
            await manager.fetch_mails_from_server(1, "nope")
        assert state.calls == []

    async def test_service_errors_pass_through(self, manager, state, account):
        state.result = TransientNetworkError("connection refused")
        with pytest.raises(TransientNetworkError):
            await manager.fetch_mails_from_server(1, account)

    async def test_unexpected_errors_become_service_errors(self, manager, state, account):
        state.result = RuntimeError("boom")

        with pytest.raises(ServiceError) as exc_info:
            await manager.fetch_mails_from_server(1, account)

        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestSync:
    """Tests for sync_inbox."""

    async def test_first_sync(self, manager, state, account, make_mail, repo):
        state.result = FetchResult(mails=[make_mail(12), make_mail(11)], total_on_server=40)

        result = await manager.sync_inbox(1, account)

        assert state.calls[0].since_uid is None
        assert result.fetched == 2
        assert result.cached == 2
        assert result.total_on_server == 40
        assert all(m.id is not None for m in result.mails)

        watermark = await repo.get_watermark(1, account)
        assert watermark.last_uid == 12
        assert watermark.total_on_server == 40

    async def test_stored_watermark_is_the_cursor(self, manager, state, account, make_mail, repo):
        await repo.advance_watermark(1, account, "INBOX", 120, 50)
        state.result = FetchResult(mails=[make_mail(121)], total_on_server=51)

        await manager.sync_inbox(1, account)

        assert state.calls[0].since_uid == 120
        assert await repo.get_last_synced_uid(1, account) == 121

    async def test_explicit_cursor_wins(self, manager, state, account, repo):
        await repo.advance_watermark(1, account, "INBOX", 120)

        await manager.sync_inbox(1, account, SyncOptions(since_uid=50))

        assert state.calls[0].since_uid == 50

    async def test_explicit_zero_forces_page_fetch(self, manager, state, account, repo):
        await repo.advance_watermark(1, account, "INBOX", 120)

        await manager.sync_inbox(1, account, SyncOptions(since_uid=0, page=2, limit=5))

        assert state.calls[0].since_uid is None
        assert state.calls[0].page == 2
        assert state.calls[0].limit == 5

    async def test_watermark_never_regresses(self, manager, state, account, make_mail, repo):
        await repo.advance_watermark(1, account, "INBOX", 120)
        state.result = FetchResult(mails=[make_mail(11), make_mail(12)], total_on_server=130)

        await manager.sync_inbox(1, account, SyncOptions(since_uid=10))

        assert await repo.get_last_synced_uid(1, account) == 120

    async def test_empty_fetch_keeps_watermark(self, manager, state, account, repo):
        state.result = FetchResult(mails=[], total_on_server=0)

        result = await manager.sync_inbox(1, account)

        assert result.mails == []
        assert result.cached == 0
        assert await repo.get_watermark(1, account) is None

    async def test_failed_store_keeps_watermark(self, manager, state, account, make_mail, repo, monkeypatch):
        state.result = FetchResult(mails=[make_mail(5)], total_on_server=5)

        async def broken_upsert(*args, **kwargs):
            raise PersistenceError("disk full")

        monkeypatch.setattr(repo, "upsert_mails", broken_upsert)

        with pytest.raises(PersistenceError):
            await manager.sync_inbox(1, account)

        assert await repo.get_watermark(1, account) is None

    async def test_other_mailbox(self, manager, state, account, make_mail, repo):
        state.result = FetchResult(mails=[make_mail(3)], total_on_server=1)

        await manager.sync_inbox(1, account, SyncOptions(mailbox="Archive"))

        assert state.calls[0].mailbox == "Archive"
        assert await repo.get_last_synced_uid(1, account, "Archive") == 3
        assert await repo.get_watermark(1, account) is None

    async def test_pop3_always_syncs_inbox(self, manager, state, add_account, make_mail, repo):
        await add_account(1, "pop", protocol="POP3", port=995)
        state.result = FetchResult(
            mails=[make_mail(7, account_code="pop", source=Protocol.POP3)], total_on_server=1
        )

        await manager.sync_inbox(1, "pop", SyncOptions(mailbox="Archive"))

        assert state.calls[0].mailbox == "INBOX"
        assert await repo.get_last_synced_uid(1, "pop") == 7
        assert await repo.get_watermark(1, "pop", "Archive") is None


class TestCacheLimit:
    """Tests for cache limit resolution."""

    @pytest.fixture
    def five_mails(self, state, make_mail):
        state.result = FetchResult(mails=[make_mail(uid) for uid in range(5, 0, -1)], total_on_server=5)

    async def test_default_limit(self, manager, account, five_mails, repo):
        manager.config.sync.cache_limit = 4

        await manager.sync_inbox(1, account)

        assert await repo.count_cached(1, account) == 4

    async def test_user_setting(self, manager, account, five_mails, repo):
        await repo.set_user_setting(1, "inbox_cache_limit", "3")

        await manager.sync_inbox(1, account)

        assert await repo.count_cached(1, account) == 3
        assert [m.uid for m in await repo.get_cached_mails(1, account)] == [5, 4, 3]

    async def test_result_leaves_out_trimmed_mail(self, manager, account, five_mails, repo):
        await repo.set_user_setting(1, "inbox_cache_limit", "3")

        result = await manager.sync_inbox(1, account)

        assert result.fetched == 5
        assert result.cached == 3
        assert [m.uid for m in result.mails] == [5, 4, 3]

    async def test_caller_overrides_setting(self, manager, account, five_mails, repo):
        await repo.set_user_setting(1, "inbox_cache_limit", "3")

        await manager.sync_inbox(1, account, SyncOptions(cache_limit=2))

        assert await repo.count_cached(1, account) == 2

    @pytest.mark.parametrize("value", ["abc", "0", "-4"])
    async def test_invalid_setting_is_ignored(self, manager, account, five_mails, repo, caplog, value):
        await repo.set_user_setting(1, "inbox_cache_limit", value)

        with caplog.at_level(logging.WARNING, logger="inbox_sync.sync.manager"):
            await manager.sync_inbox(1, account)

        assert await repo.count_cached(1, account) == 5
        assert any("inbox_cache_limit" in r.getMessage() for r in caplog.records)

    async def test_invalid_caller_limit(self, manager, account, five_mails):
        with pytest.raises(ValueError):
            await manager.sync_inbox(1, account, SyncOptions(cache_limit=0))


class TestConcurrentSync:
    """Tests for sharing identical in-flight syncs."""

    async def test_identical_calls_share_one_run(self, manager, state, account, make_mail):
        state.gate = asyncio.Event()
        state.result = FetchResult(mails=[make_mail(1)], total_on_server=1)

        first = asyncio.create_task(manager.sync_inbox(1, account))
        second = asyncio.create_task(manager.sync_inbox(1, account))
        await asyncio.sleep(0.05)
        state.gate.set()

        results = await asyncio.gather(first, second)

        assert len(state.calls) == 1
        assert results[0] is results[1]

    async def test_different_calls_run_separately(self, manager, state, account, make_mail):
        state.result = FetchResult(mails=[make_mail(1)], total_on_server=1)

        await asyncio.gather(
            manager.sync_inbox(1, account, SyncOptions(page=1)),
            manager.sync_inbox(1, account, SyncOptions(page=2)),
        )

        assert sorted(call.page for call in state.calls) == [1, 2]

    async def test_sequential_calls_run_again(self, manager, state, account):
        await manager.sync_inbox(1, account)
        await manager.sync_inbox(1, account)

        assert len(state.calls) == 2


class TestSearch:
    """Tests for search_mails_on_server."""

    async def test_pop3_account(self, manager, state, add_account):
        await add_account(1, "pop", protocol="POP3", port=995)

        result = await manager.search_mails_on_server(1, "pop", "invoice")

        assert result.to_dict() == {
            "mails": [],
            "searched": 0,
            "dateRange": {"since": None, "before": None},
            "protocol": "POP3",
        }
        assert state.events == []

    async def test_newest_matches_are_kept(self, manager, state, account):
        state.uids = list(range(1, 151))

        result = await manager.search_mails_on_server(1, account, "invoice")

        assert state.fetched_uids == list(range(51, 151))
        assert result.searched == 100
        assert result.protocol == "IMAP"
        assert [m.uid for m in result.mails][:2] == [150, 149]
        assert state.events == ["connect", "select INBOX", "disconnect"]

    async def test_date_bound_is_midnight_utc(self, manager, state, account):
        state.uids = [7]

        result = await manager.search_mails_on_server(
            1, account, "invoice", SearchOptions(since_months=3)
        )

        since = result.date_range.since
        assert since.time() == time.min
        assert since.tzinfo == timezone.utc
        assert since.date() == months_ago(datetime.now(timezone.utc).date(), 3)
        assert state.search_args == ("invoice", since.date())
        assert result.date_range.before is None

    async def test_all_time(self, manager, state, account):
        state.uids = [7]

        result = await manager.search_mails_on_server(
            1, account, "invoice", SearchOptions(since_months=0, mailbox="Archive")
        )

        assert result.date_range.since is None
        assert state.search_args == ("invoice", None)
        assert "select Archive" in state.events

    async def test_search_failure(self, manager, state, account):
        state.uids = ServiceError("SEARCH failed")

        with pytest.raises(ServiceError):
            await manager.search_mails_on_server(1, account, "invoice")

        assert state.events[-1] == "disconnect"

    async def test_unexpected_failure(self, manager, state, account):
        state.uids = KeyError("odd")

        with pytest.raises(ServiceError) as exc_info:
            await manager.search_mails_on_server(1, account, "invoice")

        assert isinstance(exc_info.value.__cause__, KeyError)


class TestAccounts:
    """Tests for account helpers."""

    async def test_no_accounts(self, manager):
        assert await manager.primary_account_code(1) is None

    async def test_primary_account(self, manager, add_account):
        await add_account(1, "first")
        await add_account(1, "second", is_primary=True)

        assert await manager.primary_account_code(1) == "second"

    async def test_first_active_account(self, manager, add_account):
        await add_account(1, "inactive", is_active=False, is_primary=True)
        await add_account(1, "first")
        await add_account(1, "second")

        assert await manager.primary_account_code(1) == "first"

    async def test_cached_mails_of_all_accounts(self, manager, repo, make_mail):
        await repo.upsert_mails(1, "a", [make_mail(1, account_code="a")], 15)
        await repo.upsert_mails(1, "b", [make_mail(2, account_code="b")], 15)

        mails = await manager.get_cached_mails(1)

        assert [m.account_code for m in mails] == ["b", "a"]


class TestAdapterSelection:
    """Tests for the default adapter factory."""

    async def test_protocols(self, repo, cipher, add_account):
        await add_account(1, "imap")
        await add_account(1, "pop", protocol="POP3", port=995)
        config = Config()
        config.network.timeout = 5.0
        config.pop3.starttls = "upgrade"
        resolver = CredentialResolver(repo, cipher)
        manager = SyncManager(repo, resolver, config)

        imap = manager._make_source(await resolver.resolve(1, "imap"))
        pop = manager._make_source(await resolver.resolve(1, "pop"))

        assert isinstance(imap, IMAPAdapter)
        assert imap.timeout == 5.0
        assert isinstance(pop, POP3Adapter)
        assert pop.starttls_mode == "upgrade"


class TestMonthsAgo:
    """Tests for calendar month arithmetic."""

    @pytest.mark.parametrize(
        "today, months, expected",
        [
            (date(2024, 8, 31), 6, date(2024, 2, 29)),
            (date(2024, 3, 15), 3, date(2023, 12, 15)),
            (date(2023, 1, 31), 1, date(2022, 12, 31)),
            (date(2024, 5, 10), 0, date(2024, 5, 10)),
            (date(2024, 5, 10), 24, date(2022, 5, 10)),
        ],
    )
    def test_months_ago(self, today, months, expected):
        assert months_ago(today, months) == expected
