# =============================================================================
# Repository Tests
# =============================================================================

import aiosqlite
import pytest

from inbox_sync.core import AttachmentMeta, Protocol, Security
from inbox_sync.errors import PersistenceError


class TestAccounts:
    """Tests for account lookups."""

    async def test_get_account(self, repo, add_account):
        await add_account(1, "main", protocol="POP3", port=995, username="login-name")

        account = await repo.get_account(1, "main")

        assert account.protocol == Protocol.POP3
        assert account.security == Security.SSL
        assert account.port == 995
        assert account.login == "login-name"
        assert account.is_active

    async def test_get_account_of_other_user(self, repo, add_account):
        await add_account(1, "main")
        assert await repo.get_account(2, "main") is None

    async def test_login_falls_back_to_email(self, repo, add_account):
        await add_account(1, "main", email="me@example.com")
        account = await repo.get_account(1, "main")
        assert account.login == "me@example.com"

    async def test_list_accounts_primary_first(self, repo, add_account):
        await add_account(1, "first")
        await add_account(1, "second", is_primary=True)
        await add_account(1, "disabled", is_active=False)
        await add_account(2, "other")

        accounts = await repo.list_accounts(1)

        assert [a.account_code for a in accounts] == ["second", "first"]


class TestUserSettings:
    """Tests for per-user settings."""

    async def test_missing_setting_uses_default(self, repo):
        assert await repo.get_user_setting(1, "inbox_cache_limit") is None
        assert await repo.get_user_setting(1, "inbox_cache_limit", "15") == "15"

    async def test_set_and_replace(self, repo):
        await repo.set_user_setting(1, "inbox_cache_limit", 30)
        await repo.set_user_setting(1, "inbox_cache_limit", "40")
        await repo.set_user_setting(2, "inbox_cache_limit", "5")

        assert await repo.get_user_setting(1, "inbox_cache_limit") == "40"
        assert await repo.get_all_user_settings(1) == {"inbox_cache_limit": "40"}


class TestCacheStore:
    """Tests for upsert, flag merging and retention."""

    async def test_upsert_and_read_back(self, repo, make_mail):
        mail = make_mail(3, labels=["$Work"])
        mail.attachments = [AttachmentMeta("a.txt", "text/plain", 12)]
        mail.cc_addresses = ["carol@example.com"]

        stored = await repo.upsert_mails(1, "main", [mail, make_mail(1), make_mail(2)], cache_limit=15)

        assert len(stored) == 3
        assert all(m.id is not None for m in stored)

        cached = await repo.get_cached_mails(1, "main")
        assert [m.uid for m in cached] == [3, 2, 1]

        first = cached[0]
        assert first.labels == ["$Work"]
        assert first.cc_addresses == ["carol@example.com"]
        assert first.attachments == [AttachmentMeta("a.txt", "text/plain", 12)]
        assert first.has_attachments
        assert first.date == mail.date
        assert first.updated_at is not None

    async def test_empty_upsert_is_a_no_op(self, repo):
        assert await repo.upsert_mails(1, "main", [], cache_limit=15) == []

    async def test_invalid_cache_limit(self, repo, make_mail):
        with pytest.raises(ValueError):
            await repo.upsert_mails(1, "main", [make_mail(1)], cache_limit=0)

    async def test_imap_flags_are_overwritten(self, repo, make_mail):
        await repo.upsert_mails(1, "main", [make_mail(1, is_read=True, is_starred=True)], 15)

        stored = await repo.upsert_mails(
            1, "main", [make_mail(1, subject="Edited", labels=["new"])], 15
        )

        assert not stored[0].is_read
        assert not stored[0].is_starred

        cached = await repo.get_cached_mails(1, "main")
        assert len(cached) == 1
        assert cached[0].subject == "Edited"
        assert cached[0].labels == ["new"]
        assert not cached[0].is_read

    async def test_pop3_flags_are_preserved(self, repo, make_mail):
        await repo.upsert_mails(
            1, "pop", [make_mail(7, account_code="pop", source=Protocol.POP3)], 15
        )
        # The user reads and stars the mail in the web UI
        async with repo.db.transaction() as conn:
            await conn.execute("UPDATE inbox_cache SET is_read = 1, is_starred = 1")

        stored = await repo.upsert_mails(
            1, "pop", [make_mail(7, account_code="pop", source=Protocol.POP3)], 15
        )

        assert stored[0].is_read
        assert stored[0].is_starred
        cached = await repo.get_cached_mails(1, "pop")
        assert cached[0].is_read
        assert cached[0].is_starred

    async def test_cache_is_trimmed_to_newest(self, repo, make_mail):
        await repo.upsert_mails(1, "main", [make_mail(uid) for uid in range(1, 21)], cache_limit=15)

        cached = await repo.get_cached_mails(1, "main")

        assert len(cached) == 15
        assert [m.uid for m in cached] == list(range(20, 5, -1))

    async def test_trimmed_mail_is_not_returned(self, repo, make_mail):
        stored = await repo.upsert_mails(1, "main", [make_mail(uid) for uid in range(1, 21)], cache_limit=15)

        cached_ids = {m.id for m in await repo.get_cached_mails(1, "main")}
        assert sorted(m.uid for m in stored) == list(range(6, 21))
        assert {m.id for m in stored} == cached_ids

    async def test_trim_keeps_other_accounts(self, repo, make_mail):
        await repo.upsert_mails(1, "other", [make_mail(uid, account_code="other") for uid in range(1, 4)], 15)
        await repo.upsert_mails(1, "main", [make_mail(uid) for uid in range(1, 11)], cache_limit=2)

        assert await repo.count_cached(1, "main") == 2
        assert await repo.count_cached(1, "other") == 3

    async def test_failed_upsert_writes_nothing(self, repo, make_mail, monkeypatch):
        async def broken_trim(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(repo, "_trim", broken_trim)

        with pytest.raises(PersistenceError):
            await repo.upsert_mails(1, "main", [make_mail(1), make_mail(2)], 15)

        assert await repo.count_cached(1, "main") == 0

    async def test_all_accounts_are_merged_newest_first(self, repo, make_mail):
        await repo.upsert_mails(1, "a", [make_mail(1, account_code="a"), make_mail(4, account_code="a")], 15)
        await repo.upsert_mails(1, "b", [make_mail(2, account_code="b"), make_mail(3, account_code="b")], 15)
        await repo.upsert_mails(2, "a", [make_mail(9, account_code="a")], 15)

        cached = await repo.get_cached_mails(1)

        assert [(m.account_code, m.uid) for m in cached] == [("a", 4), ("b", 3), ("b", 2), ("a", 1)]

    async def test_other_mailbox_is_separate(self, repo, make_mail):
        await repo.upsert_mails(1, "main", [make_mail(1)], 15)
        assert await repo.get_cached_mails(1, "main", mailbox="Archive") == []


class TestSyncTracker:
    """Tests for watermarks."""

    async def test_never_synced(self, repo):
        assert await repo.get_watermark(1, "main") is None
        assert await repo.get_last_synced_uid(1, "main") == 0

    async def test_advance(self, repo):
        await repo.advance_watermark(1, "main", "INBOX", 120, 50)

        watermark = await repo.get_watermark(1, "main")

        assert watermark.last_uid == 120
        assert watermark.total_on_server == 50
        assert watermark.last_synced_at is not None

    async def test_never_moves_backwards(self, repo):
        await repo.advance_watermark(1, "main", "INBOX", 120, 50)
        await repo.advance_watermark(1, "main", "INBOX", 80, 51)

        watermark = await repo.get_watermark(1, "main")

        assert watermark.last_uid == 120
        assert watermark.total_on_server == 51

    async def test_total_kept_when_not_given(self, repo):
        await repo.advance_watermark(1, "main", "INBOX", 10, 50)
        await repo.advance_watermark(1, "main", "INBOX", 12)

        watermark = await repo.get_watermark(1, "main")

        assert watermark.last_uid == 12
        assert watermark.total_on_server == 50

    async def test_mailboxes_are_tracked_separately(self, repo):
        await repo.advance_watermark(1, "main", "INBOX", 10)
        await repo.advance_watermark(1, "main", "Archive", 99)

        assert await repo.get_last_synced_uid(1, "main") == 10
        assert await repo.get_last_synced_uid(1, "main", "Archive") == 99
