# =============================================================================
# Command-Line Tests
# =============================================================================
# main() runs its own event loop, so these tests are synchronous and prepare
# the database through asyncio.run().
# =============================================================================

import asyncio
import json

import pytest

from inbox_sync.app import main, parse_args
from inbox_sync.core import MailRecord
from inbox_sync.storage import Database, Repository


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Config file pointing the database into tmp_path."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    path = tmp_path / "config.toml"
    path.write_text(f'[database]\npath = "{tmp_path / "cli.db"}"\n')
    return path


def _seed(db_path, statements):
    async def run():
        async with Database(db_path) as db:
            async with db.transaction() as conn:
                for sql, params in statements:
                    await conn.execute(sql, params)

    asyncio.run(run())


def _seed_mails(db_path, user_id, account_code, mails):
    async def run():
        async with Database(db_path) as db:
            await Repository(db).upsert_mails(user_id, account_code, mails, 15)

    asyncio.run(run())


ACCOUNT_SQL = """INSERT INTO email_accounts
    (user_id, account_code, email, incoming_type, incoming_host, incoming_port,
     password, incoming_security, is_primary)
    VALUES (?, ?, ?, 'IMAP', 'mail.example.com', 993, 'token', 'SSL', ?)"""


class TestParseArgs:
    """Tests for argument parsing."""

    def test_sync_options(self):
        args = parse_args(["--user", "3", "--account", "work", "sync", "--since-uid", "40", "--cache-limit", "20"])

        assert args.user == 3
        assert args.account == "work"
        assert args.command == "sync"
        assert args.since_uid == 40
        assert args.cache_limit == 20
        assert args.page == 1

    def test_search(self):
        args = parse_args(["--user", "1", "search", "quarterly report", "--since-months", "0"])

        assert args.query == "quarterly report"
        assert args.since_months == 0

    def test_no_command(self):
        args = parse_args([])
        assert args.command is None
        assert args.user is None


class TestMain:
    """Tests for the entry point."""

    def test_paths(self, config_file, capsys):
        assert main(["--config", str(config_file), "--paths"]) == 0

        out = capsys.readouterr().out
        assert "cli.db" in out

    def test_missing_user(self, config_file, capsys):
        assert main(["--config", str(config_file), "accounts"]) == 2

    def test_bad_config(self, tmp_path, capsys):
        path = tmp_path / "broken.toml"
        path.write_text("[sync")

        assert main(["--config", str(path), "--user", "1", "accounts"]) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_accounts(self, config_file, tmp_path, capsys):
        _seed(tmp_path / "cli.db", [
            (ACCOUNT_SQL, (1, "home", "me@home.example", 0)),
            (ACCOUNT_SQL, (1, "work", "me@work.example", 1)),
        ])

        assert main(["--config", str(config_file), "--user", "1", "accounts"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output == [
            {"accountCode": "work", "email": "me@work.example", "isPrimary": True},
            {"accountCode": "home", "email": "me@home.example", "isPrimary": False},
        ]

    def test_cached(self, config_file, tmp_path, capsys):
        _seed_mails(tmp_path / "cli.db", 1, "home", [
            MailRecord(uid=1, account_code="home", subject="Hello", from_addresses=["a@example.com"]),
        ])

        assert main(["--config", str(config_file), "--user", "1", "cached"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert len(output) == 1
        assert output[0]["subject"] == "Hello"
        assert output[0]["accountCode"] == "home"
        assert output[0]["fromAddress"] == "a@example.com"

    def test_no_account_to_sync(self, config_file, capsys):
        assert main(["--config", str(config_file), "--user", "1", "sync"]) == 2
        assert "no active account" in capsys.readouterr().err

    def test_engine_error_is_reported_as_json(self, config_file, capsys):
        assert main(["--config", str(config_file), "--user", "1", "--account", "ghost", "sync"]) == 1

        error = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert error == {
            "error": "AccountNotFoundError",
            "message": "Email account not found or inactive",
            "retryable": False,
        }
