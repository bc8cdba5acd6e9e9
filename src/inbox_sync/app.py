# =============================================================================
# Inbox Sync Command-Line Entry Point
# =============================================================================
# A thin command-line front end over SyncManager, mainly for operators and
# for trying the engine against a real account:
#
#   inbox-sync --user 1 sync                  # sync the primary account
#   inbox-sync --user 1 fetch --page 2        # fetch without caching
#   inbox-sync --user 1 search "invoice"      # live server search
#   inbox-sync --user 1 cached                # show the cache
#   inbox-sync --user 1 accounts              # list active accounts
#
# Results are printed as JSON. Failures print the error's safe message and
# exit non-zero.
# =============================================================================

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from inbox_sync import __app_name__, __version__
from inbox_sync.config import Config, ConfigError, print_paths
from inbox_sync.core import FetchOptions
from inbox_sync.credentials import CredentialResolver
from inbox_sync.errors import InboxSyncError
from inbox_sync.storage import Database, Repository
from inbox_sync.sync import SearchOptions, SyncManager, SyncOptions

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Inbox Sync: fetch, cache and search mail over IMAP and POP3",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    parser.add_argument("--user", type=int, help="User id")
    parser.add_argument("--account", help="Account code (default: primary account)")

    commands = parser.add_subparsers(dest="command")

    sync = commands.add_parser("sync", help="Fetch new mail into the cache")
    sync.add_argument("--mailbox")
    sync.add_argument("--limit", type=int)
    sync.add_argument("--page", type=int, default=1)
    sync.add_argument("--since-uid", type=int)
    sync.add_argument("--cache-limit", type=int)

    fetch = commands.add_parser("fetch", help="Fetch mail without caching it")
    fetch.add_argument("--mailbox")
    fetch.add_argument("--limit", type=int)
    fetch.add_argument("--page", type=int, default=1)
    fetch.add_argument("--since-uid", type=int)

    search = commands.add_parser("search", help="Search mail on the server")
    search.add_argument("query")
    search.add_argument("--mailbox")
    search.add_argument("--since-months", type=int)

    cached = commands.add_parser("cached", help="Show cached mail")
    cached.add_argument("--mailbox", default="INBOX")

    commands.add_parser("accounts", help="List active accounts")

    return parser.parse_args(argv)


async def _run(args: argparse.Namespace, config: Config) -> Any:
    """Execute one command and return its JSON-serializable result."""
    async with Database(config.database_path()) as db:
        repo = Repository(db)
        resolver = CredentialResolver(repo, security=config.security)
        manager = SyncManager(repo, resolver, config)

        if args.command == "accounts":
            accounts = await manager.list_accounts(args.user)
            return [
                {"accountCode": a.account_code, "email": a.email, "isPrimary": a.is_primary}
                for a in accounts
            ]

        account_code = args.account
        if account_code is None and args.command != "cached":
            account_code = await manager.primary_account_code(args.user)
            if account_code is None:
                raise ValueError(f"User {args.user} has no active account")

        if args.command == "sync":
            result = await manager.sync_inbox(
                args.user,
                account_code,
                SyncOptions(
                    mailbox=args.mailbox,
                    limit=args.limit,
                    page=args.page,
                    since_uid=args.since_uid,
                    cache_limit=args.cache_limit,
                ),
            )
            return result.to_dict()

        if args.command == "fetch":
            options = FetchOptions(
                mailbox=args.mailbox or config.sync.mailbox,
                limit=args.limit or config.sync.limit,
                page=args.page,
                since_uid=args.since_uid,
            )
            result = await manager.fetch_mails_from_server(args.user, account_code, options)
            return result.to_dict()

        if args.command == "search":
            result = await manager.search_mails_on_server(
                args.user,
                account_code,
                args.query,
                SearchOptions(since_months=args.since_months, mailbox=args.mailbox),
            )
            return result.to_dict()

        mails = await manager.get_cached_mails(args.user, account_code, args.mailbox)
        return [m.to_dict() for m in mails]


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for inbox-sync.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.paths:
        print_paths(config)
        return 0

    if args.command is None or args.user is None:
        print("A command and --user are required (see --help)", file=sys.stderr)
        return 2

    try:
        output = asyncio.run(_run(args, config))
    except InboxSyncError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
