# =============================================================================
# mailmirror Command Line Interface
# =============================================================================
# Entry point for the `mailmirror` console script.
#
# Commands:
#   mailmirror sync [ACCOUNT...]       One full sync of the given accounts
#   mailmirror watch [ACCOUNT...]      Sync, then watch for new mail (Ctrl-C)
#   mailmirror profile ADDRESS         Show the resolved server profile
#   mailmirror status                  Last sync outcome per account
#   mailmirror password ACCOUNT        Store an account password in the keyring
#   mailmirror mark-read ACCOUNT ID    Mark a stored message read (server + local)
#   mailmirror delete ACCOUNT ID       Delete a stored message (server + local)
#
# Without ACCOUNT arguments every enabled account from the config is used.
# =============================================================================

import argparse
import asyncio
import getpass
import logging
import logging.handlers
import sys
from pathlib import Path

from mailmirror import __app_name__, __version__
from mailmirror.config import Config, ConfigError, print_paths
from mailmirror.core import Account
from mailmirror.imap import IdleWatcher, IMAPError, StatusBoard, SyncEngine, SyncError, resolve
from mailmirror.notify import LogNotificationSink
from mailmirror.storage import Database, KeyringSecretStore, Repository, SecretStoreError

logger = logging.getLogger(__name__)

# Rotating log file in the XDG state directory
MAX_LOG_SIZE = 5 * 1024 * 1024
BACKUP_COUNT = 3


def setup_logging(level: str, debug: bool = False) -> None:
    """
    Configure root logging: stderr plus a rotating file.

    Args:
        level: Level name from the config file.
        debug: Force DEBUG and show third-party protocol chatter.
    """
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root.addHandler(console)

    log_file = Config.log_file_path()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT, encoding="utf-8"
        )
    except OSError as e:
        logger.warning(f"Cannot write log file {log_file}: {e}")
    else:
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(file_handler)

    # aioimaplib logs every protocol line at DEBUG
    if not debug:
        logging.getLogger("aioimaplib").setLevel(logging.WARNING)


def select_accounts(config: Config, names: list[str]) -> list[Account]:
    """
    Pick the accounts a command works on.

    Raises:
        ConfigError: If a named account is not configured.
    """
    if not names:
        return [account for account in config.accounts.values() if account.can_sync]
    missing = [name for name in names if name not in config.accounts]
    if missing:
        raise ConfigError(f"Unknown account(s): {', '.join(missing)}")
    return [config.accounts[name] for name in names]


async def open_repository(config: Config) -> tuple[Database, Repository]:
    """Open the database and mirror the configured accounts into it."""
    db = Database()
    await db.connect()
    repo = Repository(db, secrets=KeyringSecretStore())
    for account in config.accounts.values():
        await repo.save_account(account)
    return db, repo


def build_engine(config: Config, repo: Repository, status: StatusBoard) -> SyncEngine:
    return SyncEngine(
        repo, repo, repo,
        notifier=LogNotificationSink(),
        status=status,
        settings=config.sync,
        identity=config.client,
    )


async def run_sync(config: Config, accounts: list[Account]) -> int:
    """Sync the accounts concurrently. Returns the exit code."""
    db, repo = await open_repository(config)
    try:
        engine = build_engine(config, repo, StatusBoard())
        reports = await asyncio.gather(
            *(engine.sync_account(account.id) for account in accounts),
            return_exceptions=True,
        )
    finally:
        await db.close()

    exit_code = 0
    for account, report in zip(accounts, reports):
        if isinstance(report, Exception):
            print(f"{account.name}: FAILED - {report}")
            exit_code = 1
        elif report.success:
            restricted = report.restricted_folders
            line = f"{account.name}: {report.new_messages} new message(s) in {report.duration_seconds:.1f}s"
            if restricted:
                line += f" (skipped restricted: {', '.join(restricted)})"
            print(line)
        else:
            print(f"{account.name}: FAILED - {report.error}")
            exit_code = 1
    return exit_code


async def run_watch(config: Config, accounts: list[Account], initial_sync: bool) -> int:
    """Optionally sync, then watch until interrupted."""
    db, repo = await open_repository(config)
    status = StatusBoard()
    watcher = IdleWatcher(
        repo, repo, repo,
        notifier=LogNotificationSink(),
        status=status,
        settings=config.watch,
        sync_settings=config.sync,
        identity=config.client,
    )
    try:
        if initial_sync:
            engine = build_engine(config, repo, status)
            await asyncio.gather(
                *(engine.sync_account(account.id) for account in accounts),
                return_exceptions=True,
            )

        await watcher.start([account.id for account in accounts])
        print(f"Watching {len(accounts)} account(s), press Ctrl-C to stop")
        await watcher.wait()
    finally:
        await watcher.stop()
        await db.close()

    failed = [account_id for account_id, s in status.snapshot().items() if s.error]
    return 1 if failed else 0


async def run_message_action(config: Config, account: Account, message_id: str, delete: bool) -> int:
    """Mark a stored message read, or delete it, on the server and locally."""
    db, repo = await open_repository(config)
    try:
        engine = build_engine(config, repo, StatusBoard())
        if delete:
            await engine.delete_message(account.id, message_id)
        else:
            await engine.mark_read(account.id, message_id)
    except (IMAPError, SyncError) as e:
        print(f"{account.name}: FAILED - {e}")
        return 1
    finally:
        await db.close()

    print(f"{account.name}: {'deleted' if delete else 'marked read'} {message_id}")
    return 0


async def show_status(config: Config) -> int:
    db, repo = await open_repository(config)
    try:
        accounts = await repo.get_all_accounts()
        for account in accounts:
            folders = await repo.get_folders_by_account(account.id)
            last = account.last_sync.strftime("%Y-%m-%d %H:%M") if account.last_sync else "never"
            flags = "" if account.can_sync else " [disabled]"
            print(f"{account.name} <{account.email}>{flags}")
            print(f"  last sync: {last}, folders: {len(folders)}")
            if account.last_error:
                print(f"  last error: {account.last_error}")
    finally:
        await db.close()
    return 0


def show_profile(address: str) -> int:
    try:
        profile = resolve(address)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1

    quirks = profile.quirks
    print(f"Provider: {profile.provider}")
    print(f"IMAP:     {profile.imap_host}:{profile.imap_port} ({profile.imap_encryption.value})")
    print(f"SMTP:     {profile.smtp_host}:{profile.smtp_port} ({profile.smtp_encryption.value})")
    print(f"Sends ID:            {quirks.requires_client_identification}")
    print(f"Prefers SELECT:      {quirks.prefer_select_over_examine}")
    print(f"Restricted folders:  {quirks.has_folder_access_restrictions}")
    if quirks.min_tls_version is not None:
        print(f"Minimum TLS:         {quirks.min_tls_version.name}")
    return 0


async def store_password(account: Account) -> int:
    password = getpass.getpass(f"Password for {account.email}: ")
    if not password:
        print("No password entered", file=sys.stderr)
        return 1
    try:
        await KeyringSecretStore().set_password(account, password)
    except SecretStoreError as e:
        print(str(e), file=sys.stderr)
        return 1
    print(f"Password saved for {account.name}")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="mailmirror: mirror IMAP mailboxes into a local SQLite store",
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

    commands = parser.add_subparsers(dest="command")

    sync = commands.add_parser("sync", help="Sync accounts once")
    sync.add_argument("accounts", nargs="*", metavar="ACCOUNT")

    watch = commands.add_parser("watch", help="Sync, then watch for new mail")
    watch.add_argument("accounts", nargs="*", metavar="ACCOUNT")
    watch.add_argument("--no-sync", action="store_true", help="Skip the initial sync")

    profile = commands.add_parser("profile", help="Show the server profile for an address")
    profile.add_argument("address")

    commands.add_parser("status", help="Show the last sync outcome per account")

    password = commands.add_parser("password", help="Store an account password in the keyring")
    password.add_argument("account")

    for name, help_text in (("mark-read", "Mark a stored message read on the server"),
                            ("delete", "Delete a stored message on the server")):
        action = commands.add_parser(name, help=help_text)
        action.add_argument("account")
        action.add_argument("message_id", metavar="MESSAGE_ID")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mailmirror.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    if args.paths:
        print_paths()
        return 0

    if args.command == "profile":
        return show_profile(args.address)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level, args.debug)

    try:
        if args.command == "sync":
            return asyncio.run(run_sync(config, select_accounts(config, args.accounts)))
        if args.command == "watch":
            accounts = select_accounts(config, args.accounts)
            return asyncio.run(run_watch(config, accounts, initial_sync=not args.no_sync))
        if args.command == "status":
            return asyncio.run(show_status(config))
        if args.command == "password":
            return asyncio.run(store_password(select_accounts(config, [args.account])[0]))
        if args.command in ("mark-read", "delete"):
            account = select_accounts(config, [args.account])[0]
            return asyncio.run(run_message_action(
                config, account, args.message_id, delete=args.command == "delete"
            ))
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130

    parse_args(["--help"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
