# =============================================================================
# IDLE Watcher
# =============================================================================
# Long-lived per-account loops that pick up new mail as it arrives.
#
# Key responsibilities:
#   - Keep a connection to each watched account's folder (INBOX by default)
#   - Wait with IMAP IDLE; on every wake compare the highest UID with the
#     last one seen and fetch the difference
#   - Fall back to polling STATUS counts when IDLE misbehaves
#   - Reconnect with bounded exponential backoff, give up after
#     max_failures consecutive failures and surface a persistent error
#
# Design notes:
#   - Each account gets its own session (separate from sync jobs), so a
#     watcher never shares a connection with the SyncEngine
#   - RFC 2177 recommends refreshing IDLE at least every 29 minutes
#   - Authentication failures stop the loop at once; retrying cannot fix them
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto

from mailmirror.config import ClientConfig, SyncConfig, WatchConfig
from mailmirror.core import Account, FetchCursor, LocalFolder, SyncState
from mailmirror.imap.fetcher import FetchStatus, fetch_since_uid
from mailmirror.imap.session import (
    FolderMode,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPSession,
)
from mailmirror.imap.status import StatusBoard
from mailmirror.imap.sync import (
    FolderNotFoundError,
    MessageListener,
    MissingCredentialsError,
    SessionFactory,
    describe_error,
    dispatch_event,
    store_new_messages,
)
from mailmirror.notify import LogNotificationSink, NewMessagesEvent, NotificationSink
from mailmirror.storage.protocols import AccountStore, FolderStore, MessageStore

logger = logging.getLogger(__name__)


class WatchMode(Enum):
    """How a watcher waits for new mail."""
    IDLE = auto()   # IMAP IDLE push
    POLL = auto()   # STATUS every poll_interval


@dataclass
class AccountWatch:
    """
    Per-account watcher state, owned by that account's loop.

    Attributes:
        account: Watched account.
        mode: Current wait strategy. Drops to POLL after an IDLE error.
        failures: Consecutive connection failures.
        cursor: Highest UID seen in the watched folder.
    """
    account: Account
    mode: WatchMode = WatchMode.IDLE
    failures: int = 0
    cursor: FetchCursor = field(default_factory=FetchCursor)


class IdleWatcher:
    """
    Watches accounts for new mail.

    Usage:
        >>> watcher = IdleWatcher(repo, repo, repo, settings=config.watch)
        >>> watcher.add_message_listener(on_new_mail)
        >>> await watcher.start(["personal", "work"])
        >>> # ... later ...
        >>> await watcher.stop()
    """

    def __init__(
        self,
        accounts: AccountStore,
        folders: FolderStore,
        messages: MessageStore,
        *,
        notifier: NotificationSink | None = None,
        status: StatusBoard | None = None,
        settings: WatchConfig | None = None,
        sync_settings: SyncConfig | None = None,
        identity: ClientConfig | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.accounts = accounts
        self.folders = folders
        self.messages = messages
        self.notifier = notifier or LogNotificationSink()
        self.status = status or StatusBoard()
        self.settings = settings or WatchConfig()
        self.sync_settings = sync_settings or SyncConfig()
        self.identity = identity or ClientConfig()
        self._session_factory = session_factory

        self._tasks: dict[str, asyncio.Task] = {}
        self._sessions: dict[str, IMAPSession] = {}
        self._watches: dict[str, AccountWatch] = {}
        self._listeners: list[MessageListener] = []

    def add_message_listener(self, listener: MessageListener) -> None:
        self._listeners.append(listener)

    def is_watching(self, account_id: str) -> bool:
        """True while the account's loop is alive."""
        task = self._tasks.get(account_id)
        return task is not None and not task.done()

    def watch_mode(self, account_id: str) -> WatchMode | None:
        watch = self._watches.get(account_id)
        return watch.mode if watch else None

    async def start(self, account_ids: list[str]) -> None:
        """
        Start watching the given accounts.

        Unknown or disabled accounts are skipped with a warning.
        """
        for account_id in account_ids:
            if self.is_watching(account_id):
                logger.warning(f"Already watching {account_id}")
                continue

            account = await self.accounts.get_account_by_id(account_id)
            if account is None or not account.can_sync:
                logger.warning(f"Not watching {account_id}: unknown or disabled account")
                continue

            mode = WatchMode.IDLE if self.settings.use_idle else WatchMode.POLL
            watch = AccountWatch(account=account, mode=mode)
            self._watches[account.id] = watch
            self._tasks[account.id] = asyncio.create_task(
                self._watch_account(watch),
                name=f"watch-{account.name}",
            )

        logger.info(f"Watching {len(self._tasks)} account(s)")

    async def wait(self) -> None:
        """Wait until every watch loop has ended."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def stop(self) -> None:
        """Stop all loops and disconnect their sessions."""
        if not self._tasks:
            return

        logger.info("Stopping watcher")
        for task in self._tasks.values():
            task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*self._tasks.values(), return_exceptions=True),
                timeout=5.0,
            )
        except asyncio.TimeoutError:
            logger.warning("Watch tasks did not stop cleanly, forcing disconnect")

        for account_id, session in list(self._sessions.items()):
            try:
                await asyncio.wait_for(session.disconnect(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning(f"Timeout disconnecting watch session {account_id}")

        self._tasks.clear()
        self._sessions.clear()
        self._watches.clear()

    # =========================================================================
    # Account Loop
    # =========================================================================

    def _new_session(self, account: Account) -> IMAPSession:
        if self._session_factory is not None:
            return self._session_factory(account)
        return IMAPSession(account, settings=self.sync_settings, identity=self.identity)

    def _backoff(self, failures: int) -> float:
        return min(
            self.settings.backoff_base * (2 ** (failures - 1)),
            self.settings.backoff_max,
        )

    async def _watch_account(self, watch: AccountWatch) -> None:
        """Connect, watch, and reconnect until stopped or given up."""
        account = watch.account
        logger.info(f"Starting watcher for {account.name} ({self.settings.folder})")

        while True:
            session = self._new_session(account)
            self._sessions[account.id] = session
            try:
                password = await self.accounts.get_password(account.id)
                if not password:
                    raise MissingCredentialsError(f"No password stored for {account.name}")
                await session.connect(password)
                folder = await self._watched_folder(account)
                await self._establish_baseline(session, watch, folder)
                watch.failures = 0

                if watch.mode is WatchMode.IDLE and not session.supports_idle:
                    logger.info(f"{account.name} server does not support IDLE, polling instead")
                    watch.mode = WatchMode.POLL

                await self._watch_loop(session, watch, folder)

            except asyncio.CancelledError:
                logger.debug(f"Watcher cancelled for {account.name}")
                raise

            except (IMAPAuthenticationError, MissingCredentialsError, FolderNotFoundError) as e:
                await self._give_up(account, describe_error(e))
                return

            except Exception as e:
                watch.failures += 1
                reason = describe_error(e)
                if not isinstance(e, IMAPConnectionError):
                    logger.exception(f"Watcher error for {account.name}")
                if watch.failures >= self.settings.max_failures:
                    await self._give_up(
                        account,
                        f"Watcher stopped after {watch.failures} consecutive failures: {reason}",
                    )
                    return
                delay = self._backoff(watch.failures)
                logger.warning(
                    f"Watch connection for {account.name} failed ({reason}); "
                    f"retry {watch.failures}/{self.settings.max_failures} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

            finally:
                await session.disconnect()
                if self._sessions.get(account.id) is session:
                    del self._sessions[account.id]

    async def _give_up(self, account: Account, reason: str) -> None:
        logger.error(f"Watcher for {account.name} stopped: {reason}")
        self.status.publish(account.id, SyncState.ERROR, error=reason)
        try:
            await self.accounts.update_sync_status(account.id, None, reason)
            await self.notifier.notify_sync_failure(account.id, reason)
        except Exception:
            logger.exception(f"Could not record watcher failure for {account.name}")

    async def _watched_folder(self, account: Account) -> LocalFolder:
        wanted = self.settings.folder
        for folder in await self.folders.get_folders_by_account(account.id):
            if folder.full_name == wanted:
                return folder
            if wanted.upper() == "INBOX" and folder.is_inbox:
                return folder
        raise FolderNotFoundError(
            f"Folder {wanted!r} is not synced for {account.name}; run a sync first"
        )

    async def _establish_baseline(
        self,
        session: IMAPSession,
        watch: AccountWatch,
        folder: LocalFolder,
    ) -> None:
        """
        Set the UID cursor after (re)connecting.

        On the first connection the cursor starts from what the sync engine
        stored, when that is from the current UIDVALIDITY epoch; otherwise
        from the server's newest message. Mail that arrived while the
        watcher was disconnected is then fetched right away.
        """
        highest = await session.with_open_folder(
            folder.full_name, FolderMode.READ_ONLY, lambda handle: session.highest_uid()
        )
        handle = session.current_folder
        uidvalidity = handle.uidvalidity if handle else None
        cursor = watch.cursor

        if cursor.uidvalidity is None and cursor.highest_uid == 0:
            if folder.highest_uid and folder.uidvalidity == uidvalidity:
                cursor.highest_uid = folder.highest_uid
            else:
                cursor.highest_uid = highest
            cursor.uidvalidity = uidvalidity
        elif cursor.observe_epoch(uidvalidity):
            logger.warning(f"UIDVALIDITY changed for {folder.full_name}, rebaselining")
            cursor.highest_uid = highest

        cursor.message_count = handle.exists if handle else 0
        logger.debug(f"Watch baseline for {watch.account.name}: UID {cursor.highest_uid}")
        await self._check_new_mail(session, watch, folder)

    async def _watch_loop(
        self,
        session: IMAPSession,
        watch: AccountWatch,
        folder: LocalFolder,
    ) -> None:
        while True:
            if watch.mode is WatchMode.POLL:
                await self._poll_cycle(session, watch, folder)
                continue

            try:
                await self._idle_cycle(session, watch, folder)
            except IMAPConnectionError:
                watch.mode = WatchMode.POLL
                raise
            except (asyncio.CancelledError, MissingCredentialsError, FolderNotFoundError):
                raise
            except Exception as e:
                logger.warning(
                    f"IDLE failed for {watch.account.name} ({describe_error(e)}); "
                    f"polling every {self.settings.poll_interval:.0f}s"
                )
                watch.mode = WatchMode.POLL

    async def _idle_cycle(
        self,
        session: IMAPSession,
        watch: AccountWatch,
        folder: LocalFolder,
    ) -> None:
        """One IDLE round: wait for a push or the refresh timeout, then check."""
        notifications = await session.with_open_folder(
            folder.full_name,
            FolderMode.READ_ONLY,
            lambda handle: session.idle_wait(self.settings.idle_timeout),
        )
        if notifications:
            logger.debug(f"IDLE wake for {watch.account.name}: {notifications}")
        else:
            logger.debug(f"IDLE refresh for {watch.account.name}")
        await self._check_new_mail(session, watch, folder)

    async def _poll_cycle(
        self,
        session: IMAPSession,
        watch: AccountWatch,
        folder: LocalFolder,
    ) -> None:
        """One poll round: sleep, then compare STATUS counts with the cursor."""
        await asyncio.sleep(self.settings.poll_interval)
        counts = await session.folder_status(folder.full_name)
        cursor = watch.cursor

        count = int(counts.get("MESSAGES", 0))
        uidnext = int(counts.get("UIDNEXT", 0))
        changed = count > cursor.message_count or uidnext - 1 > cursor.highest_uid
        if count != cursor.message_count:
            logger.debug(f"{watch.account.name}: {cursor.message_count} -> {count} messages")
        cursor.message_count = count

        handle = session.current_folder
        if handle is not None and handle.name == folder.full_name:
            handle.exists = count

        if changed:
            await self._check_new_mail(session, watch, folder)

    async def _check_new_mail(
        self,
        session: IMAPSession,
        watch: AccountWatch,
        folder: LocalFolder,
    ) -> None:
        """Fetch and store everything above the cursor, then announce it."""
        account = watch.account
        cursor = watch.cursor

        highest = await session.with_open_folder(
            folder.full_name, FolderMode.READ_ONLY, lambda handle: session.highest_uid()
        )
        handle = session.current_folder
        if handle is not None and cursor.observe_epoch(handle.uidvalidity):
            logger.warning(f"UIDVALIDITY changed for {folder.full_name}, rebaselining")
            cursor.highest_uid = highest
            return
        if highest <= cursor.highest_uid:
            return

        result = await fetch_since_uid(session, folder, cursor.highest_uid)
        if result.status is not FetchStatus.OK:
            return
        cursor.advance(result.highest_uid)

        stored = await store_new_messages(self.messages, result.messages)
        folder.highest_uid = cursor.highest_uid
        folder.uidvalidity = cursor.uidvalidity
        folder.last_sync = datetime.now(timezone.utc)
        await self.folders.update_folder(folder)

        if not stored:
            return
        logger.info(f"{account.name}: {len(stored)} new message(s) in {folder.full_name}")
        event = NewMessagesEvent(
            account_id=account.id,
            folder_id=folder.id,
            folder_name=folder.full_name,
            messages=stored,
        )
        await dispatch_event(self._listeners, event)
        try:
            await self.notifier.notify_new_messages(account, stored)
        except Exception:
            logger.exception(f"Notification failed for {account.name}")
