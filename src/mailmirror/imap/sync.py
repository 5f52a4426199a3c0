# =============================================================================
# Sync Engine
# =============================================================================
# Runs account sync jobs: connect, reconcile folders, fetch new messages.
#
# Sync strategy:
#   1. Connect and authenticate (bounded retries inside IMAPSession)
#   2. List folders and reconcile them with the local folder store
#   3. For every folder that can hold messages, fetch the messages not yet
#      stored and insert them (deduplicated by Message-ID)
#
# Per-account state machine (published on the StatusBoard):
#
#   IDLE -> CONNECTING -> SYNCING -> COMPLETED | ERROR
#
# Key concepts:
#   - AccountWorker: owns one account's session and its single active job.
#     Starting a job cancels and awaits the previous one first, so two jobs
#     never share a session.
#   - Restricted folders are skipped and reported, never fatal.
#   - Anything else aborts the job, is stored on the account and announced
#     through the NotificationSink.
#   - Message actions (mark read, delete) run on their own session against
#     the message's folder opened read-write, then update the local store.
# =============================================================================

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from mailmirror.config import ClientConfig, SyncConfig
from mailmirror.core import (
    Account,
    CancellationToken,
    FetchCursor,
    LocalFolder,
    Message,
    SyncState,
)
from mailmirror.imap.fetcher import FetchStatus, fetch_incremental
from mailmirror.imap.folders import FolderPlan, reconcile
from mailmirror.imap.session import (
    FolderMode,
    IMAPError,
    IMAPSession,
    OpenFolder,
    RestrictedAccessError,
)
from mailmirror.imap.status import StatusBoard
from mailmirror.notify import LogNotificationSink, NewMessagesEvent, NotificationSink
from mailmirror.storage.protocols import AccountStore, FolderStore, MessageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[Account], IMAPSession]
MessageListener = Callable[[NewMessagesEvent], Awaitable[None] | None]


def describe_error(error: BaseException) -> str:
    """Text stored on the account and shown to the user."""
    return str(error) or error.__class__.__name__


async def store_new_messages(store: MessageStore, messages: list[Message]) -> list[Message]:
    """
    Insert messages that are not stored yet.

    Messages whose Message-ID already exists for the account are skipped
    silently.

    Returns:
        The messages that were actually inserted, in input order.
    """
    stored: list[Message] = []
    for message in messages:
        existing = await store.get_message_by_identity(message.account_id, message.message_id)
        if existing is not None:
            continue
        if await store.insert_message(message):
            stored.append(message)
    return stored


async def dispatch_event(listeners: list[MessageListener], event: NewMessagesEvent) -> None:
    """Call every listener; a failing listener does not affect the others."""
    for listener in list(listeners):
        try:
            result = listener(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Message listener failed for {event.account_id}")


@dataclass
class FolderReport:
    """
    Outcome of syncing one folder.

    Attributes:
        folder_id: Local folder id.
        folder_name: Server name.
        status: Fetch outcome.
        fetched: Messages retrieved from the server.
        new_messages: Messages actually inserted.
        duplicates: Fetched messages already stored (by Message-ID).
        parse_failures: Placeholders stored for undecodable messages.
        detail: Server text when the folder was restricted.
    """
    folder_id: str
    folder_name: str
    status: FetchStatus
    fetched: int = 0
    new_messages: int = 0
    duplicates: int = 0
    parse_failures: int = 0
    detail: str = ""


@dataclass
class SyncReport:
    """
    Outcome of a full account sync.

    Attributes:
        account_id: Synced account.
        state: COMPLETED or ERROR.
        folders: Per-folder reports, in sync order.
        folders_added: Folders inserted by reconciliation.
        folders_updated: Folders updated by reconciliation.
        folders_removed: Folders deleted by reconciliation.
        error: Error text when state is ERROR.
        duration_seconds: Wall time of the job.
    """
    account_id: str
    state: SyncState = SyncState.IDLE
    folders: list[FolderReport] = field(default_factory=list)
    folders_added: int = 0
    folders_updated: int = 0
    folders_removed: int = 0
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.state is SyncState.COMPLETED

    @property
    def new_messages(self) -> int:
        return sum(folder.new_messages for folder in self.folders)

    @property
    def restricted_folders(self) -> list[str]:
        return [f.folder_name for f in self.folders if f.status is FetchStatus.RESTRICTED]


class AccountWorker:
    """
    Exclusive owner of one account's sync job and session.

    Attributes:
        account_id: Account this worker belongs to.
        task: The active (or last) job.
        session: Session of the active job, None between jobs.
        token: Cancellation token of the active job.
        control: Serializes start/stop requests for this account.
    """

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        self.task: asyncio.Task | None = None
        self.session: IMAPSession | None = None
        self.token: CancellationToken | None = None
        self.control = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def cancel(self) -> None:
        """Cancel the active job and wait until it has released its session."""
        if self.token is not None:
            self.token.cancel()
        task = self.task
        if task is not None and not task.done():
            logger.debug(f"Cancelling running job for {self.account_id}")
            task.cancel()
            await asyncio.wait([task])
        # A job cancelled before it started never reaches its own cleanup
        if self.session is not None:
            await self.session.disconnect()
            self.session = None


class SyncEngine:
    """
    Coordinates sync jobs for all accounts.

    Usage:
        >>> engine = SyncEngine(repo, repo, repo, notifier=LogNotificationSink())
        >>> report = await engine.sync_account("personal")
        >>> report.new_messages
        12

    Attributes:
        status: StatusBoard with the per-account SyncStatus.
        settings: Timeouts, retries and batch sizes.
    """

    def __init__(
        self,
        accounts: AccountStore,
        folders: FolderStore,
        messages: MessageStore,
        *,
        notifier: NotificationSink | None = None,
        status: StatusBoard | None = None,
        settings: SyncConfig | None = None,
        identity: ClientConfig | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            accounts: Account lookup, credentials and sync outcome storage.
            folders: Local folder mirror.
            messages: Local message mirror.
            notifier: Receives new-message and failure notifications.
            status: Shared status board (a new one is created if omitted).
            settings: Sync settings from the config file.
            identity: Client identification for IMAP ID.
            session_factory: Creates sessions (replaceable in tests).
        """
        self.accounts = accounts
        self.folders = folders
        self.messages = messages
        self.notifier = notifier or LogNotificationSink()
        self.status = status or StatusBoard()
        self.settings = settings or SyncConfig()
        self.identity = identity or ClientConfig()
        self._session_factory = session_factory
        self._workers: dict[str, AccountWorker] = {}
        self._listeners: list[MessageListener] = []

    # =========================================================================
    # Public Surface
    # =========================================================================

    def add_message_listener(self, listener: MessageListener) -> None:
        """Register a callback for every batch of newly stored messages."""
        self._listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_syncing(self, account_id: str) -> bool:
        worker = self._workers.get(account_id)
        return worker is not None and worker.is_running

    async def start_sync(self, account_id: str) -> "asyncio.Task[SyncReport]":
        """
        Start a full sync job, replacing any job running for the account.

        Returns:
            The job task. Awaiting it yields the SyncReport.

        Raises:
            AccountNotFoundError: Unknown account id.
            AccountDisabledError: Account or its sync is disabled.
        """
        account = await self._load_account(account_id)
        worker = self._worker(account_id)
        async with worker.control:
            await worker.cancel()
            token = CancellationToken()
            worker.token = token
            worker.task = asyncio.create_task(
                self._run_sync(worker, account, token),
                name=f"sync-{account.name}",
            )
            logger.info(f"Started sync for {account.name}")
            return worker.task

    async def sync_account(self, account_id: str) -> SyncReport:
        """
        Run a full sync and wait for it.

        Raises:
            asyncio.CancelledError: If the job was stopped or replaced.
        """
        task = await self.start_sync(account_id)
        return await task

    async def sync_folder(self, account_id: str, folder_id: str) -> FolderReport:
        """
        Sync a single folder, replacing any job running for the account.

        Raises:
            AccountNotFoundError: Unknown account id.
            AccountDisabledError: Account or its sync is disabled.
            FolderNotFoundError: The folder is not stored for the account.
            IMAPError: On connection or authentication failure.
        """
        account = await self._load_account(account_id)
        worker = self._worker(account_id)
        async with worker.control:
            await worker.cancel()
            token = CancellationToken()
            worker.token = token
            worker.task = asyncio.create_task(
                self._run_job(
                    worker, account, token,
                    lambda session: self._sync_single_folder(session, account, folder_id, token),
                ),
                name=f"sync-{account.name}-folder",
            )
            task = worker.task
        return await task

    async def stop_sync(self, account_id: str) -> None:
        """Cancel the account's job, disconnect its session, set IDLE."""
        worker = self._workers.get(account_id)
        if worker is not None:
            async with worker.control:
                await worker.cancel()
        self.status.publish(account_id, SyncState.IDLE)
        logger.info(f"Stopped sync for {account_id}")

    async def stop_all(self) -> None:
        """Stop every account's job."""
        for account_id in list(self._workers):
            await self.stop_sync(account_id)

    # =========================================================================
    # Message Actions
    # =========================================================================

    async def mark_read(self, account_id: str, message_id: str) -> None:
        """
        Set \\Seen on the server, then on the stored message.

        Args:
            account_id: Owning account.
            message_id: Message-ID of a stored message.

        Raises:
            AccountNotFoundError: Unknown account id.
            AccountDisabledError: Account or its sync is disabled.
            MessageNotFoundError: The message is not stored, or the UIDs of
                its folder changed since it was fetched.
            IMAPError: On connection, authentication or server failure.
        """
        message = await self._apply_to_message(
            account_id, message_id, "Marked read",
            lambda session, uid: session.add_flags(uid, "\\Seen"),
        )
        await self.messages.mark_read(message.id)

    async def delete_message(self, account_id: str, message_id: str) -> None:
        """
        Delete a message on the server (\\Deleted + EXPUNGE), then locally.

        Raises the same errors as mark_read.
        """
        async def delete(session: IMAPSession, uid: int) -> None:
            await session.add_flags(uid, "\\Deleted")
            await session.expunge()

        message = await self._apply_to_message(account_id, message_id, "Deleted", delete)
        await self.messages.delete_message(message.id)

    async def _apply_to_message(
        self,
        account_id: str,
        message_id: str,
        action: str,
        operation: Callable[[IMAPSession, int], Awaitable[None]],
    ) -> Message:
        """
        Run operation against the message's folder, opened read-write.

        Uses its own session, so a running sync job is left alone.
        """
        account = await self._load_account(account_id)
        message = await self.messages.get_message_by_identity(account.id, message_id)
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} not found for {account.name}")

        folders = await self.folders.get_folders_by_account(account.id)
        folder = next((f for f in folders if f.id == message.folder_id), None)
        if folder is None:
            raise FolderNotFoundError(
                f"Folder {message.folder_id} not found for {account.name}"
            )

        async def run(handle: OpenFolder) -> None:
            if folder.uidvalidity is not None and handle.uidvalidity != folder.uidvalidity:
                raise MessageNotFoundError(
                    f"UIDs of {folder.full_name} changed since the last sync; sync it first"
                )
            await operation(session, message.uid)

        password = await self._require_password(account)
        session = self._new_session(account)
        try:
            await session.connect(password)
            await session.with_open_folder(folder.full_name, FolderMode.READ_WRITE, run)
        finally:
            await session.disconnect()

        logger.info(f"{action} {message_id} in {folder.full_name} for {account.name}")
        return message

    # =========================================================================
    # Job Plumbing
    # =========================================================================

    def _worker(self, account_id: str) -> AccountWorker:
        worker = self._workers.get(account_id)
        if worker is None:
            worker = self._workers[account_id] = AccountWorker(account_id)
        return worker

    def _new_session(self, account: Account) -> IMAPSession:
        if self._session_factory is not None:
            return self._session_factory(account)
        return IMAPSession(account, settings=self.settings, identity=self.identity)

    async def _load_account(self, account_id: str) -> Account:
        account = await self.accounts.get_account_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(f"Unknown account: {account_id}")
        if not account.can_sync:
            raise AccountDisabledError(f"Sync is disabled for {account.name}")
        return account

    async def _require_password(self, account: Account) -> str:
        password = await self.accounts.get_password(account.id)
        if not password:
            raise MissingCredentialsError(
                f"No password stored for {account.name}. "
                f"Set it with: mailmirror password {account.name}"
            )
        return password

    async def _run_job(
        self,
        worker: AccountWorker,
        account: Account,
        token: CancellationToken,
        body: Callable[[IMAPSession], Awaitable[T]],
    ) -> T:
        """
        Connect a fresh session, run body with it and always disconnect.

        Failures are published as ERROR, stored on the account and announced,
        then re-raised. Cancellation publishes IDLE.
        """
        session = self._new_session(account)
        worker.session = session
        try:
            self.status.publish(account.id, SyncState.CONNECTING)
            password = await self._require_password(account)
            token.raise_if_cancelled()
            await session.connect(password)

            self.status.publish(account.id, SyncState.SYNCING)
            return await body(session)

        except asyncio.CancelledError:
            logger.info(f"Sync for {account.name} cancelled")
            self.status.publish(account.id, SyncState.IDLE)
            raise

        except Exception as e:
            reason = describe_error(e)
            if isinstance(e, (IMAPError, SyncError)):
                logger.error(f"Sync failed for {account.name}: {reason}")
            else:
                logger.exception(f"Unexpected error while syncing {account.name}")
            await self._record_failure(account, reason)
            raise

        finally:
            await session.disconnect()
            if worker.session is session:
                worker.session = None

    async def _record_failure(self, account: Account, reason: str) -> None:
        self.status.publish(account.id, SyncState.ERROR, error=reason)
        try:
            await self.accounts.update_sync_status(account.id, None, reason)
            await self.notifier.notify_sync_failure(account.id, reason)
        except Exception:
            logger.exception(f"Could not record sync failure for {account.name}")

    async def _run_sync(
        self,
        worker: AccountWorker,
        account: Account,
        token: CancellationToken,
    ) -> SyncReport:
        report = SyncReport(account_id=account.id)
        started = time.monotonic()
        try:
            await self._run_job(
                worker, account, token,
                lambda session: self._sync_all_folders(session, account, token, report),
            )
        except Exception as e:
            report.state = SyncState.ERROR
            report.error = describe_error(e)
        finally:
            report.duration_seconds = time.monotonic() - started
        return report

    # =========================================================================
    # Sync Phases
    # =========================================================================

    async def _sync_all_folders(
        self,
        session: IMAPSession,
        account: Account,
        token: CancellationToken,
        report: SyncReport,
    ) -> None:
        logger.info(f"Starting sync for account: {account.name}")
        self.status.publish(account.id, SyncState.SYNCING, detail="folders")
        plan = await self._reconcile_folders(session, account)
        report.folders_added = len(plan.inserts)
        report.folders_updated = len(plan.updates)
        report.folders_removed = len(plan.deletions)

        for folder in plan.folders:
            if not folder.can_hold_messages:
                continue
            token.raise_if_cancelled()
            self.status.publish(account.id, SyncState.SYNCING, detail=folder.display_name)
            report.folders.append(await self._sync_folder_messages(session, account, folder, token))

        await self.accounts.update_sync_status(account.id, datetime.now(timezone.utc), None)
        report.state = SyncState.COMPLETED
        restricted = report.restricted_folders
        self.status.publish(
            account.id,
            SyncState.COMPLETED,
            detail=f"{report.new_messages} new"
            + (f", {len(restricted)} restricted" if restricted else ""),
        )
        logger.info(
            f"Sync complete for {account.name}: {report.new_messages} new, "
            f"{len(restricted)} restricted folder(s) skipped"
        )

    async def _reconcile_folders(self, session: IMAPSession, account: Account) -> FolderPlan:
        """List remote folders and apply the reconciliation plan to the store."""
        remote = await session.list_folders()
        local = await self.folders.get_folders_by_account(account.id)
        plan = reconcile(remote, local, account.id)

        # Deletions first so renamed folders can take over their old names
        for folder in plan.deletions:
            logger.info(f"Removing deleted folder: {folder.full_name}")
            await self.folders.delete_folder(folder.id)
        for folder in plan.inserts:
            logger.debug(f"Adding folder: {folder.full_name}")
            await self.folders.insert_folder(folder)
        for folder in plan.updates:
            await self.folders.update_folder(folder)

        logger.info(f"Reconciled {len(remote)} folders for {account.name} ({plan})")
        return plan

    async def _sync_folder_messages(
        self,
        session: IMAPSession,
        account: Account,
        folder: LocalFolder,
        token: CancellationToken,
    ) -> FolderReport:
        """Fetch, store and announce the new messages of one folder."""
        local_count = await self.messages.get_message_count_in_folder(folder.id)
        result = await fetch_incremental(
            session,
            folder,
            local_count,
            batch_size=self.settings.batch_size,
            initial_limit=self.settings.initial_fetch_limit,
            token=token,
        )

        stored = await store_new_messages(self.messages, result.messages)
        report = FolderReport(
            folder_id=folder.id,
            folder_name=folder.full_name,
            status=result.status,
            fetched=len(result.messages),
            new_messages=len(stored),
            duplicates=len(result.messages) - len(stored),
            parse_failures=result.parse_failures,
            detail=result.detail,
        )
        if result.status is FetchStatus.RESTRICTED:
            return report

        first_pass = not folder.ever_synced
        cursor = FetchCursor(highest_uid=folder.highest_uid, uidvalidity=folder.uidvalidity)
        if cursor.observe_epoch(result.uidvalidity):
            logger.warning(f"UIDVALIDITY changed for {folder.full_name}")
        cursor.advance(result.highest_uid)

        folder.highest_uid = cursor.highest_uid
        folder.uidvalidity = cursor.uidvalidity
        folder.ever_synced = True
        folder.last_sync = datetime.now(timezone.utc)
        await self.folders.update_folder(folder)

        if stored:
            await self._announce(account, folder, stored, initial_sync=first_pass)
        return report

    async def _sync_single_folder(
        self,
        session: IMAPSession,
        account: Account,
        folder_id: str,
        token: CancellationToken,
    ) -> FolderReport:
        folders = await self.folders.get_folders_by_account(account.id)
        folder = next((f for f in folders if f.id == folder_id), None)
        if folder is None:
            raise FolderNotFoundError(f"Folder {folder_id} not found for {account.name}")

        self.status.publish(account.id, SyncState.SYNCING, detail=folder.display_name)
        try:
            counts = await session.folder_status(folder.full_name)
        except RestrictedAccessError as e:
            logger.info(f"Skipping restricted folder {folder.full_name}")
            report = FolderReport(folder.id, folder.full_name, FetchStatus.RESTRICTED,
                                  detail=e.server_text)
        else:
            folder.message_count = int(counts.get("MESSAGES", folder.message_count))
            folder.unread_count = int(counts.get("UNSEEN", folder.unread_count))
            report = await self._sync_folder_messages(session, account, folder, token)

        self.status.publish(account.id, SyncState.COMPLETED, detail=folder.display_name)
        return report

    async def _announce(
        self,
        account: Account,
        folder: LocalFolder,
        messages: list[Message],
        *,
        initial_sync: bool,
    ) -> None:
        """Emit the event; only folders synced before notify the user."""
        event = NewMessagesEvent(
            account_id=account.id,
            folder_id=folder.id,
            folder_name=folder.full_name,
            messages=messages,
            initial_sync=initial_sync,
        )
        await dispatch_event(self._listeners, event)
        if initial_sync:
            return
        try:
            await self.notifier.notify_new_messages(account, messages)
        except Exception:
            logger.exception(f"Notification failed for {account.name}")


# =============================================================================
# Exceptions
# =============================================================================

class SyncError(Exception):
    """Base exception for sync engine errors."""
    pass


class AccountNotFoundError(SyncError):
    """The account id is not known to the AccountStore."""
    pass


class AccountDisabledError(SyncError):
    """The account exists but is disabled or excluded from sync."""
    pass


class MissingCredentialsError(SyncError):
    """No password is stored for the account."""
    pass


class FolderNotFoundError(SyncError):
    """The folder id is not stored for the account."""
    pass


class MessageNotFoundError(SyncError):
    """The message is not stored for the account, or its UID is no longer valid."""
    pass
