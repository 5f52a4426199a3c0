# =============================================================================
# Message Fetcher
# =============================================================================
# Pulls new messages of one folder through an IMAPSession.
#
# Incremental window (sequence numbers, 1 = oldest, inclusive):
#
#   new   = max(0, remote - local)        forced to remote when local == 0
#   start = max(1, remote - offset - new + 1)
#   end   = max(1, remote - offset)
#
# The window is fetched newest batch first. Each message is decoded on its
# own; a message that cannot be decoded becomes a placeholder instead of
# failing the folder.
#
# Expected outcomes are reported as FetchStatus values. Only connection level
# errors (and cancellation) propagate as exceptions.
# =============================================================================

import logging
from dataclasses import dataclass, field
from enum import Enum, auto

from mailmirror.core import CancellationToken, LocalFolder, Message
from mailmirror.imap.parsing import (
    FetchRecord,
    MessageParseError,
    build_message,
    placeholder_message,
)
from mailmirror.imap.session import (
    FolderMode,
    IMAPSession,
    OpenFolder,
    RestrictedAccessError,
)

logger = logging.getLogger(__name__)


class FetchStatus(Enum):
    """Outcome of a folder fetch."""
    OK = auto()             # Window fetched (possibly with placeholders)
    UP_TO_DATE = auto()     # Nothing to fetch; the folder was not opened
    RESTRICTED = auto()     # Provider policy blocked the folder


@dataclass
class FetchResult:
    """
    Messages fetched from one folder.

    Attributes:
        status: What happened.
        messages: Fetched messages, newest first.
        window: Sequence range requested, None when nothing was requested.
        parse_failures: Number of placeholder messages among messages.
        detail: Server text for RESTRICTED results.
        uidvalidity: Epoch reported when the folder was opened.
    """
    status: FetchStatus
    messages: list[Message] = field(default_factory=list)
    window: tuple[int, int] | None = None
    parse_failures: int = 0
    detail: str = ""
    uidvalidity: int | None = None

    @property
    def highest_uid(self) -> int:
        return max((message.uid for message in self.messages), default=0)


def compute_window(
    remote_count: int,
    local_count: int,
    offset: int = 0,
    limit: int = 0,
) -> tuple[int, int] | None:
    """
    Compute the sequence range holding the messages not stored locally.

    Args:
        remote_count: Messages on the server.
        local_count: Messages stored for the folder.
        offset: Number of newest messages to skip.
        limit: Fetch at most this many (0 = no limit).

    Returns:
        (start, end) inclusive, or None when there is nothing to fetch.

    Example:
        >>> compute_window(50, 48)
        (49, 50)
        >>> compute_window(12, 0)
        (1, 12)
    """
    new_count = max(0, remote_count - local_count)
    # A folder with nothing stored locally is fetched in full, even if a
    # stale local count would suggest otherwise.
    if remote_count > 0 and local_count == 0:
        new_count = remote_count
    if limit > 0:
        new_count = min(new_count, limit)
    if new_count == 0:
        return None

    start = max(1, remote_count - offset - new_count + 1)
    end = max(1, remote_count - offset)
    return start, end


def _to_messages(
    records: list[FetchRecord],
    folder: LocalFolder,
    uidvalidity: int | None,
) -> tuple[list[Message], int]:
    """Decode records newest first. Returns (messages, placeholder count)."""
    messages: list[Message] = []
    failures = 0
    for record in sorted(records, key=lambda r: (r.sequence, r.uid), reverse=True):
        context = dict(
            account_id=folder.account_id,
            folder_id=folder.id,
            folder_name=folder.full_name,
            uidvalidity=uidvalidity,
        )
        try:
            messages.append(build_message(record, **context))
        except MessageParseError as e:
            failures += 1
            logger.warning(f"{folder.full_name}: {e}; storing placeholder")
            messages.append(placeholder_message(record, reason=str(e), **context))
    return messages, failures


async def fetch_incremental(
    session: IMAPSession,
    folder: LocalFolder,
    local_count: int,
    *,
    batch_size: int = 50,
    initial_limit: int = 0,
    token: CancellationToken | None = None,
    offset: int = 0,
) -> FetchResult:
    """
    Fetch the messages of a folder that are not stored locally yet.

    The folder is not opened at all when the window is empty. Cancellation
    is checked before every batch.

    Args:
        session: Connected session owned by the caller.
        folder: Reconciled local folder; message_count is the remote count.
        local_count: Messages stored locally for the folder.
        batch_size: Messages per FETCH command.
        initial_limit: Cap for folders that were never synced (0 = all).
        token: Cancellation token of the running job.
        offset: Number of newest messages to skip.

    Returns:
        FetchResult with status OK, UP_TO_DATE or RESTRICTED.

    Raises:
        asyncio.CancelledError: If the token was cancelled.
        IMAPConnectionError: On network failure.
    """
    limit = 0 if folder.ever_synced else initial_limit
    window = compute_window(folder.message_count, local_count, offset, limit)
    if window is None:
        logger.debug(
            f"{folder.full_name}: up to date "
            f"({folder.message_count} remote, {local_count} local)"
        )
        return FetchResult(FetchStatus.UP_TO_DATE)

    start, end = window
    logger.info(f"Fetching {end - start + 1} messages [{start}:{end}] from {folder.full_name}")

    async def fetch_batch(handle: OpenFolder, first: int, last: int) -> list[FetchRecord]:
        # The server may hold fewer messages than the listing reported
        last = min(last, handle.exists)
        if last < first:
            return []
        return await session.fetch_range(first, last)

    result = FetchResult(FetchStatus.OK, window=window)
    batch_end = end
    try:
        while batch_end >= start:
            if token is not None:
                token.raise_if_cancelled()
            batch_start = max(start, batch_end - batch_size + 1)
            records = await session.with_open_folder(
                folder.full_name,
                FolderMode.READ_ONLY,
                lambda handle: fetch_batch(handle, batch_start, batch_end),
            )
            if session.current_folder is not None:
                result.uidvalidity = session.current_folder.uidvalidity

            messages, failures = _to_messages(records, folder, result.uidvalidity)
            result.messages.extend(messages)
            result.parse_failures += failures
            batch_end = batch_start - 1
    except RestrictedAccessError as e:
        logger.info(f"Skipping restricted folder {folder.full_name}: {e.server_text}")
        result.status = FetchStatus.RESTRICTED
        result.detail = e.server_text
        return result

    logger.debug(
        f"{folder.full_name}: fetched {len(result.messages)} messages "
        f"({result.parse_failures} placeholders)"
    )
    return result


async def fetch_since_uid(
    session: IMAPSession,
    folder: LocalFolder,
    uid: int,
    *,
    token: CancellationToken | None = None,
) -> FetchResult:
    """
    Fetch every message with a UID above uid, newest first.

    Used by the watcher, which tracks UIDs instead of counts.
    """
    if token is not None:
        token.raise_if_cancelled()

    try:
        records = await session.with_open_folder(
            folder.full_name,
            FolderMode.READ_ONLY,
            lambda handle: session.fetch_uids_since(uid),
        )
    except RestrictedAccessError as e:
        logger.info(f"Folder {folder.full_name} is restricted: {e.server_text}")
        return FetchResult(FetchStatus.RESTRICTED, detail=e.server_text)

    uidvalidity = session.current_folder.uidvalidity if session.current_folder else None
    if not records:
        return FetchResult(FetchStatus.UP_TO_DATE, uidvalidity=uidvalidity)

    messages, failures = _to_messages(records, folder, uidvalidity)
    return FetchResult(
        FetchStatus.OK,
        messages=messages,
        parse_failures=failures,
        uidvalidity=uidvalidity,
    )
