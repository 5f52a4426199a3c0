# =============================================================================
# Sync State Primitives
# =============================================================================
# Small value types shared by the sync engine and the watcher:
#   - SyncState / SyncStatus: the per-account status published to observers
#   - FetchCursor: per-folder watermark bounding incremental fetch windows
#   - CancellationToken: cooperative cancellation checked between phases
# =============================================================================

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto


class SyncState(Enum):
    """Per-account sync state. Overwritten on every transition."""
    IDLE = auto()           # Nothing running
    CONNECTING = auto()     # Resolving profile, connecting, authenticating
    SYNCING = auto()        # Reconciling folders / fetching messages
    COMPLETED = auto()      # Last run finished successfully
    ERROR = auto()          # Last run failed, see SyncStatus.error


@dataclass(frozen=True)
class SyncStatus:
    """
    Snapshot of one account's sync state.

    Attributes:
        state: Current state.
        error: Error text when state is ERROR.
        detail: Optional progress hint (e.g. the folder being synced).
        updated_at: When this status was published.
    """
    state: SyncState = SyncState.IDLE
    error: str | None = None
    detail: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        """True while a job is connecting or syncing."""
        return self.state in (SyncState.CONNECTING, SyncState.SYNCING)


@dataclass
class FetchCursor:
    """
    Per-folder watermark.

    UIDs are only comparable within one UIDVALIDITY epoch, so the cursor is
    reset whenever the server reports a different epoch.

    Attributes:
        highest_uid: Highest UID observed so far (0 = unknown).
        uidvalidity: Epoch the UID belongs to.
        message_count: Last known message count, used by polling.
    """
    highest_uid: int = 0
    uidvalidity: int | None = None
    message_count: int = 0

    def observe_epoch(self, uidvalidity: int | None) -> bool:
        """
        Record the server's current UIDVALIDITY.

        Returns:
            True if the epoch changed and the cursor was reset.
        """
        if uidvalidity is None:
            return False
        if self.uidvalidity is not None and self.uidvalidity != uidvalidity:
            self.highest_uid = 0
            self.uidvalidity = uidvalidity
            return True
        self.uidvalidity = uidvalidity
        return False

    def advance(self, uid: int) -> None:
        """Move the watermark forward; it never moves backwards."""
        if uid > self.highest_uid:
            self.highest_uid = uid


class CancellationToken:
    """
    Cooperative cancellation flag passed through every sync phase.

    Checked before each folder and each fetch batch. Task cancellation is
    used alongside it so that blocking network awaits are interrupted too.
    """

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            asyncio.CancelledError: If cancel() has been called.
        """
        if self._cancelled:
            raise asyncio.CancelledError("sync job cancelled")
