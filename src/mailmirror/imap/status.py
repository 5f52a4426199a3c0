# =============================================================================
# Sync Status Board
# =============================================================================
# The per-account status map observed by the UI and the notification layer.
#
# Jobs publish, everyone else reads. Readers may live on other threads (a UI
# toolkit's main loop), so access is guarded by a threading lock rather than
# an asyncio one. Listeners are called after the lock is released.
# =============================================================================

import logging
import threading
from typing import Callable

from mailmirror.core import SyncState, SyncStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, SyncStatus], None]


class StatusBoard:
    """
    Thread-safe map of account id to SyncStatus.

    Usage:
        >>> board = StatusBoard()
        >>> board.publish("work", SyncState.SYNCING, detail="INBOX")
        >>> board.get("work").state
        <SyncState.SYNCING: 3>
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: dict[str, SyncStatus] = {}
        self._listeners: list[StatusListener] = []

    def publish(
        self,
        account_id: str,
        state: SyncState,
        *,
        error: str | None = None,
        detail: str = "",
    ) -> SyncStatus:
        """Record a new status for an account and notify listeners."""
        status = SyncStatus(state=state, error=error, detail=detail)
        with self._lock:
            self._statuses[account_id] = status
            listeners = list(self._listeners)

        logger.debug(f"Status {account_id}: {state.name}{f' ({detail})' if detail else ''}")
        for listener in listeners:
            try:
                listener(account_id, status)
            except Exception:
                logger.exception(f"Status listener failed for {account_id}")
        return status

    def get(self, account_id: str) -> SyncStatus:
        """Current status of an account; IDLE if nothing was published."""
        with self._lock:
            return self._statuses.get(account_id) or SyncStatus(SyncState.IDLE)

    def snapshot(self) -> dict[str, SyncStatus]:
        """Copy of the whole map."""
        with self._lock:
            return dict(self._statuses)

    def add_listener(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
