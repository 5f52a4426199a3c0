# =============================================================================
# mailmirror Core Module
# =============================================================================
# Core domain models. These are pure Python dataclasses with no external
# dependencies, so they can be imported anywhere without causing circular
# imports.
#
#   - Account: A mirrored email account
#   - RemoteFolder / LocalFolder: Server view and persisted view of a mailbox
#   - Message: An individual email message
#   - SyncState / SyncStatus / FetchCursor / CancellationToken: sync state
# =============================================================================

from mailmirror.core.account import Account
from mailmirror.core.folder import (
    FolderType,
    LocalFolder,
    RemoteFolder,
    detect_type_from_name,
)
from mailmirror.core.message import Message, MessageFlags
from mailmirror.core.state import (
    CancellationToken,
    FetchCursor,
    SyncState,
    SyncStatus,
)

__all__ = [
    "Account",
    "FolderType",
    "LocalFolder",
    "RemoteFolder",
    "detect_type_from_name",
    "Message",
    "MessageFlags",
    "CancellationToken",
    "FetchCursor",
    "SyncState",
    "SyncStatus",
]
