# =============================================================================
# IMAP Module
# =============================================================================
# Everything that talks to IMAP servers:
#   - Provider profiles and quirks (hosts, ports, restricted folders)
#   - IMAPSession: connection, folder listing/opening, fetch, IDLE
#   - Folder reconciliation and incremental message fetching
#   - SyncEngine: per-account sync jobs
#   - IdleWatcher: push/poll watching for new mail
#
# This module uses aioimaplib for async IMAP operations.
# =============================================================================

from mailmirror.imap.fetcher import (
    FetchResult,
    FetchStatus,
    compute_window,
    fetch_incremental,
    fetch_since_uid,
)
from mailmirror.imap.folders import FolderPlan, reconcile
from mailmirror.imap.idle import IdleWatcher, WatchMode
from mailmirror.imap.providers import (
    Encryption,
    ProviderQuirks,
    ServerProfile,
    is_restricted_access_error,
    is_stale_handle_error,
    resolve,
    resolve_account,
)
from mailmirror.imap.session import (
    FolderListError,
    FolderMode,
    FolderOpenError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
    IMAPSession,
    IMAPTimeoutError,
    IMAPTLSError,
    OpenFolder,
    RestrictedAccessError,
    SessionState,
    StaleHandleError,
    TLSInfo,
)
from mailmirror.imap.status import StatusBoard
from mailmirror.imap.sync import (
    AccountDisabledError,
    AccountNotFoundError,
    FolderNotFoundError,
    FolderReport,
    MessageNotFoundError,
    MissingCredentialsError,
    SyncEngine,
    SyncError,
    SyncReport,
)

__all__ = [
    # Providers
    "Encryption",
    "ProviderQuirks",
    "ServerProfile",
    "is_restricted_access_error",
    "is_stale_handle_error",
    "resolve",
    "resolve_account",
    # Session
    "IMAPSession",
    "SessionState",
    "FolderMode",
    "OpenFolder",
    "TLSInfo",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPTimeoutError",
    "IMAPTLSError",
    "IMAPAuthenticationError",
    "FolderListError",
    "FolderOpenError",
    "RestrictedAccessError",
    "StaleHandleError",
    # Folders and fetching
    "FolderPlan",
    "reconcile",
    "FetchResult",
    "FetchStatus",
    "compute_window",
    "fetch_incremental",
    "fetch_since_uid",
    # Sync
    "StatusBoard",
    "SyncEngine",
    "SyncReport",
    "FolderReport",
    "SyncError",
    "AccountNotFoundError",
    "AccountDisabledError",
    "MessageNotFoundError",
    "MissingCredentialsError",
    "FolderNotFoundError",
    # Watcher
    "IdleWatcher",
    "WatchMode",
]
