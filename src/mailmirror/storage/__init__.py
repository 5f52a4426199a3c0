# =============================================================================
# Storage Module
# =============================================================================
# Persistence for the mirror.
#
# Provides:
#   - Store protocols the sync engine depends on
#   - SQLite reference implementation (aiosqlite, WAL)
#   - Keyring-backed secret store
#
# The database is stored in the XDG data directory
# (~/.local/share/mailmirror/).
# =============================================================================

from mailmirror.storage.database import Database
from mailmirror.storage.protocols import AccountStore, FolderStore, MessageStore, SecretStore
from mailmirror.storage.repository import Repository
from mailmirror.storage.secrets import KeyringSecretStore, SecretStoreError

__all__ = [
    "AccountStore",
    "Database",
    "FolderStore",
    "KeyringSecretStore",
    "MessageStore",
    "Repository",
    "SecretStore",
    "SecretStoreError",
]
