# =============================================================================
# Store Protocols
# =============================================================================
# The persistence seams the sync engine and the watcher depend on.
#
# Repository (aiosqlite) implements the three data stores and
# KeyringSecretStore implements SecretStore. Tests use in-memory fakes.
# =============================================================================

from datetime import datetime
from typing import Protocol, runtime_checkable

from mailmirror.core import Account, LocalFolder, Message


@runtime_checkable
class AccountStore(Protocol):
    """Accounts and their sync bookkeeping."""

    async def get_account_by_id(self, account_id: str) -> Account | None:
        ...

    async def get_password(self, account_id: str) -> str | None:
        """Secret for the account, delegated to a SecretStore."""
        ...

    async def update_sync_status(
        self,
        account_id: str,
        last_sync: datetime | None,
        error: str | None,
    ) -> None:
        """
        Record the outcome of a sync run.

        A None last_sync keeps the previous timestamp; a None error clears
        the stored error.
        """
        ...


@runtime_checkable
class FolderStore(Protocol):
    """Local folder mirror."""

    async def get_folders_by_account(self, account_id: str) -> list[LocalFolder]:
        ...

    async def insert_folder(self, folder: LocalFolder) -> None:
        ...

    async def update_folder(self, folder: LocalFolder) -> None:
        ...

    async def delete_folder(self, folder_id: str) -> None:
        """Delete a folder together with its messages."""
        ...


@runtime_checkable
class MessageStore(Protocol):
    """Local message mirror. Message-IDs are unique per account."""

    async def get_message_count_in_folder(self, folder_id: str) -> int:
        ...

    async def get_message_by_identity(self, account_id: str, message_id: str) -> Message | None:
        ...

    async def insert_message(self, message: Message) -> bool:
        """
        Store a message.

        Returns:
            False when a message with the same Message-ID already exists for
            the account; nothing is written in that case.
        """
        ...

    async def mark_read(self, message_id: int) -> None:
        ...

    async def delete_message(self, message_id: int) -> None:
        ...


@runtime_checkable
class SecretStore(Protocol):
    """Secure credential storage. The engine never persists secrets."""

    async def get_password(self, account: Account) -> str | None:
        ...

    async def set_password(self, account: Account, password: str) -> None:
        ...
