# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# Implements AccountStore, FolderStore and MessageStore on top of SQLite.
#
# It handles:
#   - Converting between domain models and database rows
#   - The dedup invariant (one message per Message-ID per account), enforced
#     by a UNIQUE index and INSERT OR IGNORE
#   - Simple listing and full-text search for consumers of the mirror
#
# All methods are async for non-blocking database access.
# =============================================================================

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING

import aiosqlite

from mailmirror.core import Account, FolderType, LocalFolder, Message, MessageFlags

if TYPE_CHECKING:
    from mailmirror.storage.database import Database
    from mailmirror.storage.protocols import SecretStore

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Repository:
    """
    Data access layer for mailmirror.

    Usage:
        >>> repo = Repository(database, secrets=KeyringSecretStore())
        >>> await repo.save_account(account)
        >>> folders = await repo.get_folders_by_account(account.id)
        >>> inserted = await repo.insert_message(message)

    Attributes:
        db: Database instance for executing queries.
        secrets: Where get_password() looks up credentials.
    """

    def __init__(self, db: "Database", secrets: "SecretStore | None" = None) -> None:
        """
        Initialize the repository.

        Args:
            db: Connected Database instance.
            secrets: Secret store for account passwords.
        """
        self.db = db
        self.secrets = secrets

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def get_all_accounts(self) -> list[Account]:
        async with self.db.conn.execute("SELECT * FROM accounts ORDER BY name") as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_account(row) for row in rows]

    async def get_account_by_id(self, account_id: str) -> Account | None:
        """
        Get an account by ID.

        Args:
            account_id: Primary key of the account (the config name).

        Returns:
            Account if found, None otherwise.
        """
        async with self.db.conn.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_account(row) if row else None

    async def save_account(self, account: Account) -> Account:
        """
        Insert or update an account's configuration.

        The sync outcome columns (last_sync, last_error) are left alone on
        update; only update_sync_status() writes them.
        """
        await self.db.conn.execute(
            """INSERT INTO accounts
               (id, name, email, display_name, imap_host, imap_port, imap_security,
                enabled, sync_enabled)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   name=excluded.name, email=excluded.email,
                   display_name=excluded.display_name, imap_host=excluded.imap_host,
                   imap_port=excluded.imap_port, imap_security=excluded.imap_security,
                   enabled=excluded.enabled, sync_enabled=excluded.sync_enabled""",
            (account.id, account.name, account.email, account.display_name,
             account.imap_host, account.imap_port, account.imap_security,
             int(account.enabled), int(account.sync_enabled))
        )
        await self.db.conn.commit()
        return account

    async def get_password(self, account_id: str) -> str | None:
        """Look up the account's secret in the secret store."""
        if self.secrets is None:
            return None
        account = await self.get_account_by_id(account_id)
        if account is None:
            return None
        return await self.secrets.get_password(account)

    async def update_sync_status(
        self,
        account_id: str,
        last_sync: datetime | None,
        error: str | None,
    ) -> None:
        """
        Record a sync outcome. None for last_sync keeps the old timestamp.
        """
        await self.db.conn.execute(
            "UPDATE accounts SET last_sync = COALESCE(?, last_sync), last_error = ? WHERE id = ?",
            (_iso(last_sync), error, account_id)
        )
        await self.db.conn.commit()

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        """Convert a database row to an Account object."""
        return Account(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            display_name=row["display_name"] or "",
            imap_host=row["imap_host"] or "",
            imap_port=row["imap_port"],
            imap_security=row["imap_security"] or "",
            enabled=bool(row["enabled"]),
            sync_enabled=bool(row["sync_enabled"]),
            last_sync=_from_iso(row["last_sync"]),
            last_error=row["last_error"],
        )

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def get_folders_by_account(self, account_id: str) -> list[LocalFolder]:
        """
        Get all folders for an account, ordered by name.
        """
        async with self.db.conn.execute(
            "SELECT * FROM folders WHERE account_id = ? ORDER BY full_name",
            (account_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_folder(row) for row in rows]

    async def get_folder(self, folder_id: str) -> LocalFolder | None:
        async with self.db.conn.execute(
            "SELECT * FROM folders WHERE id = ?", (folder_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_folder(row) if row else None

    async def insert_folder(self, folder: LocalFolder) -> None:
        await self.db.conn.execute(
            """INSERT INTO folders
               (id, account_id, full_name, display_name, folder_type, message_count,
                unread_count, subscribed, can_hold_messages, parent, delimiter,
                remote_id, uidvalidity, highest_uid, ever_synced, last_sync)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (folder.id, folder.account_id, *self._folder_values(folder))
        )
        await self.db.conn.commit()

    async def update_folder(self, folder: LocalFolder) -> None:
        await self.db.conn.execute(
            """UPDATE folders SET
               full_name=?, display_name=?, folder_type=?, message_count=?,
               unread_count=?, subscribed=?, can_hold_messages=?, parent=?,
               delimiter=?, remote_id=?, uidvalidity=?, highest_uid=?,
               ever_synced=?, last_sync=?
               WHERE id=?""",
            (*self._folder_values(folder), folder.id)
        )
        await self.db.conn.commit()

    async def delete_folder(self, folder_id: str) -> None:
        """
        Delete a folder and all its messages.

        Args:
            folder_id: ID of folder to delete.
        """
        # CASCADE will handle messages
        await self.db.conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
        await self.db.conn.commit()

    @staticmethod
    def _folder_values(folder: LocalFolder) -> tuple:
        return (
            folder.full_name, folder.display_name, folder.folder_type.name.lower(),
            folder.message_count, folder.unread_count, int(folder.subscribed),
            int(folder.can_hold_messages), folder.parent, folder.delimiter,
            folder.remote_id, folder.uidvalidity, folder.highest_uid,
            int(folder.ever_synced), _iso(folder.last_sync),
        )

    def _row_to_folder(self, row: aiosqlite.Row) -> LocalFolder:
        """Convert a database row to a LocalFolder object."""
        return LocalFolder(
            id=row["id"],
            account_id=row["account_id"],
            full_name=row["full_name"],
            display_name=row["display_name"],
            folder_type=FolderType[row["folder_type"].upper()],
            message_count=row["message_count"] or 0,
            unread_count=row["unread_count"] or 0,
            subscribed=bool(row["subscribed"]),
            can_hold_messages=bool(row["can_hold_messages"]),
            parent=row["parent"],
            delimiter=row["delimiter"] or "/",
            remote_id=row["remote_id"],
            uidvalidity=row["uidvalidity"],
            highest_uid=row["highest_uid"] or 0,
            ever_synced=bool(row["ever_synced"]),
            last_sync=_from_iso(row["last_sync"]),
        )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def get_message_count_in_folder(self, folder_id: str) -> int:
        async with self.db.conn.execute(
            "SELECT COUNT(*) FROM messages WHERE folder_id = ?", (folder_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def get_message_by_identity(self, account_id: str, message_id: str) -> Message | None:
        """
        Find a message by its Message-ID within an account.

        Args:
            account_id: Dedup scope.
            message_id: RFC 5322 Message-ID (or synthesized identity).

        Returns:
            Message if found, None otherwise.
        """
        async with self.db.conn.execute(
            "SELECT * FROM messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_message(row) if row else None

    async def insert_message(self, message: Message) -> bool:
        """
        Insert a message unless its Message-ID is already stored.

        Returns:
            True if the message was inserted (message.id is set), False if it
            was a duplicate.
        """
        cursor = await self.db.conn.execute(
            """INSERT OR IGNORE INTO messages
               (account_id, folder_id, uid, message_id, in_reply_to, "references",
                subject, sender, sender_name, recipients, cc, bcc, reply_to,
                date_sent, date_received, flags, body_text, body_html,
                text_from_html, has_attachments, size, parse_failed)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (message.account_id, message.folder_id, message.uid, message.message_id,
             message.in_reply_to, json.dumps(message.references),
             message.subject, message.sender, message.sender_name,
             json.dumps(message.recipients), json.dumps(message.cc),
             json.dumps(message.bcc), json.dumps(message.reply_to),
             _iso(message.date_sent), _iso(message.date_received),
             int(message.flags), message.body_text, message.body_html,
             int(message.text_from_html), int(message.has_attachments),
             message.size, int(message.parse_failed))
        )
        await self.db.conn.commit()
        if cursor.rowcount != 1:
            logger.debug(f"Duplicate message {message.message_id} skipped")
            return False
        message.id = cursor.lastrowid
        return True

    async def mark_read(self, message_id: int) -> None:
        """Set the \\Seen flag on a stored message."""
        await self.db.conn.execute(
            "UPDATE messages SET flags = flags | ? WHERE id = ?",
            (int(MessageFlags.SEEN), message_id)
        )
        await self.db.conn.commit()

    async def delete_message(self, message_id: int) -> None:
        await self.db.conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        await self.db.conn.commit()

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        """Convert a database row to a Message object."""
        return Message(
            id=row["id"],
            account_id=row["account_id"],
            folder_id=row["folder_id"],
            uid=row["uid"],
            message_id=row["message_id"],
            in_reply_to=row["in_reply_to"] or "",
            references=json.loads(row["references"]) if row["references"] else [],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            sender_name=row["sender_name"] or "",
            recipients=json.loads(row["recipients"]) if row["recipients"] else [],
            cc=json.loads(row["cc"]) if row["cc"] else [],
            bcc=json.loads(row["bcc"]) if row["bcc"] else [],
            reply_to=json.loads(row["reply_to"]) if row["reply_to"] else [],
            date_sent=_from_iso(row["date_sent"]),
            date_received=_from_iso(row["date_received"]),
            flags=MessageFlags(row["flags"]),
            body_text=row["body_text"] or "",
            body_html=row["body_html"] or "",
            text_from_html=bool(row["text_from_html"]),
            has_attachments=bool(row["has_attachments"]),
            size=row["size"] or 0,
            parse_failed=bool(row["parse_failed"]),
        )
