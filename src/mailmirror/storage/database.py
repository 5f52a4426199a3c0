# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite database connection and schema.
#
# Schema overview:
#   - accounts: Configured accounts plus last sync outcome
#   - folders: Local folder mirror, unique per (account, full name)
#   - messages: Mirrored messages, unique per (account, Message-ID)
#
# Uses aiosqlite for async operations, with WAL mode for better
# concurrent performance.
# =============================================================================

import logging
from pathlib import Path

import aiosqlite

from mailmirror.config import Config

logger = logging.getLogger(__name__)

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Accounts (mirrored from the config file)
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    display_name TEXT,
    imap_host TEXT NOT NULL DEFAULT '',
    imap_port INTEGER,
    imap_security TEXT NOT NULL DEFAULT '',
    enabled INTEGER NOT NULL DEFAULT 1,
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    last_sync TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- Local folder mirror
CREATE TABLE IF NOT EXISTS folders (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    full_name TEXT NOT NULL,
    display_name TEXT NOT NULL,
    folder_type TEXT NOT NULL DEFAULT 'custom',
    message_count INTEGER NOT NULL DEFAULT 0,
    unread_count INTEGER NOT NULL DEFAULT 0,
    subscribed INTEGER NOT NULL DEFAULT 1,
    can_hold_messages INTEGER NOT NULL DEFAULT 1,
    parent TEXT,
    delimiter TEXT DEFAULT '/',
    remote_id TEXT,
    uidvalidity INTEGER,
    highest_uid INTEGER NOT NULL DEFAULT 0,
    ever_synced INTEGER NOT NULL DEFAULT 0,
    last_sync TEXT,
    UNIQUE(account_id, full_name)
);

-- Mirrored messages
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    folder_id TEXT NOT NULL REFERENCES folders(id) ON DELETE CASCADE,
    uid INTEGER NOT NULL,
    message_id TEXT NOT NULL,
    in_reply_to TEXT,
    "references" TEXT,  -- JSON array of Message-IDs
    subject TEXT,
    sender TEXT,
    sender_name TEXT,
    recipients TEXT,    -- JSON array
    cc TEXT,            -- JSON array
    bcc TEXT,           -- JSON array
    reply_to TEXT,      -- JSON array
    date_sent TEXT,
    date_received TEXT,
    flags INTEGER NOT NULL DEFAULT 0,
    body_text TEXT,
    body_html TEXT,
    text_from_html INTEGER NOT NULL DEFAULT 0,
    has_attachments INTEGER NOT NULL DEFAULT 0,
    size INTEGER NOT NULL DEFAULT 0,
    parse_failed INTEGER NOT NULL DEFAULT 0,
    UNIQUE(account_id, message_id)
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(folder_id);
CREATE INDEX IF NOT EXISTS idx_folders_account ON folders(account_id);
"""


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database()
        >>> await db.connect()
        >>> async with db.conn.execute("SELECT ...") as cursor:
        ...     rows = await cursor.fetchall()
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Enable foreign keys (off by default in SQLite)
        await self._connection.execute("PRAGMA foreign_keys = ON")

        # Enable WAL mode for better concurrent performance
        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()
        logger.debug(f"Database ready at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def _init_schema(self) -> None:
        """Create tables if they don't exist, run migrations if needed."""
        try:
            async with self.conn.execute("SELECT version FROM schema_version") as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            logger.info(f"Creating database schema v{SCHEMA_VERSION}")
            await self.conn.executescript(SCHEMA)
            await self.conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,)
            )
            await self.conn.commit()
