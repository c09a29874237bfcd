# =============================================================================
# Message Store
# =============================================================================
# Owns the aiosqlite connection of the local message store and keeps its
# schema current.
#
# Tables:
#   - messages: one row per (account_id, message_id)
#
# The schema version lives in SQLite's own "PRAGMA user_version" slot, so
# there is no bookkeeping table. The UNIQUE(account_id, message_id)
# constraint makes upserts atomic per key: the repository issues
# INSERT ... ON CONFLICT instead of a lookup followed by a write.
# =============================================================================

import asyncio
import logging
from pathlib import Path

import aiosqlite

from mailsync.config import Config

logger = logging.getLogger(__name__)


# Bump together with a new entry in _MIGRATIONS
SCHEMA_VERSION = 1

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT = 5.0

_MESSAGES_TABLE = """
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    uid INTEGER,
    subject TEXT,           -- encrypted
    text_body TEXT,         -- encrypted
    html_body TEXT,         -- encrypted
    from_address TEXT NOT NULL,
    from_name TEXT,
    to_addresses TEXT,      -- JSON array
    cc TEXT,                -- JSON array
    bcc TEXT,               -- JSON array
    sent_at TEXT,
    received_at TEXT,
    folder_label TEXT NOT NULL,
    standard_folder TEXT NOT NULL,
    flags INTEGER NOT NULL DEFAULT 0,
    thread_key TEXT,
    in_reply_to TEXT,
    "references" TEXT,      -- JSON array of Message-IDs
    attachments TEXT,       -- JSON array of attachment metadata
    size_bytes INTEGER NOT NULL DEFAULT 0,
    revision INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(account_id, message_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_bucket ON messages(account_id, standard_folder);
CREATE INDEX IF NOT EXISTS idx_messages_label ON messages(account_id, folder_label);
CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(account_id, thread_key);
"""

# version -> script that brings the previous version up to it
_MIGRATIONS = {
    1: _MESSAGES_TABLE,
}


class Database:
    """
    Connection holder for the message store.

    Usage:
        >>> db = Database()
        >>> await db.connect()
        >>> async with db.conn.execute("SELECT COUNT(*) FROM messages") as cursor:
        ...     (count,) = await cursor.fetchone()
        >>> await db.close()

    Attributes:
        db_path: SQLite file. Defaults to mailsync.db in the XDG data dir.
        write_lock: Held around every write and its commit or rollback, so
            tasks sharing the connection never settle each other's work.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None
        self.write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Open (creating if needed) the store and migrate it to SCHEMA_VERSION.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT)

        # WAL lets readers proceed while a sync is writing
        await self._connection.execute("PRAGMA journal_mode = WAL")
        await self._migrate()
        logger.debug(f"Message store open at {self.db_path}")

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        The open connection.

        Raises:
            RuntimeError: If connect() has not been awaited.
        """
        if self._connection is None:
            raise RuntimeError("Message store is not open; await connect() first")
        return self._connection

    async def schema_version(self) -> int:
        async with self.conn.execute("PRAGMA user_version") as cursor:
            (version,) = await cursor.fetchone()
        return version

    async def _migrate(self) -> None:
        """Apply every migration newer than the stored user_version."""
        current = await self.schema_version()
        if current > SCHEMA_VERSION:
            raise RuntimeError(
                f"{self.db_path} has schema version {current}, "
                f"newer than this mailsync ({SCHEMA_VERSION})"
            )

        for version in range(current + 1, SCHEMA_VERSION + 1):
            logger.info(f"Migrating message store to schema version {version}")
            await self.conn.executescript(_MIGRATIONS[version])
            # PRAGMA does not take bound parameters
            await self.conn.execute(f"PRAGMA user_version = {version}")
            await self.conn.commit()
