# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# The storage primitives the sync engine consumes:
#
#   - find_by_key(account_id, message_id)
#   - upsert(account_id, message)            atomic per key
#   - update_mutable(...)                    flags + folder assignment only
#   - count_grouped_by(account_id, dims)     for previews and stats
#   - delete_all(account_id)
#   - relabel(...)                           for folder label migration
#
# Subject and bodies are encrypted on the way in and decrypted on the way
# out when a FieldCipher is configured.
# =============================================================================

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable

import aiosqlite

from mailsync.core import AttachmentMeta, Message, MessageFlags, StandardFolder

if TYPE_CHECKING:
    from mailsync.security import FieldCipher
    from mailsync.storage.database import Database

logger = logging.getLogger(__name__)


# Columns that count_grouped_by() may group on
GROUPABLE_DIMENSIONS = frozenset({"folder_label", "standard_folder", "thread_key", "from_address"})

_COLUMNS = (
    "message_id", "uid", "subject", "text_body", "html_body",
    "from_address", "from_name", "to_addresses", "cc", "bcc",
    "sent_at", "received_at", "folder_label", "standard_folder", "flags",
    "thread_key", "in_reply_to", '"references"', "attachments", "size_bytes",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM messages"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Repository:
    """
    Data access layer for synced messages.

    Usage:
        >>> repo = Repository(database, cipher)
        >>> created = await repo.upsert("personal", message)
        >>> stored = await repo.find_by_key("personal", message.message_id)

    Attributes:
        db: Database instance for executing queries.
        cipher: Optional field cipher for subject and bodies.
    """

    def __init__(self, db: "Database", cipher: "FieldCipher | None" = None) -> None:
        """
        Initialize the repository.

        Args:
            db: Connected Database instance.
            cipher: Encrypts subject/body fields at rest when given.
        """
        self.db = db
        self.cipher = cipher

    # -------------------------------------------------------------------------
    # Field encryption
    # -------------------------------------------------------------------------

    def _encrypt(self, value: str) -> str:
        return self.cipher.encrypt_field(value) if self.cipher else value

    def _decrypt(self, value: str | None) -> str:
        if value is None:
            return ""
        return self.cipher.decrypt_field(value) if self.cipher else value

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def find_by_key(self, account_id: str, message_id: str) -> Message | None:
        """
        Look up a stored message by its dedup key.

        Args:
            account_id: Owning account.
            message_id: Normalized Message-ID.

        Returns:
            Message if found, None otherwise.
        """
        async with self.db.conn.execute(
            f"{_SELECT} WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_message(row) if row else None

    async def upsert(self, account_id: str, message: Message) -> bool:
        """
        Insert a message, or refresh the mutable fields of an existing one.

        Runs as a single INSERT ... ON CONFLICT statement, so two concurrent
        upserts of the same key can never produce two rows.

        Args:
            account_id: Owning account.
            message: Normalized message.

        Returns:
            True if a new row was created, False if an existing row was updated.

        Raises:
            PersistenceConflict: If the row violates a constraint other than
                                 the dedup key.
        """
        params = (
            account_id,
            message.message_id,
            message.uid,
            self._encrypt(message.subject),
            self._encrypt(message.text_body),
            self._encrypt(message.html_body),
            message.from_address,
            message.from_name,
            json.dumps(message.to),
            json.dumps(message.cc),
            json.dumps(message.bcc),
            _iso(message.sent_at),
            _iso(message.received_at),
            message.folder_label,
            message.standard_folder.value,
            int(message.flags),
            message.thread_key,
            message.in_reply_to,
            json.dumps(message.references),
            json.dumps([asdict(a) for a in message.attachments]),
            message.size_bytes,
        )

        async with self.db.write_lock:
            try:
                async with self.db.conn.execute(
                    """INSERT INTO messages
                       (account_id, message_id, uid, subject, text_body, html_body,
                        from_address, from_name, to_addresses, cc, bcc,
                        sent_at, received_at, folder_label, standard_folder, flags,
                        thread_key, in_reply_to, "references", attachments, size_bytes)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(account_id, message_id) DO UPDATE SET
                           flags = excluded.flags,
                           folder_label = excluded.folder_label,
                           standard_folder = excluded.standard_folder,
                           revision = messages.revision + 1,
                           updated_at = CURRENT_TIMESTAMP
                       RETURNING revision""",
                    params,
                ) as cursor:
                    row = await cursor.fetchone()
                await self.db.conn.commit()
            except aiosqlite.IntegrityError as e:
                # Nothing else can be pending while the lock is held
                await self.db.conn.rollback()
                raise PersistenceConflict(
                    f"Could not store {message.message_id} for {account_id}: {e}"
                ) from e

        return row is not None and row[0] == 0

    async def update_mutable(
        self,
        account_id: str,
        message_id: str,
        *,
        flags: MessageFlags,
        folder_label: str,
        standard_folder: StandardFolder,
    ) -> bool:
        """
        Refresh the flags and folder assignment of a stored message.

        Returns:
            True if a row was updated.
        """
        async with self.db.write_lock:
            cursor = await self.db.conn.execute(
                """UPDATE messages SET
                   flags = ?, folder_label = ?, standard_folder = ?,
                   revision = revision + 1, updated_at = CURRENT_TIMESTAMP
                   WHERE account_id = ? AND message_id = ?""",
                (int(flags), folder_label, standard_folder.value, account_id, message_id),
            )
            await self.db.conn.commit()
        return cursor.rowcount > 0

    async def count(self, account_id: str) -> int:
        """Number of stored messages for an account."""
        async with self.db.conn.execute(
            "SELECT COUNT(*) FROM messages WHERE account_id = ?", (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def count_grouped_by(
        self,
        account_id: str,
        dimensions: Iterable[str],
    ) -> list[dict[str, Any]]:
        """
        Count stored messages grouped by one or more columns.

        Args:
            account_id: Owning account.
            dimensions: Column names, each from GROUPABLE_DIMENSIONS.

        Returns:
            One dict per group: the dimension values plus "count",
            largest groups first.

        Raises:
            ValueError: If a dimension is not groupable.
        """
        dims = list(dimensions)
        if not dims:
            raise ValueError("At least one dimension is required")
        bad = [d for d in dims if d not in GROUPABLE_DIMENSIONS]
        if bad:
            raise ValueError(f"Cannot group by: {', '.join(bad)}")

        columns = ", ".join(dims)
        async with self.db.conn.execute(
            f"""SELECT {columns}, COUNT(*) FROM messages
                WHERE account_id = ?
                GROUP BY {columns}
                ORDER BY COUNT(*) DESC, {columns}""",
            (account_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        results = []
        for row in rows:
            group = dict(zip(dims, row[:-1]))
            group["count"] = row[-1]
            results.append(group)
        return results

    async def delete_all(self, account_id: str) -> int:
        """
        Delete every stored message for an account.

        Returns:
            Number of rows deleted.
        """
        async with self.db.write_lock:
            cursor = await self.db.conn.execute(
                "DELETE FROM messages WHERE account_id = ?", (account_id,)
            )
            await self.db.conn.commit()
        logger.info(f"Deleted {cursor.rowcount} stored messages for {account_id}")
        return cursor.rowcount

    async def relabel(
        self,
        account_id: str,
        folder_label: str,
        standard_folder: StandardFolder,
    ) -> int:
        """
        Reassign the storage bucket of every message from one folder label.

        Returns:
            Number of rows changed.
        """
        async with self.db.write_lock:
            cursor = await self.db.conn.execute(
                """UPDATE messages SET standard_folder = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE account_id = ? AND folder_label = ? AND standard_folder != ?""",
                (standard_folder.value, account_id, folder_label, standard_folder.value),
            )
            await self.db.conn.commit()
        return cursor.rowcount

    def _row_to_message(self, row) -> Message:
        """Convert a database row to a Message object."""
        return Message(
            message_id=row[0],
            uid=row[1],
            subject=self._decrypt(row[2]),
            text_body=self._decrypt(row[3]),
            html_body=self._decrypt(row[4]),
            from_address=row[5],
            from_name=row[6] or "",
            to=json.loads(row[7]) if row[7] else [],
            cc=json.loads(row[8]) if row[8] else [],
            bcc=json.loads(row[9]) if row[9] else [],
            sent_at=_from_iso(row[10]),
            received_at=_from_iso(row[11]),
            folder_label=row[12],
            standard_folder=StandardFolder(row[13]),
            flags=MessageFlags(row[14]),
            thread_key=row[15],
            in_reply_to=row[16] or "",
            references=json.loads(row[17]) if row[17] else [],
            attachments=[AttachmentMeta(**a) for a in json.loads(row[18] or "[]")],
            size_bytes=row[19],
        )


# =============================================================================
# Exceptions
# =============================================================================

class PersistenceConflict(Exception):
    """Raised when a write conflicts with existing data. Treated as a skip."""
    pass
