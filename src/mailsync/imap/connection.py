# =============================================================================
# Connection Manager
# =============================================================================
# Owns the pool of IMAP connections: at most one pooled connection per
# account, reused across operations and sync sessions.
#
# Rules:
#   - A pooled connection is reused only while it is authenticated and has
#     not sat idle longer than the account's idle_timeout.
#   - IMAP allows one command at a time, so every use of the pooled
#     connection goes through lease(), which holds a per-account lock.
#   - A connection-level failure during a lease evicts the entry; a
#     FolderOpenError does not, since the link is still fine.
#   - Parallel folder tasks never share the pooled connection. They open
#     dedicated ones that are closed when the task ends.
#   - test_connection() never touches the pool.
# =============================================================================

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from mailsync.core import Account
from mailsync.imap.client import FolderOpenError, IMAPClient, IMAPError

logger = logging.getLogger(__name__)


ClientFactory = Callable[[Account], IMAPClient]


@dataclass
class _PoolEntry:
    client: IMAPClient
    last_used: float


@dataclass(frozen=True)
class ConnectionTestResult:
    """
    Outcome of a connectivity probe.

    Truthy when the probe succeeded, so it can be used as a plain bool.
    """
    success: bool
    message: str

    def __bool__(self) -> bool:
        return self.success


@dataclass(frozen=True)
class ConnectionStatus:
    """Snapshot of one account's pooled connection."""
    account_id: str
    connected: bool
    in_use: bool
    idle_seconds: float | None


class ConnectionManager:
    """
    Registry of pooled IMAP connections, one per account.

    Usage:
        >>> manager = ConnectionManager()
        >>> async with manager.lease(account) as client:
        ...     folders = await client.list_folders()
        >>> await manager.close_all()

    Attributes:
        client_factory: Builds an unconnected IMAPClient for an account.
    """

    def __init__(self, client_factory: ClientFactory = IMAPClient) -> None:
        self.client_factory = client_factory
        self._entries: dict[str, _PoolEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Pooled Connections
    # =========================================================================

    async def acquire(self, account: Account) -> IMAPClient:
        """
        Return the account's live pooled connection, opening one if needed.

        The caller must not issue commands on the returned client while a
        lease on the same account may be active; prefer lease().

        Raises:
            IMAPConnectionError: If a new connection cannot be opened.
        """
        async with self._lock_for(account.id):
            return await self._acquire_locked(account)

    async def _acquire_locked(self, account: Account) -> IMAPClient:
        entry = self._entries.get(account.id)
        now = time.monotonic()

        if entry is not None:
            idle = now - entry.last_used
            if entry.client.is_connected and idle <= account.idle_timeout:
                entry.last_used = now
                return entry.client
            logger.info(
                f"Replacing stale connection for {account.id} "
                f"(connected={entry.client.is_connected}, idle={idle:.0f}s)"
            )
            await self._evict(account.id)

        client = self.client_factory(account)
        await client.connect()
        self._entries[account.id] = _PoolEntry(client=client, last_used=time.monotonic())
        logger.debug(f"Pooled new connection for {account.id}")
        return client

    @asynccontextmanager
    async def lease(self, account: Account) -> AsyncIterator[IMAPClient]:
        """
        Exclusive use of the account's pooled connection.

        Commands issued inside the block are serialized against every other
        lease on the same account. An IMAPError other than FolderOpenError
        escaping the block evicts the connection before re-raising.

        Raises:
            IMAPConnectionError: If no connection can be established.
        """
        async with self._lock_for(account.id):
            client = await self._acquire_locked(account)
            try:
                yield client
            except FolderOpenError:
                raise
            except IMAPError as e:
                logger.warning(f"Evicting connection for {account.id} after error: {e}")
                await self._evict(account.id, client)
                raise
            finally:
                entry = self._entries.get(account.id)
                if entry is not None and entry.client is client:
                    entry.last_used = time.monotonic()

    async def release(self, account_id: str) -> None:
        """Close and forget the account's pooled connection, if any."""
        async with self._lock_for(account_id):
            await self._evict(account_id)

    async def _evict(self, account_id: str, client: IMAPClient | None = None) -> None:
        """Drop the pool entry (only if it still holds `client`, when given)."""
        entry = self._entries.get(account_id)
        if entry is None or (client is not None and entry.client is not client):
            return
        del self._entries[account_id]
        await entry.client.disconnect()

    async def close_all(self) -> None:
        """Disconnect every pooled connection."""
        entries = list(self._entries.items())
        self._entries.clear()
        for account_id, entry in entries:
            logger.debug(f"Closing connection for {account_id}")
            await entry.client.disconnect()

    def connection_status(self, account_id: str) -> ConnectionStatus:
        """Report whether the account has a live pooled connection."""
        entry = self._entries.get(account_id)
        lock = self._locks.get(account_id)
        return ConnectionStatus(
            account_id=account_id,
            connected=entry is not None and entry.client.is_connected,
            in_use=lock is not None and lock.locked(),
            idle_seconds=time.monotonic() - entry.last_used if entry else None,
        )

    @property
    def active_count(self) -> int:
        """Number of pooled connections that are currently live."""
        return sum(1 for entry in self._entries.values() if entry.client.is_connected)

    # =========================================================================
    # Unpooled Connections
    # =========================================================================

    async def open_dedicated(self, account: Account) -> IMAPClient:
        """
        Open a fresh connection outside the pool. The caller disconnects it.

        Raises:
            IMAPConnectionError: If the connection cannot be established.
        """
        client = self.client_factory(account)
        await client.connect()
        return client

    @asynccontextmanager
    async def dedicated(self, account: Account) -> AsyncIterator[IMAPClient]:
        """Context manager around open_dedicated() that always disconnects."""
        client = await self.open_dedicated(account)
        try:
            yield client
        finally:
            await client.disconnect()

    async def test_connection(self, account: Account) -> ConnectionTestResult:
        """
        Open, authenticate and close a throwaway connection.

        Never pooled, so it cannot disturb a running sync.
        """
        try:
            async with self.dedicated(account):
                pass
        except IMAPError as e:
            logger.info(f"Connection test failed for {account.id}: {e}")
            return ConnectionTestResult(success=False, message=str(e))
        return ConnectionTestResult(success=True, message="Connection successful")
