# =============================================================================
# Sync Service
# =============================================================================
# The caller-facing surface of the engine. Starts sync sessions as
# background asyncio tasks and answers progress queries, plus a few
# read-only folder helpers that share the same connection pool.
#
# start_sync() returns immediately with a session id. The session then
# runs to completion on its own; every exception raised inside it is
# converted into session state, so nothing escapes the background task.
# =============================================================================

import asyncio
import logging
import uuid
from dataclasses import dataclass

from mailsync.core import Account, FolderDescriptor, SyncSession
from mailsync.folders import FolderRecommendation, detect_spam_folders, folder_recommendations
from mailsync.imap import (
    ConnectionManager,
    ConnectionStatus,
    ConnectionTestResult,
    MessageNormalizer,
    ProgressTracker,
    SyncOptions,
    SyncOrchestrator,
)
from mailsync.storage import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartSyncResponse:
    """
    Attributes:
        session_id: Session to poll with get_progress().
        already_running: True if the account was already syncing, in which
                         case session_id is the existing session.
    """
    session_id: str
    already_running: bool = False


class SyncService:
    """
    Starts, tracks and cancels sync sessions.

    Usage:
        >>> service = SyncService(ConnectionManager(), ProgressTracker(), repo)
        >>> response = service.start_sync(account, SyncOptions(limit=100))
        >>> session = await service.wait(response.session_id)
        >>> session.status
        <SyncStatus.COMPLETED: 'completed'>
        >>> await service.shutdown()
    """

    def __init__(
        self,
        connections: ConnectionManager,
        tracker: ProgressTracker,
        repository: Repository,
        normalizer: MessageNormalizer | None = None,
    ) -> None:
        self.connections = connections
        self.tracker = tracker
        self.repository = repository
        self.orchestrator = SyncOrchestrator(connections, tracker, repository, normalizer)
        self._tasks: dict[str, asyncio.Task] = {}

    # =========================================================================
    # Sessions
    # =========================================================================

    def start_sync(self, account: Account, options: SyncOptions | None = None) -> StartSyncResponse:
        """
        Start a background sync of the account.

        If the account already has an active session, no new one is
        created and the existing session id is returned.

        Must be called from within a running event loop.
        """
        active = self.tracker.active_session(account.id)
        if active is not None:
            logger.info(f"Sync already running for {account.id}: {active.session_id}")
            return StartSyncResponse(session_id=active.session_id, already_running=True)

        session_id = uuid.uuid4().hex
        self.tracker.start(session_id, account.id)

        task = asyncio.create_task(
            self._run(session_id, account, options or SyncOptions()),
            name=f"sync-{account.id}-{session_id[:8]}",
        )
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))

        logger.info(f"Started sync session {session_id} for {account.id}")
        return StartSyncResponse(session_id=session_id)

    async def _run(self, session_id: str, account: Account, options: SyncOptions) -> None:
        """Session body. Turns every failure into session state."""
        try:
            await self.orchestrator.run(session_id, account, options)
        except asyncio.CancelledError:
            self.tracker.fail(session_id, "Sync task was cancelled")
            raise
        except Exception as e:
            logger.error(f"Sync session {session_id} crashed: {e}", exc_info=True)
            self.tracker.fail(session_id, f"Unexpected error: {e}")

    def get_progress(self, session_id: str) -> SyncSession | None:
        """Snapshot of the session, or None if unknown or already evicted."""
        return self.tracker.get(session_id)

    def cancel_sync(self, session_id: str) -> None:
        """Ask a running session to stop at the next folder or message."""
        self.tracker.cancel(session_id)

    async def wait(self, session_id: str) -> SyncSession | None:
        """
        Wait for a session to finish.

        Returns:
            Final snapshot, or None if the session is unknown.
        """
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait({task})
        return self.tracker.get(session_id)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """
        Cancel running sessions, close every pooled connection and forget
        all sessions.

        Sessions are first asked to stop cooperatively; tasks still running
        after `timeout` seconds are cancelled outright.
        """
        tasks = dict(self._tasks)
        for session_id in tasks:
            self.tracker.cancel(session_id)

        if tasks:
            _, pending = await asyncio.wait(tasks.values(), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Force-cancelled {len(pending)} sync sessions")
                await asyncio.gather(*pending, return_exceptions=True)

        await self.connections.close_all()
        self.tracker.clear()

    # =========================================================================
    # Connections and Folders
    # =========================================================================

    async def test_connection(self, account: Account) -> ConnectionTestResult:
        """Probe the account's server and credentials without touching the pool."""
        return await self.connections.test_connection(account)

    def connection_status(self, account_id: str) -> ConnectionStatus:
        return self.connections.connection_status(account_id)

    async def list_folders(self, account: Account) -> list[FolderDescriptor]:
        """
        List the account's folders on the pooled connection.

        Raises:
            IMAPError: If the server cannot be reached or rejects LIST.
        """
        async with self.connections.lease(account) as client:
            return await client.list_folders()

    async def folder_recommendations(self, account: Account) -> list[FolderRecommendation]:
        """Per-folder sync recommendation for the account."""
        return folder_recommendations(await self.list_folders(account))

    async def detect_spam_folders(self, account: Account) -> list[str]:
        """Names of the account's spam folders."""
        return detect_spam_folders(await self.list_folders(account))
