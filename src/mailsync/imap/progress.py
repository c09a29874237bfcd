# =============================================================================
# Progress Tracker
# =============================================================================
# In-memory registry of sync sessions. The orchestrator writes to it; API
# callers read from it (polling get(), or subscribing to a queue that
# receives a snapshot on every change).
#
# Guarantees:
#   - At most one active session per account.
#   - Counter increments happen inside a single synchronous method call,
#     so concurrent folder tasks can never lose an update.
#   - COMPLETED and ERROR are final; later writes are ignored.
#   - Terminal sessions stay queryable for a grace window, then vanish.
# =============================================================================

import asyncio
import logging
from datetime import datetime
from typing import Any

from mailsync.core import MultiFolderResult, SyncSession, SyncStatus

logger = logging.getLogger(__name__)


# Fields callers may change through update()
_UPDATABLE_FIELDS = frozenset({
    "status",
    "folders_planned",
    "folders_done",
    "messages_planned",
    "messages_done",
    "current_folder",
    "message",
})

# Snapshots a subscriber may fall behind by; older ones are dropped first
SUBSCRIBER_BACKLOG = 100


class ProgressTracker:
    """
    Tracks live sync sessions and pushes snapshots to subscribers.

    Usage:
        >>> tracker = ProgressTracker()
        >>> tracker.start("abc", "personal")
        >>> tracker.update("abc", status=SyncStatus.SYNCING, folders_planned=3)
        >>> tracker.advance("abc", messages=1)
        >>> tracker.complete("abc", "Synced 3 folders")

    Attributes:
        success_grace: Seconds a completed session stays queryable.
        error_grace: Seconds a failed session stays queryable.
    """

    def __init__(self, success_grace: float = 30.0, error_grace: float = 60.0) -> None:
        self.success_grace = success_grace
        self.error_grace = error_grace
        self._sessions: dict[str, SyncSession] = {}
        self._active_by_account: dict[str, str] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    # =========================================================================
    # Session Lifecycle
    # =========================================================================

    def start(self, session_id: str, account_id: str) -> SyncSession:
        """
        Register a new session in STARTING state.

        Raises:
            SessionActiveError: If the account already has an active session.
        """
        existing = self._active_by_account.get(account_id)
        if existing is not None:
            raise SessionActiveError(existing)

        session = SyncSession(session_id=session_id, account_id=account_id)
        self._sessions[session_id] = session
        self._active_by_account[account_id] = session_id
        logger.debug(f"Session {session_id} started for {account_id}")
        self._notify(session)
        return session.snapshot()

    def update(self, session_id: str, **fields: Any) -> None:
        """
        Merge the given fields into the session.

        Only fields that are passed change. Unknown field names raise
        ValueError; writes to a terminal session are ignored.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {', '.join(sorted(unknown))}")

        session = self._live(session_id)
        if session is None:
            return
        if "status" in fields and fields["status"].is_terminal:
            raise ValueError("Use complete() or fail() to end a session")

        for key, value in fields.items():
            setattr(session, key, value)
        self._notify(session)

    def advance(self, session_id: str, *, folders: int = 0, messages: int = 0) -> None:
        """Increment the done counters."""
        session = self._live(session_id)
        if session is None:
            return
        session.folders_done += folders
        session.messages_done += messages
        self._notify(session)

    def add_error(self, session_id: str, error: str) -> None:
        """Append an error string to the session's error list."""
        session = self._live(session_id)
        if session is None:
            return
        session.errors.append(error)
        self._notify(session)

    def cancel(self, session_id: str) -> bool:
        """
        Request cooperative cancellation.

        Returns:
            True if the session was active and is now flagged.
        """
        session = self._live(session_id)
        if session is None:
            return False
        session.cancelled = True
        session.message = "Cancellation requested"
        logger.info(f"Cancellation requested for session {session_id}")
        self._notify(session)
        return True

    def is_cancelled(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.cancelled

    def complete(
        self,
        session_id: str,
        message: str,
        result: MultiFolderResult | None = None,
    ) -> None:
        """Move the session to COMPLETED and schedule its eviction."""
        self._finish(session_id, SyncStatus.COMPLETED, message, result, self.success_grace)

    def fail(
        self,
        session_id: str,
        error: str,
        result: MultiFolderResult | None = None,
    ) -> None:
        """Move the session to ERROR and schedule its eviction."""
        session = self._live(session_id)
        if session is not None:
            session.errors.append(error)
        self._finish(session_id, SyncStatus.ERROR, f"Sync failed: {error}", result, self.error_grace)

    def _finish(
        self,
        session_id: str,
        status: SyncStatus,
        message: str,
        result: MultiFolderResult | None,
        grace: float,
    ) -> None:
        session = self._live(session_id)
        if session is None:
            return

        session.status = status
        session.message = message
        session.ended_at = datetime.now()
        session.result = result
        if status is SyncStatus.COMPLETED:
            session.current_folder = ""

        if self._active_by_account.get(session.account_id) == session_id:
            del self._active_by_account[session.account_id]

        logger.info(f"Session {session_id} {status.value}: {message}")
        self._notify(session)
        self._close_subscribers(session_id)
        self._schedule_eviction(session_id, grace)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, session_id: str) -> SyncSession | None:
        """Return a snapshot of the session, or None if unknown or evicted."""
        session = self._sessions.get(session_id)
        return session.snapshot() if session else None

    def is_active(self, account_id: str) -> bool:
        """True if the account has a session that has not finished."""
        return account_id in self._active_by_account

    def active_session(self, account_id: str) -> SyncSession | None:
        """Snapshot of the account's active session, if any."""
        session_id = self._active_by_account.get(account_id)
        return self.get(session_id) if session_id else None

    def _live(self, session_id: str) -> SyncSession | None:
        """The session if it exists and is not terminal."""
        session = self._sessions.get(session_id)
        if session is None or session.status.is_terminal:
            return None
        return session

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, session_id: str) -> asyncio.Queue:
        """
        Receive a snapshot on every change to the session.

        The queue immediately gets the current snapshot. After the terminal
        snapshot, None is put on the queue and no more items follow.
        A subscriber that stops draining loses its oldest snapshots rather
        than growing the queue past SUBSCRIBER_BACKLOG.

        Raises:
            KeyError: If the session is unknown.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(session_id)

        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_BACKLOG)
        queue.put_nowait(session.snapshot())
        if session.status.is_terminal:
            queue.put_nowait(None)
        else:
            self._subscribers.setdefault(session_id, []).append(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(session_id, [])
        if queue in queues:
            queues.remove(queue)

    def _notify(self, session: SyncSession) -> None:
        for queue in self._subscribers.get(session.session_id, []):
            _put_latest(queue, session.snapshot())

    def _close_subscribers(self, session_id: str) -> None:
        for queue in self._subscribers.pop(session_id, []):
            _put_latest(queue, None)

    # =========================================================================
    # Eviction
    # =========================================================================

    def _schedule_eviction(self, session_id: str, grace: float) -> None:
        loop = asyncio.get_running_loop()
        self._evictions[session_id] = loop.call_later(grace, self.evict, session_id)

    def evict(self, session_id: str) -> None:
        """Forget a session immediately."""
        handle = self._evictions.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        session = self._sessions.pop(session_id, None)
        if session is not None:
            if self._active_by_account.get(session.account_id) == session_id:
                del self._active_by_account[session.account_id]
            self._close_subscribers(session_id)
            logger.debug(f"Evicted session {session_id}")

    def clear(self) -> None:
        """Drop every session and cancel pending evictions."""
        for session_id in list(self._sessions):
            self.evict(session_id)


def _put_latest(queue: asyncio.Queue, item: SyncSession | None) -> None:
    """Enqueue without blocking, discarding the oldest entry when full."""
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(item)


# =============================================================================
# Exceptions
# =============================================================================

class SessionActiveError(Exception):
    """Raised when starting a session for an account that already has one."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is already running")
        self.session_id = session_id
