# =============================================================================
# Sync Session Model
# =============================================================================
# State of one multi-folder sync run, as seen by callers polling for
# progress, and the structured result attached to it when it finishes.
#
# Lifecycle:
#   STARTING -> SYNCING -> COMPLETED
#                       -> ERROR
#
# COMPLETED and ERROR are terminal: once reached, nothing about the session
# changes again until it is evicted from the progress tracker.
# =============================================================================

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum


class SyncStatus(Enum):
    """Current status of a sync session."""
    STARTING = "starting"       # Created, not yet talking to the server
    SYNCING = "syncing"         # Discovering, counting or fetching
    COMPLETED = "completed"     # Finished (possibly with per-folder failures)
    ERROR = "error"             # Aborted

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.ERROR)


@dataclass
class FolderResult:
    """
    Per-folder outcome.

    Attributes:
        synced_count: Messages newly inserted.
        total_messages: Messages the folder held (within the limit).
        skipped_count: Messages already stored, whose flags were refreshed.
        errors: Per-message errors recorded while processing the folder.
    """
    synced_count: int = 0
    total_messages: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class FolderFailure:
    """A folder that could not be synced, and why."""
    folder: str
    error: str


@dataclass
class MultiFolderResult:
    """
    Structured result of a whole sync session.

    Attributes:
        folders_total: Number of folders selected for sync.
        folders_succeeded: Folder names that synced without a folder-level error.
        folders_failed: Folders that failed, with their error.
        messages_total: Messages planned across all folders.
        messages_synced: Messages newly inserted across all folders.
        per_folder_counts: FolderResult keyed by folder name.
        errors: Every error string recorded during the session.
        duration_ms: Wall time from start to finish.
    """
    folders_total: int = 0
    folders_succeeded: list[str] = field(default_factory=list)
    folders_failed: list[FolderFailure] = field(default_factory=list)
    messages_total: int = 0
    messages_synced: int = 0
    per_folder_counts: dict[str, FolderResult] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


@dataclass
class SyncSession:
    """
    Live progress record of a sync run.

    Mutated only by the progress tracker. Callers receive copies via
    snapshot(), never the live object.

    Attributes:
        session_id: Unique id returned by start_sync.
        account_id: Account being synced.
        status: Current lifecycle state.
        folders_planned: Folders selected for this run.
        folders_done: Folders finished, successfully or not.
        messages_planned: Messages counted across selected folders.
        messages_done: Messages processed (new, already stored or failed).
        current_folder: Folder being worked on.
        message: Human-readable status line.
        errors: Error strings recorded so far.
        started_at: When the session was created.
        ended_at: When the session reached a terminal state.
        cancelled: True if the caller asked for cancellation.
        result: Structured result, set once at the end.
    """
    session_id: str
    account_id: str
    status: SyncStatus = SyncStatus.STARTING
    folders_planned: int = 0
    folders_done: int = 0
    messages_planned: int = 0
    messages_done: int = 0
    current_folder: str = "Initializing..."
    message: str = ""
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: datetime | None = None
    cancelled: bool = False
    result: MultiFolderResult | None = None

    @property
    def percent_complete(self) -> float:
        """Returns completion percentage (0.0 - 100.0) across all messages."""
        if self.messages_planned == 0:
            return 100.0 if self.status is SyncStatus.COMPLETED else 0.0
        return min(100.0, (self.messages_done / self.messages_planned) * 100.0)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def snapshot(self) -> "SyncSession":
        """Return a detached copy safe to hand to callers."""
        return replace(self, errors=list(self.errors))
