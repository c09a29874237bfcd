# =============================================================================
# IMAP Sync Orchestrator
# =============================================================================
# Runs one multi-folder sync session from start to finish.
#
# Sync strategy:
#   1. Discovery: list folders on the pooled connection.
#   2. Selection: explicit folder list, every folder, or the classifier's
#      recommended set.
#   3. Counting: EXAMINE each target folder (still on the pooled
#      connection) so progress has a denominator.
#   4. Fetch and persist, either one folder at a time on the pooled
#      connection ("sequential") or with a bounded pool of workers that
#      each open a dedicated connection ("parallel").
#
# Failure isolation:
#   - A bad message is recorded and the folder carries on.
#   - A failed folder is recorded; the session carries on unless
#     continue_on_error is False.
#   - Only a connection failure during discovery, or an abort, ends the
#     session in ERROR.
#
# Cancellation and aborts are cooperative: both are checked before every
# folder and before every message, so a folder still running when another
# one aborts the session stops at its next message.
# =============================================================================

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncContextManager, Callable, Iterable

from mailsync.core import (
    Account,
    FetchedMessage,
    FolderDescriptor,
    FolderFailure,
    FolderResult,
    MultiFolderResult,
    SyncStatus,
)
from mailsync.folders import StandardFolderMapper, suggest_sync_set
from mailsync.imap.client import DEFAULT_BATCH_SIZE, IMAPClient, IMAPError, sequence_bounds
from mailsync.imap.connection import ConnectionManager
from mailsync.imap.normalizer import MessageNormalizer
from mailsync.imap.progress import ProgressTracker
from mailsync.storage.repository import PersistenceConflict, Repository

logger = logging.getLogger(__name__)


STRATEGIES = ("sequential", "parallel")

# Upper bound on parallel folder workers, whatever the caller asks for
MAX_CONCURRENCY = 10


@dataclass
class SyncOptions:
    """
    Per-run sync settings.

    Attributes:
        folders: Folder names to sync. None means the recommended set;
                 an empty list means every selectable folder.
        include_spam: Whether spam folders join the recommended set.
        limit: Most recent messages per folder, or None for all.
        strategy: "sequential" or "parallel".
        continue_on_error: Keep going after a folder fails.
        max_concurrency: Parallel workers, clamped to 1-10.
        fetch_body: Fetch full sources rather than header blocks.
        batch_size: Sequence numbers per FETCH command.
        clear_existing: Delete the account's stored messages first.
    """
    folders: list[str] | None = None
    include_spam: bool = True
    limit: int | None = 50
    strategy: str = "parallel"
    continue_on_error: bool = True
    max_concurrency: int = 3
    fetch_body: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE
    clear_existing: bool = False

    def __post_init__(self) -> None:
        if self.strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy {self.strategy!r}, expected one of {STRATEGIES}")
        self.max_concurrency = max(1, min(MAX_CONCURRENCY, self.max_concurrency))
        self.batch_size = max(1, self.batch_size)
        if self.limit is not None and self.limit <= 0:
            self.limit = None


@dataclass
class _RunContext:
    """Mutable state shared by the folder tasks of one session."""
    session_id: str
    account: Account
    options: SyncOptions
    normalizer: MessageNormalizer
    result: MultiFolderResult = field(default_factory=MultiFolderResult)
    abort_error: str | None = None


def resolve_folders(
    discovered: Iterable[FolderDescriptor],
    options: SyncOptions,
) -> list[str]:
    """
    Pick the folders a run will sync.

    Explicit names are kept exactly as given, even if discovery did not
    report them; the folder will then fail on EXAMINE and be recorded.
    """
    if options.folders:
        return list(options.folders)
    if options.folders is not None:
        return [f.name for f in discovered if f.is_selectable]
    return suggest_sync_set(discovered, include_spam=options.include_spam).recommended


class SyncOrchestrator:
    """
    Executes sync sessions against an account.

    Usage:
        >>> orchestrator = SyncOrchestrator(connections, tracker, repository)
        >>> tracker.start(session_id, account.id)
        >>> result = await orchestrator.run(session_id, account, SyncOptions())

    Attributes:
        connections: Pool used for discovery, counting and sequential syncs.
        tracker: Receives every progress change.
        repository: Where normalized messages are stored.
        normalizer: Fixed normalizer. When None, each run builds one whose
                    mapper knows the account's own address.
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
        self.normalizer = normalizer

    # =========================================================================
    # Session
    # =========================================================================

    async def run(
        self,
        session_id: str,
        account: Account,
        options: SyncOptions,
    ) -> MultiFolderResult:
        """
        Run a registered session to a terminal state.

        The session must already exist in the tracker. Expected failures
        end up in the session; this method only raises on programming
        errors, which the caller converts into a failed session.

        Returns:
            The session's MultiFolderResult.
        """
        started = time.monotonic()
        ctx = _RunContext(
            session_id=session_id,
            account=account,
            options=options,
            normalizer=self.normalizer or MessageNormalizer(
                StandardFolderMapper(owner_address=account.user)
            ),
        )
        result = ctx.result

        self.tracker.update(
            session_id,
            status=SyncStatus.SYNCING,
            current_folder="Discovering folders",
            message=f"Connecting to {account.host}",
        )

        if options.clear_existing:
            deleted = await self.repository.delete_all(account.id)
            logger.info(f"Cleared {deleted} stored messages before syncing {account.id}")

        try:
            async with self.connections.lease(account) as client:
                discovered = await client.list_folders()
                targets = resolve_folders(discovered, options)
                logger.info(
                    f"{account.id}: {len(discovered)} folders on server, "
                    f"{len(targets)} selected: {', '.join(targets)}"
                )
                planned = await self._count_messages(ctx, client, targets)
        except IMAPError as e:
            logger.error(f"Sync of {account.id} failed during discovery: {e}")
            result.errors.append(str(e))
            result.duration_ms = _elapsed_ms(started)
            self.tracker.fail(session_id, str(e), result)
            return result

        result.folders_total = len(targets)
        result.messages_total = planned
        self.tracker.update(
            session_id,
            folders_planned=len(targets),
            messages_planned=planned,
            message=f"Syncing {len(targets)} folders",
        )

        if targets and not self._should_stop(ctx):
            if options.strategy == "parallel":
                await self._run_parallel(ctx, targets)
            else:
                await self._run_sequential(ctx, targets)

        result.duration_ms = _elapsed_ms(started)

        if self.tracker.is_cancelled(session_id):
            self.tracker.fail(session_id, "Cancelled by user", result)
        elif ctx.abort_error is not None:
            self.tracker.fail(session_id, ctx.abort_error, result)
        else:
            self.tracker.complete(session_id, _summary(result), result)
        return result

    async def _count_messages(
        self,
        ctx: _RunContext,
        client: IMAPClient,
        folders: list[str],
    ) -> int:
        """Sum the (limited) message counts of the target folders."""
        planned = 0
        for folder in folders:
            self.tracker.update(ctx.session_id, current_folder=folder, message=f"Counting {folder}")
            try:
                total = await client.examine_folder(folder)
            except IMAPError as e:
                logger.warning(f"Could not count messages in {folder}: {e}")
                continue
            bounds = sequence_bounds(total, ctx.options.limit)
            if bounds is not None:
                planned += bounds[1] - bounds[0] + 1
        return planned

    def _should_stop(self, ctx: _RunContext) -> bool:
        return ctx.abort_error is not None or self.tracker.is_cancelled(ctx.session_id)

    # =========================================================================
    # Strategies
    # =========================================================================

    async def _run_sequential(self, ctx: _RunContext, folders: list[str]) -> None:
        """One folder at a time on the pooled connection."""
        for folder in folders:
            if self._should_stop(ctx):
                break
            await self._run_folder(ctx, folder, lambda: self.connections.lease(ctx.account))

    async def _run_parallel(self, ctx: _RunContext, folders: list[str]) -> None:
        """
        Drain a folder queue with a bounded pool of workers.

        Each folder gets its own dedicated connection, so at most
        max_concurrency folders are in flight at any moment.
        """
        queue: asyncio.Queue[str] = asyncio.Queue()
        for folder in folders:
            queue.put_nowait(folder)

        async def worker() -> None:
            while not self._should_stop(ctx):
                try:
                    folder = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._run_folder(ctx, folder, lambda: self.connections.dedicated(ctx.account))

        workers = min(ctx.options.max_concurrency, len(folders))
        logger.debug(f"Starting {workers} folder workers for {ctx.account.id}")
        await asyncio.gather(*(
            asyncio.create_task(worker(), name=f"sync-{ctx.session_id}-{i}")
            for i in range(workers)
        ))

    # =========================================================================
    # Folder
    # =========================================================================

    async def _run_folder(
        self,
        ctx: _RunContext,
        folder: str,
        open_client: Callable[[], AsyncContextManager[IMAPClient]],
    ) -> None:
        """Sync one folder and record its outcome in the result."""
        result = ctx.result
        self.tracker.update(ctx.session_id, current_folder=folder, message=f"Syncing {folder}")

        try:
            async with open_client() as client:
                folder_result = await self._sync_folder(ctx, client, folder)
        except Exception as e:
            error = f"{folder}: {e}"
            logger.error(f"Error syncing folder {folder}: {e}", exc_info=not isinstance(e, IMAPError))
            result.folders_failed.append(FolderFailure(folder=folder, error=str(e)))
            result.errors.append(error)
            self.tracker.add_error(ctx.session_id, error)
            if not ctx.options.continue_on_error and ctx.abort_error is None:
                ctx.abort_error = f"Folder {error}"
        else:
            result.per_folder_counts[folder] = folder_result
            result.messages_synced += folder_result.synced_count
            if not self._should_stop(ctx):
                result.folders_succeeded.append(folder)
            logger.info(
                f"Folder {folder}: {folder_result.synced_count} new, "
                f"{folder_result.skipped_count} already stored, "
                f"{len(folder_result.errors)} errors"
            )
        finally:
            self.tracker.advance(ctx.session_id, folders=1)

    async def _sync_folder(
        self,
        ctx: _RunContext,
        client: IMAPClient,
        folder: str,
    ) -> FolderResult:
        """
        Fetch and persist the messages of one folder.

        Raises:
            FolderOpenError: If the folder cannot be examined.
            IMAPError: If fetching fails part way.
        """
        folder_result = FolderResult()

        total = await client.examine_folder(folder)
        bounds = sequence_bounds(total, ctx.options.limit)
        if bounds is None:
            logger.debug(f"Folder {folder} is empty")
            return folder_result

        start, end = bounds
        folder_result.total_messages = end - start + 1

        stream = client.fetch_messages(
            start,
            end,
            fetch_body=ctx.options.fetch_body,
            batch_size=ctx.options.batch_size,
        )
        async with aclosing(stream):
            async for fetched in stream:
                if self._should_stop(ctx):
                    logger.info(f"Stopping {folder} at message {fetched.sequence}: session is ending")
                    break
                await self._process_message(ctx, folder, fetched, folder_result)

        return folder_result

    # =========================================================================
    # Message
    # =========================================================================

    async def _process_message(
        self,
        ctx: _RunContext,
        folder: str,
        fetched: FetchedMessage,
        folder_result: FolderResult,
    ) -> None:
        """
        Normalize and store one message.

        A message already stored under the same Message-ID only has its
        flags and folder assignment refreshed. Failures are recorded and
        never propagate.
        """
        account_id = ctx.account.id
        try:
            message = ctx.normalizer.normalize(fetched.raw, fetched, folder)
            existing = await self.repository.find_by_key(account_id, message.message_id)
            if existing is not None:
                await self.repository.update_mutable(
                    account_id,
                    message.message_id,
                    flags=message.flags,
                    folder_label=message.folder_label,
                    standard_folder=message.standard_folder,
                )
                folder_result.skipped_count += 1
            elif await self.repository.upsert(account_id, message):
                folder_result.synced_count += 1
            else:
                # Stored by a concurrent folder task since the lookup
                folder_result.skipped_count += 1
        except PersistenceConflict as e:
            logger.debug(f"Skipping message {fetched.sequence} in {folder}: {e}")
            folder_result.skipped_count += 1
        except Exception as e:
            error = f"{folder} message {fetched.sequence}: {e}"
            logger.error(f"Failed to store message {fetched.sequence} in {folder}: {e}", exc_info=True)
            folder_result.errors.append(error)
            ctx.result.errors.append(error)
            self.tracker.add_error(ctx.session_id, error)
        finally:
            self.tracker.advance(ctx.session_id, messages=1)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _summary(result: MultiFolderResult) -> str:
    text = (
        f"Synced {result.messages_synced} new messages from "
        f"{len(result.folders_succeeded)}/{result.folders_total} folders"
    )
    if result.folders_failed:
        text += f" ({len(result.folders_failed)} failed)"
    return text
