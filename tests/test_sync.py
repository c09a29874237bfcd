"""Tests for the sync orchestrator against a fake IMAP server."""

import pytest

from mailsync.core import FetchedMessage, FolderDescriptor, StandardFolder, SyncStatus
from mailsync.imap import SyncOptions, SyncOrchestrator, resolve_folders


@pytest.fixture
def orchestrator(connections, tracker, repo):
    return SyncOrchestrator(connections, tracker, repo)


async def run_session(orchestrator, tracker, account, session_id="s1", **options):
    tracker.start(session_id, account.id)
    result = await orchestrator.run(session_id, account, SyncOptions(**options))
    return result, tracker.get(session_id)


# =============================================================================
# Options and folder selection
# =============================================================================

def test_options_clamp_concurrency():
    """max_concurrency is forced into 1..10."""
    assert SyncOptions(max_concurrency=50).max_concurrency == 10
    assert SyncOptions(max_concurrency=0).max_concurrency == 1


def test_options_reject_unknown_strategy():
    with pytest.raises(ValueError):
        SyncOptions(strategy="random")


def test_options_zero_limit_means_all():
    assert SyncOptions(limit=0).limit is None


def test_resolve_folders():
    """Explicit list beats all-folders, which beats the recommended set."""
    discovered = [
        FolderDescriptor("INBOX"),
        FolderDescriptor("Trash"),
        FolderDescriptor("Junk"),
        FolderDescriptor("[Gmail]", raw_flags=frozenset({"\\Noselect"})),
    ]

    assert resolve_folders(discovered, SyncOptions(folders=["Missing"])) == ["Missing"]
    assert resolve_folders(discovered, SyncOptions(folders=[])) == ["INBOX", "Trash", "Junk"]
    assert resolve_folders(discovered, SyncOptions()) == ["INBOX", "Junk"]
    assert resolve_folders(discovered, SyncOptions(include_spam=False)) == ["INBOX"]


# =============================================================================
# Sessions
# =============================================================================

@pytest.mark.asyncio
async def test_sync_stores_messages(orchestrator, tracker, repo, fake_server, sample_account, make_fetched):
    """A first sync inserts every message and completes the session."""
    fake_server.add_folder("INBOX", [make_fetched(i) for i in range(1, 4)])
    fake_server.add_folder("Sent", [make_fetched(1, message_id="sent-1@example.com")])

    result, session = await run_session(orchestrator, tracker, sample_account, limit=None)

    assert session.status is SyncStatus.COMPLETED
    assert result.folders_total == 2
    assert sorted(result.folders_succeeded) == ["INBOX", "Sent"]
    assert result.messages_total == 4
    assert result.messages_synced == 4
    assert session.messages_done == session.messages_planned == 4
    assert session.percent_complete == 100.0

    stored = await repo.find_by_key(sample_account.id, "sent-1@example.com")
    assert stored.folder_label == "Sent"
    assert stored.standard_folder is StandardFolder.SENT


@pytest.mark.asyncio
async def test_second_sync_is_idempotent(orchestrator, tracker, repo, fake_server, sample_account, make_fetched):
    """Re-syncing an unchanged mailbox inserts nothing and creates no duplicates."""
    fake_server.add_folder("INBOX", [make_fetched(i) for i in range(1, 6)])

    first, _ = await run_session(orchestrator, tracker, sample_account, "s1", limit=None)
    second, session = await run_session(orchestrator, tracker, sample_account, "s2", limit=None)

    assert first.messages_synced == 5
    assert second.messages_synced == 0
    assert second.per_folder_counts["INBOX"].skipped_count == 5
    assert session.status is SyncStatus.COMPLETED
    assert await repo.count(sample_account.id) == 5


@pytest.mark.asyncio
async def test_resync_refreshes_flags(orchestrator, tracker, repo, fake_server, sample_account, make_fetched):
    """Flags changed on the server are picked up by the next sync."""
    fake_server.add_folder("INBOX", [make_fetched(1)])
    await run_session(orchestrator, tracker, sample_account, "s1")

    fake_server.folders["INBOX"] = [make_fetched(1, flags={"\\Seen", "\\Flagged"})]
    await run_session(orchestrator, tracker, sample_account, "s2")

    stored = await repo.find_by_key(sample_account.id, "msg-1@example.com")
    assert stored.is_read
    assert stored.is_starred


@pytest.mark.asyncio
async def test_bad_message_does_not_fail_folder(orchestrator, tracker, fake_server, sample_account, make_fetched):
    """Message #3 of 5 failing leaves the other four synced."""
    messages = [make_fetched(i) for i in range(1, 6)]
    messages[2] = FetchedMessage(sequence=3)   # no source and no envelope
    fake_server.add_folder("INBOX", messages)

    result, session = await run_session(orchestrator, tracker, sample_account)

    assert result.per_folder_counts["INBOX"].synced_count == 4
    assert result.folders_succeeded == ["INBOX"]
    assert result.folders_failed == []
    assert any("message 3" in error for error in session.errors)
    assert session.messages_done == 5
    assert session.status is SyncStatus.COMPLETED


@pytest.mark.asyncio
async def test_limit_fetches_most_recent(orchestrator, tracker, fake_server, sample_account, make_fetched):
    fake_server.add_folder("INBOX", [make_fetched(i) for i in range(1, 11)])

    result, session = await run_session(orchestrator, tracker, sample_account, limit=3)

    assert fake_server.fetch_ranges == [("INBOX", 8, 10)]
    assert session.messages_planned == 3
    assert result.messages_synced == 3


@pytest.mark.asyncio
async def test_empty_folder_succeeds(orchestrator, tracker, fake_server, sample_account):
    fake_server.add_folder("INBOX")

    result, session = await run_session(orchestrator, tracker, sample_account)

    assert result.folders_succeeded == ["INBOX"]
    assert result.messages_synced == 0
    assert fake_server.fetch_ranges == []
    assert session.status is SyncStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", ["sequential", "parallel"])
async def test_failed_folder_is_recorded(orchestrator, tracker, fake_server, sample_account, make_fetched, strategy):
    """A folder whose fetch breaks is failed; the others still sync."""
    fake_server.add_folder("INBOX", [make_fetched(1)])
    fake_server.add_folder("Sent", [make_fetched(1, message_id="sent@example.com")])
    fake_server.broken.add("Sent")

    result, session = await run_session(orchestrator, tracker, sample_account, strategy=strategy)

    assert result.folders_succeeded == ["INBOX"]
    assert [f.folder for f in result.folders_failed] == ["Sent"]
    assert "connection reset" in result.folders_failed[0].error
    assert session.folders_done == 2
    assert session.status is SyncStatus.COMPLETED


@pytest.mark.asyncio
async def test_stop_on_error_aborts_session(orchestrator, tracker, fake_server, sample_account, make_fetched):
    """With continue_on_error=False the first failed folder ends the session."""
    fake_server.add_folder("Missing")
    fake_server.add_folder("INBOX", [make_fetched(1)])
    fake_server.unopenable.add("Missing")

    result, session = await run_session(
        orchestrator, tracker, sample_account,
        folders=["Missing", "INBOX"],
        strategy="sequential",
        continue_on_error=False,
    )

    assert session.status is SyncStatus.ERROR
    assert session.message.startswith("Sync failed:")
    assert "INBOX" not in result.per_folder_counts
    assert result.messages_synced == 0


@pytest.mark.asyncio
async def test_stop_on_error_halts_running_parallel_folders(
    orchestrator, tracker, fake_server, sample_account, make_fetched
):
    """A folder already streaming stops as soon as another folder aborts the session."""
    fake_server.add_folder("Big", [make_fetched(i) for i in range(1, 201)])
    fake_server.add_folder("Missing")
    fake_server.unopenable.add("Missing")
    fake_server.fetch_delay = 0.05

    result, session = await run_session(
        orchestrator, tracker, sample_account,
        folders=["Big", "Missing"],
        strategy="parallel",
        max_concurrency=2,
        continue_on_error=False,
        limit=None,
    )

    assert session.status is SyncStatus.ERROR
    assert [f.folder for f in result.folders_failed] == ["Missing"]
    assert "Big" not in result.folders_succeeded
    assert result.messages_synced == 0
    assert session.messages_done < 200

@pytest.mark.asyncio
async def test_unreachable_server_fails_session(orchestrator, tracker, fake_server, sample_account):
    fake_server.add_folder("INBOX")
    fake_server.refuse_login = True

    result, session = await run_session(orchestrator, tracker, sample_account)

    assert session.status is SyncStatus.ERROR
    assert "Authentication failed" in session.errors[-1]
    assert result.errors == session.errors
    assert result.folders_total == 0
    assert not tracker.is_active(sample_account.id)


@pytest.mark.asyncio
async def test_count_failure_counts_as_zero(orchestrator, tracker, fake_server, sample_account, make_fetched):
    fake_server.add_folder("INBOX", [make_fetched(1), make_fetched(2)])

    result, session = await run_session(
        orchestrator, tracker, sample_account, folders=["INBOX", "Nowhere"]
    )

    assert session.messages_planned == 2
    assert [f.folder for f in result.folders_failed] == ["Nowhere"]
    assert result.messages_synced == 2


@pytest.mark.asyncio
async def test_parallel_respects_concurrency(orchestrator, tracker, fake_server, sample_account, make_fetched):
    """Five folders with max_concurrency=2 never run more than two at once."""
    names = [f"Folder{i}" for i in range(1, 6)]
    for n, name in enumerate(names):
        fake_server.add_folder(name, [make_fetched(1, message_id=f"{n}@example.com")])
    fake_server.fetch_delay = 0.01

    result, _ = await run_session(
        orchestrator, tracker, sample_account,
        folders=names,
        strategy="parallel",
        max_concurrency=2,
    )

    assert fake_server.max_in_flight == 2
    assert sorted(result.folders_succeeded) == names
    # One pooled connection plus one dedicated connection per folder
    assert fake_server.connections_opened == 1 + len(names)


@pytest.mark.asyncio
async def test_sequential_reuses_pooled_connection(orchestrator, tracker, fake_server, sample_account, make_fetched):
    fake_server.add_folder("INBOX", [make_fetched(1)])
    fake_server.add_folder("Sent", [make_fetched(1, message_id="sent@example.com")])

    await run_session(orchestrator, tracker, sample_account, strategy="sequential")

    assert fake_server.connections_opened == 1
    assert fake_server.max_in_flight == 1


@pytest.mark.asyncio
async def test_cancelled_session_ends_in_error(orchestrator, tracker, fake_server, sample_account, make_fetched):
    fake_server.add_folder("INBOX", [make_fetched(1)])

    tracker.start("s1", sample_account.id)
    tracker.cancel("s1")
    result = await orchestrator.run("s1", sample_account, SyncOptions())
    session = tracker.get("s1")

    assert session.status is SyncStatus.ERROR
    assert session.cancelled
    assert result.messages_synced == 0


@pytest.mark.asyncio
async def test_cancel_between_messages(orchestrator, tracker, repo, fake_server, sample_account, make_fetched, monkeypatch):
    """Cancelling mid-folder keeps what was stored and stops at the next message."""
    fake_server.add_folder("INBOX", [make_fetched(i) for i in range(1, 6)])
    store = repo.upsert
    calls = 0

    async def upsert_then_cancel(account_id, message):
        nonlocal calls
        calls += 1
        created = await store(account_id, message)
        if calls == 3:
            tracker.cancel("s1")
        return created

    monkeypatch.setattr(repo, "upsert", upsert_then_cancel)

    result, session = await run_session(
        orchestrator, tracker, sample_account,
        folders=["INBOX"], strategy="sequential", limit=None,
    )

    assert session.status is SyncStatus.ERROR
    assert session.cancelled
    assert result.messages_synced == 3
    assert result.folders_succeeded == []
    assert await repo.count(sample_account.id) == 3


@pytest.mark.asyncio
async def test_clear_existing_resyncs_everything(orchestrator, tracker, repo, fake_server, sample_account, make_fetched):
    fake_server.add_folder("INBOX", [make_fetched(i) for i in range(1, 4)])

    await run_session(orchestrator, tracker, sample_account, "s1")
    result, _ = await run_session(orchestrator, tracker, sample_account, "s2", clear_existing=True)

    assert result.messages_synced == 3
    assert await repo.count(sample_account.id) == 3
