# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailsync test suite.
#
# FakeServer stands in for an IMAP server: it hands out FakeIMAPClient
# objects with the same async surface as IMAPClient, so the connection
# manager and sync orchestrator run unchanged against it. Storage tests use
# a real aiosqlite database in a temporary directory.
# =============================================================================

import asyncio
import tempfile
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from mailsync.core import Account, FetchedMessage, FolderDescriptor
from mailsync.imap import (
    ConnectionManager,
    FolderOpenError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    ProgressTracker,
)
from mailsync.security import FieldCipher
from mailsync.storage import Database, Repository


# =============================================================================
# Fake IMAP server
# =============================================================================

class FakeServer:
    """
    In-memory mailbox shared by every FakeIMAPClient it creates.

    Attributes:
        folders: Folder name -> messages in sequence order.
        unopenable: Folders whose EXAMINE fails.
        broken: Folders whose FETCH fails with a connection error.
        fetch_delay: Seconds each FETCH stream sleeps before yielding.
        refuse_login: Make every connect() fail authentication.
        max_in_flight: Highest number of simultaneous FETCH streams seen.
    """

    def __init__(self) -> None:
        self.folders: dict[str, list[FetchedMessage]] = {}
        self.folder_flags: dict[str, frozenset[str]] = {}
        self.unopenable: set[str] = set()
        self.broken: set[str] = set()
        self.fetch_delay = 0.0
        self.refuse_login = False
        self.connections_opened = 0
        self.fetch_ranges: list[tuple[str, int, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def add_folder(self, name: str, messages=(), flags=()) -> None:
        self.folders[name] = list(messages)
        self.folder_flags[name] = frozenset(flags)

    def client_factory(self, account: Account) -> "FakeIMAPClient":
        return FakeIMAPClient(self, account)


class FakeIMAPClient:
    """Async IMAPClient look-alike backed by a FakeServer."""

    def __init__(self, server: FakeServer, account: Account) -> None:
        self.server = server
        self.account = account
        self.selected: str | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self.server.refuse_login:
            raise IMAPAuthenticationError("Authentication failed: invalid credentials")
        self.server.connections_opened += 1
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def list_folders(self) -> list[FolderDescriptor]:
        if not self._connected:
            raise IMAPConnectionError("Not connected")
        return [
            FolderDescriptor(name=name, delimiter="/", raw_flags=self.server.folder_flags[name])
            for name in self.server.folders
        ]

    async def examine_folder(self, name: str) -> int:
        if name in self.server.unopenable or name not in self.server.folders:
            raise FolderOpenError(f"Failed to open folder {name}: NO [NONEXISTENT]")
        self.selected = name
        return len(self.server.folders[name])

    async def fetch_messages(self, start, end, *, fetch_body=True, batch_size=50):
        folder = self.selected
        self.server.fetch_ranges.append((folder, start, end))
        self.server.in_flight += 1
        self.server.max_in_flight = max(self.server.max_in_flight, self.server.in_flight)
        try:
            await asyncio.sleep(self.server.fetch_delay)
            if folder in self.server.broken:
                self._connected = False
                raise IMAPConnectionError(f"FETCH {start}:{end} failed: connection reset")
            for message in self.server.folders[folder][start - 1:end]:
                yield message
        finally:
            self.server.in_flight -= 1


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        id="test",
        host="imap.example.com",
        user="me@example.com",
        secret="app-password",
        port=993,
        security="ssl",
    )


@pytest.fixture
def make_fetched():
    """Factory for FetchedMessage objects carrying a small RFC822 source."""

    def _make(
        sequence: int,
        message_id: str | None = None,
        subject: str = "Hello",
        sender: str = "alice@example.com",
        flags=(),
        body: str = "Hello there",
    ) -> FetchedMessage:
        message_id = message_id or f"msg-{sequence}@example.com"
        raw = (
            f"From: Alice <{sender}>\r\n"
            f"To: me@example.com\r\n"
            f"Subject: {subject}\r\n"
            f"Message-ID: <{message_id}>\r\n"
            f"Date: Mon, 15 Jan 2024 10:30:00 +0000\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"\r\n"
            f"{body}\r\n"
        ).encode("utf-8")
        return FetchedMessage(
            sequence=sequence,
            uid=1000 + sequence,
            flags=frozenset(flags),
            size=len(raw),
            raw=raw,
        )

    return _make


@pytest.fixture
def fake_server():
    """An empty FakeServer."""
    return FakeServer()


@pytest.fixture
def connections(fake_server):
    """ConnectionManager that opens FakeIMAPClients."""
    return ConnectionManager(client_factory=fake_server.client_factory)


@pytest.fixture
def tracker():
    return ProgressTracker()


@pytest.fixture
def cipher():
    """FieldCipher with a throwaway key."""
    return FieldCipher(Fernet.generate_key())


@pytest.fixture
async def database(temp_dir):
    """Connected Database in a temporary directory."""
    db = Database(temp_dir / "mailsync.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def repo(database, cipher):
    """Repository over the temporary database, with field encryption."""
    return Repository(database, cipher)
