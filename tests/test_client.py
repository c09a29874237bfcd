"""Tests for the IMAP client wrapper and its response parsers."""

import asyncio
import dataclasses
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from aioimaplib import aioimaplib

from mailsync.imap import (
    FolderOpenError,
    IMAPAuthenticationError,
    IMAPClient,
    IMAPConnectionError,
    sequence_bounds,
    sequence_range,
)
from mailsync.imap.client import (
    decode_header_value,
    parse_fetch_response,
    parse_internal_date,
    parse_list_line,
    parse_select_response,
)


RAW = b"Subject: Hi\r\nFrom: alice@example.com\r\n\r\nHello there"


def fetch_lines(sequence=1, uid=101, raw=RAW):
    """Build response.lines the way aioimaplib hands them back for one message."""
    head = (
        b'%d FETCH (UID %d FLAGS (\\Seen \\Flagged) RFC822.SIZE %d '
        b'INTERNALDATE "17-Jul-1996 02:44:25 -0700" '
        b'ENVELOPE ("Wed, 17 Jul 1996 02:23:25 -0700" "Hi" '
        b'(("Alice" NIL "alice" "example.com")) (("Alice" NIL "alice" "example.com")) NIL '
        b'((NIL NIL "me" "example.com")) NIL NIL NIL "<abc@example.com>") '
        b'BODY[] {%d}'
    ) % (sequence, uid, len(raw), len(raw))
    return [head, bytearray(raw), b")"]


# =============================================================================
# Sequence ranges
# =============================================================================

def test_sequence_range():
    assert sequence_range(1000, None) == "1:1000"
    assert sequence_range(1000, 50) == "951:1000"
    assert sequence_range(10, 50) == "1:10"


def test_sequence_bounds_of_empty_folder():
    assert sequence_bounds(0, 50) is None
    assert sequence_bounds(3, None) == (1, 3)


# =============================================================================
# LIST / EXAMINE
# =============================================================================

def test_parse_list_line():
    folder = parse_list_line(b'(\\HasNoChildren \\Junk) "/" "Junk E-mail"')

    assert folder.name == "Junk E-mail"
    assert folder.delimiter == "/"
    assert "\\Junk" in folder.raw_flags


def test_parse_list_line_nil_delimiter_and_unquoted_name():
    folder = parse_list_line(b"(\\Noselect) NIL Public")

    assert folder.name == "Public"
    assert folder.delimiter == ""


def test_parse_list_line_skips_status_lines():
    assert parse_list_line(b"LIST completed.") is None


def test_parse_select_response():
    status = parse_select_response([
        b"12 EXISTS",
        b"0 RECENT",
        b"OK [UIDVALIDITY 3857529045] UIDs valid",
        b"OK [UIDNEXT 4392] Predicted next UID",
    ])

    assert status["EXISTS"] == 12
    assert status["RECENT"] == 0
    assert status["UIDVALIDITY"] == 3857529045
    assert status["UIDNEXT"] == 4392


# =============================================================================
# FETCH
# =============================================================================

def test_parse_fetch_response_with_literal():
    messages = parse_fetch_response(fetch_lines() + [b"FETCH completed."])

    assert len(messages) == 1
    message = messages[0]
    assert message.sequence == 1
    assert message.uid == 101
    assert message.size == len(RAW)
    assert message.flags == frozenset({"\\Seen", "\\Flagged"})
    assert message.raw == RAW
    assert message.internal_date == datetime(
        1996, 7, 17, 2, 44, 25, tzinfo=timezone(timedelta(hours=-7))
    )

    envelope = message.envelope
    assert envelope.subject == "Hi"
    assert envelope.from_[0].name == "Alice"
    assert envelope.from_[0].email == "alice@example.com"
    assert envelope.to[0].email == "me@example.com"
    assert envelope.cc == ()
    assert envelope.message_id == "<abc@example.com>"


def test_parse_fetch_response_multiple_messages():
    lines = fetch_lines(1, 101) + fetch_lines(2, 102, raw=b"Subject: Two\r\n\r\nsecond")

    messages = parse_fetch_response(lines)
    assert [m.uid for m in messages] == [101, 102]
    assert messages[1].raw.endswith(b"second")


def test_parse_fetch_response_skips_malformed_entries():
    assert parse_fetch_response([b"3 FETCH garbage"]) == []


def test_parse_internal_date():
    assert parse_internal_date("01-Feb-2024 08:00:00 +0000") == datetime(2024, 2, 1, 8, tzinfo=timezone.utc)
    assert parse_internal_date("yesterday") is None
    assert parse_internal_date("") is None


def test_decode_header_value():
    assert decode_header_value("=?utf-8?q?Caf=C3=A9?=") == "Café"
    assert decode_header_value("Plain subject") == "Plain subject"
    assert decode_header_value("") == ""


# =============================================================================
# Client against a fake transport
# =============================================================================

def ok(*lines):
    return SimpleNamespace(result="OK", lines=list(lines))


class FakeTransport:
    """Stands in for aioimaplib.IMAP4_SSL."""

    login_result = "OK"
    refuse_connect = False
    hello_delay = 0.0
    login_delay = 0.0

    def __init__(self, host, port, timeout):
        self.protocol = SimpleNamespace(state="NONAUTH", capabilities=["IMAP4REV1"])
        self.fetches = []
        self.logged_out = False

    async def wait_hello_from_server(self):
        await asyncio.sleep(self.hello_delay)
        if self.refuse_connect:
            raise ConnectionRefusedError("Connection refused")

    def has_capability(self, name):
        return name in self.protocol.capabilities

    async def login(self, user, password):
        await asyncio.sleep(self.login_delay)
        if self.login_result == "OK":
            self.protocol.state = "AUTH"
        return SimpleNamespace(result=self.login_result, lines=[b"LOGIN done"])

    async def logout(self):
        self.logged_out = True
        self.protocol.state = "LOGOUT"

    async def list(self, reference, pattern):
        return ok(b'(\\HasNoChildren) "/" "INBOX"', b'(\\HasNoChildren \\Sent) "/" "Sent"', b"LIST completed.")

    async def examine(self, name):
        if name == "Missing":
            return SimpleNamespace(result="NO", lines=[b"Mailbox doesn't exist"])
        return ok(b"3 EXISTS", b"EXAMINE completed.")

    async def fetch(self, msg_range, items):
        self.fetches.append((msg_range, items))
        start, end = (int(n) for n in msg_range.split(":"))
        lines = []
        for seq in range(end, start - 1, -1):
            lines.extend(fetch_lines(seq, 100 + seq))
        return ok(*lines)


@pytest.fixture
def transport(monkeypatch):
    created = []

    def factory(**kwargs):
        created.append(FakeTransport(**kwargs))
        return created[-1]

    monkeypatch.setattr(aioimaplib, "IMAP4_SSL", factory)
    monkeypatch.setattr(FakeTransport, "login_result", "OK")
    monkeypatch.setattr(FakeTransport, "refuse_connect", False)
    monkeypatch.setattr(FakeTransport, "hello_delay", 0.0)
    monkeypatch.setattr(FakeTransport, "login_delay", 0.0)
    return created


@pytest.mark.asyncio
async def test_connect_list_examine(transport, sample_account):
    client = IMAPClient(sample_account)
    await client.connect()

    assert client.is_connected
    assert [f.name for f in await client.list_folders()] == ["INBOX", "Sent"]
    assert await client.examine_folder("INBOX") == 3
    assert client.state.selected_folder == "INBOX"

    await client.disconnect()
    assert not client.is_connected
    assert transport[0].logged_out


@pytest.mark.asyncio
async def test_fetch_streams_in_batches_and_order(transport, sample_account):
    client = IMAPClient(sample_account)
    await client.connect()
    await client.examine_folder("INBOX")

    messages = [m async for m in client.fetch_messages(1, 5, batch_size=2)]

    assert [m.sequence for m in messages] == [1, 2, 3, 4, 5]
    assert [r for r, _ in transport[0].fetches] == ["1:2", "3:4", "5:5"]
    assert "BODY.PEEK[]" in transport[0].fetches[0][1]


@pytest.mark.asyncio
async def test_headers_only_fetch(transport, sample_account):
    client = IMAPClient(sample_account)
    await client.connect()

    _ = [m async for m in client.fetch_messages(1, 1, fetch_body=False)]
    assert "BODY.PEEK[HEADER]" in transport[0].fetches[0][1]


@pytest.mark.asyncio
async def test_examine_refused_is_folder_error(transport, sample_account):
    client = IMAPClient(sample_account)
    await client.connect()

    with pytest.raises(FolderOpenError):
        await client.examine_folder("Missing")
    assert client.is_connected


@pytest.mark.asyncio
async def test_login_rejected(transport, sample_account):
    FakeTransport.login_result = "NO"
    client = IMAPClient(sample_account)

    with pytest.raises(IMAPAuthenticationError):
        await client.connect()
    assert not client.is_connected


@pytest.mark.asyncio
async def test_unreachable_server(transport, sample_account):
    FakeTransport.refuse_connect = True
    client = IMAPClient(sample_account)

    with pytest.raises(IMAPConnectionError) as excinfo:
        await client.connect()
    assert "imap.example.com" in str(excinfo.value)


@pytest.mark.asyncio
async def test_commands_require_connection(sample_account):
    with pytest.raises(IMAPConnectionError):
        await IMAPClient(sample_account).list_folders()


@pytest.mark.asyncio
async def test_silent_server_times_out(transport, sample_account):
    """A server that never sends its greeting fails within connect_timeout."""
    FakeTransport.hello_delay = 5.0
    account = dataclasses.replace(sample_account, connect_timeout=0.05)
    client = IMAPClient(account)

    started = time.monotonic()
    with pytest.raises(IMAPConnectionError) as excinfo:
        await client.connect()

    assert time.monotonic() - started < 1.0
    assert "timed out" in str(excinfo.value)
    assert not client.is_connected


@pytest.mark.asyncio
async def test_hanging_login_times_out(transport, sample_account):
    """LOGIN that never answers fails within auth_timeout, as a connection error."""
    FakeTransport.login_delay = 5.0
    account = dataclasses.replace(sample_account, auth_timeout=0.05)
    client = IMAPClient(account)

    started = time.monotonic()
    with pytest.raises(IMAPConnectionError) as excinfo:
        await client.connect()

    assert time.monotonic() - started < 1.0
    assert not isinstance(excinfo.value, IMAPAuthenticationError)
    assert "timed out" in str(excinfo.value)
    assert not client.is_connected
