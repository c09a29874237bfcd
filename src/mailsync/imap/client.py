# =============================================================================
# IMAP Client
# =============================================================================
# Provides an async IMAP client wrapper around aioimaplib.
#
# Key responsibilities:
#   - Connection management (connect with timeouts, disconnect, liveness)
#   - Authentication (SSL, STARTTLS or plain)
#   - Folder discovery (LIST) and read-only folder opening (EXAMINE)
#   - Streaming message fetch by sequence range, in fixed-size batches
#   - Parsing FETCH responses into typed FetchedMessage records
#
# Design notes:
#   - IMAP is strictly one command at a time per connection. This class
#     does not serialize callers itself; the connection manager does.
#   - Transport failures (timeouts, dropped sockets) surface as
#     IMAPConnectionError so the owner can evict the connection.
#   - Folder-scoped failures (EXAMINE refused) surface as FolderOpenError
#     and leave the connection usable.
# =============================================================================

import asyncio
import email.errors
import email.header
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator

from aioimaplib import aioimaplib

from mailsync.core import Account, Address, Envelope, FetchedMessage, FolderDescriptor

# Set up logging for this module
logger = logging.getLogger(__name__)


# Default number of messages requested per FETCH command
DEFAULT_BATCH_SIZE = 50

# Errors raised by the transport or by aioimaplib when the link is unusable
_TRANSPORT_ERRORS = (
    asyncio.TimeoutError,
    OSError,
    aioimaplib.Abort,
    aioimaplib.CommandTimeout,
)


def _quote_folder_name(name: str) -> str:
    """
    Quote an IMAP folder name if it contains special characters.

    IMAP folder names with spaces or special characters must be quoted.
    This function wraps folder names in double quotes and escapes
    any internal quotes or backslashes.

    Args:
        name: The folder name to quote.

    Returns:
        Properly quoted folder name for IMAP commands.
    """
    if not name or any(c in name for c in ' "\\(){}[]%*'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def sequence_bounds(total: int, limit: int | None) -> tuple[int, int] | None:
    """
    Compute the sequence range to fetch from a folder.

    With a limit, the most recent `limit` messages are fetched; without
    one, the whole folder. Sequence numbers are used rather than UIDs
    because UIDs can be sparse.

    Args:
        total: Number of messages in the folder (EXISTS).
        limit: Maximum messages to fetch, or None for all.

    Returns:
        (start, end) inclusive, or None if there is nothing to fetch.

    Example:
        >>> sequence_bounds(1000, 50)
        (951, 1000)
    """
    if total <= 0:
        return None
    if limit is not None and limit > 0:
        return max(1, total - limit + 1), total
    return 1, total


def sequence_range(total: int, limit: int | None) -> str | None:
    """Same as sequence_bounds(), formatted as an IMAP sequence set."""
    bounds = sequence_bounds(total, limit)
    if bounds is None:
        return None
    return f"{bounds[0]}:{bounds[1]}"


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Whether we have an active connection.
        authenticated: Whether we've successfully logged in.
        selected_folder: Currently examined folder, if any.
        capabilities: Server capabilities (from the greeting).
    """
    connected: bool = False
    authenticated: bool = False
    selected_folder: str | None = None
    capabilities: list[str] = field(default_factory=list)


class IMAPClient:
    """
    Async IMAP client for mailsync.

    This class wraps aioimaplib and provides the handful of operations the
    sync engine needs.

    Usage:
        >>> client = IMAPClient(account)
        >>> await client.connect()
        >>> folders = await client.list_folders()
        >>> total = await client.examine_folder("INBOX")
        >>> async for msg in client.fetch_messages(1, total):
        ...     print(msg.sequence)
        >>> await client.disconnect()

    Attributes:
        account: The Account configuration for this connection.
        state: Current connection state.
    """

    def __init__(self, account: Account) -> None:
        """
        Initialize the IMAP client.

        Args:
            account: Account configuration with IMAP server details.
        """
        self.account = account
        self.state = ConnectionState()
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None

    @property
    def is_connected(self) -> bool:
        """Check if client is connected, authenticated and not logged out."""
        if not (self.state.connected and self.state.authenticated and self._client):
            return False
        return self._client.protocol.state in ("AUTH", "SELECTED")

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish and authenticate a connection to the IMAP server.

        The handshake (including STARTTLS) runs under the account's
        connect_timeout and LOGIN under its auth_timeout.

        Raises:
            IMAPConnectionError: If the server is unreachable or too slow.
            IMAPAuthenticationError: If login fails.
        """
        account = self.account
        logger.info(f"Connecting to {account.host}:{account.port} ({account.security})")

        try:
            if account.security == "ssl":
                # Direct TLS connection (usually port 993)
                self._client = aioimaplib.IMAP4_SSL(
                    host=account.host,
                    port=account.port,
                    timeout=account.command_timeout,
                )
            else:
                # Plain connection, optionally upgraded with STARTTLS (usually 143)
                self._client = aioimaplib.IMAP4(
                    host=account.host,
                    port=account.port,
                    timeout=account.command_timeout,
                )

            await asyncio.wait_for(
                self._handshake(), timeout=account.connect_timeout
            )
        except _TRANSPORT_ERRORS as e:
            self._reset()
            raise IMAPConnectionError(
                f"Failed to connect to {account.host}:{account.port}: {str(e) or 'timed out'}"
            ) from e
        except IMAPConnectionError:
            await self.disconnect()
            raise

        try:
            await asyncio.wait_for(self._authenticate(), timeout=account.auth_timeout)
        except _TRANSPORT_ERRORS as e:
            await self.disconnect()
            raise IMAPConnectionError(
                f"Authentication timed out for {account.user}@{account.host}"
            ) from e
        except IMAPAuthenticationError:
            await self.disconnect()
            raise

        logger.info(f"Successfully connected to {account.host}")

    async def _handshake(self) -> None:
        """Wait for the greeting and upgrade to TLS if requested."""
        await self._client.wait_hello_from_server()
        self.state.connected = True

        # aioimaplib stores capabilities after wait_hello_from_server()
        self.state.capabilities = list(self._client.protocol.capabilities)
        logger.debug(f"Server capabilities: {self.state.capabilities}")

        if self.account.security == "starttls":
            if not self._client.has_capability("STARTTLS"):
                raise IMAPConnectionError("Server does not support STARTTLS")
            logger.debug("Upgrading to TLS via STARTTLS")
            await self._client.starttls()

    async def _authenticate(self) -> None:
        """
        Log in with the account secret (or the keyring fallback).

        Raises:
            IMAPAuthenticationError: If login fails or no secret is available.
        """
        password = self.account.resolve_secret()
        if not password:
            raise IMAPAuthenticationError(
                f"No password for {self.account.user}. "
                f"Set it with: keyring set {self.account.keyring_service} {self.account.user}"
            )

        logger.debug(f"Authenticating as {self.account.user}")
        response = await self._client.login(self.account.user, password)

        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.account.user}: {_lines_text(response.lines)}"
            )

        self.state.authenticated = True
        logger.debug("Authentication successful")

    async def disconnect(self) -> None:
        """
        Gracefully disconnect from the IMAP server.

        Sends LOGOUT and drops the connection. Errors during logout are
        logged, not raised, since the connection is being discarded anyway.
        """
        if self._client and self.state.connected:
            try:
                logger.debug("Sending LOGOUT")
                await asyncio.wait_for(
                    self._client.logout(), timeout=self.account.connect_timeout
                )
            except Exception as e:
                logger.warning(f"Error during logout: {e}")
        self._reset()

    def _reset(self) -> None:
        self._client = None
        self.state = ConnectionState()

    def _require_client(self) -> aioimaplib.IMAP4:
        if not self.is_connected:
            raise IMAPConnectionError("Not connected")
        return self._client

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def list_folders(self) -> list[FolderDescriptor]:
        """
        Fetch the list of all folders.

        Returns:
            FolderDescriptor for every folder, in server order.

        Raises:
            IMAPConnectionError: If the connection fails.
            IMAPError: If the server rejects LIST.
        """
        client = self._require_client()
        logger.debug("Listing folders")

        try:
            # Pattern "" "*" means all folders from root
            response = await client.list('""', "*")
        except _TRANSPORT_ERRORS as e:
            raise IMAPConnectionError(f"LIST failed: {e}") from e

        if response.result != "OK":
            raise IMAPError(f"Failed to list folders: {_lines_text(response.lines)}")

        folders = []
        for line in response.lines:
            folder = parse_list_line(line)
            if folder:
                folders.append(folder)

        logger.debug(f"Found {len(folders)} folders")
        return folders

    async def examine_folder(self, folder_name: str) -> int:
        """
        Open a folder read-only and return its message count.

        EXAMINE never changes \\Recent or \\Seen state on the server.

        Args:
            folder_name: Name of the folder.

        Returns:
            Number of messages in the folder (EXISTS).

        Raises:
            FolderOpenError: If the server refuses to open the folder.
            IMAPConnectionError: If the connection fails.
        """
        client = self._require_client()
        logger.debug(f"Examining folder: {folder_name}")

        try:
            response = await client.examine(_quote_folder_name(folder_name))
        except _TRANSPORT_ERRORS as e:
            raise IMAPConnectionError(f"EXAMINE {folder_name} failed: {e}") from e

        if response.result != "OK":
            self.state.selected_folder = None
            raise FolderOpenError(
                f"Failed to open folder '{folder_name}': {_lines_text(response.lines)}"
            )

        status = parse_select_response(response.lines)
        self.state.selected_folder = folder_name
        logger.debug(f"Opened folder: {folder_name}, {status}")
        return status.get("EXISTS", 0)

    # =========================================================================
    # Message Fetching
    # =========================================================================

    async def fetch_messages(
        self,
        start: int,
        end: int,
        *,
        fetch_body: bool = True,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> AsyncIterator[FetchedMessage]:
        """
        Stream messages from the currently examined folder.

        Messages are requested in batches of batch_size sequence numbers
        and yielded in ascending sequence order.

        Args:
            start: First sequence number (inclusive).
            end: Last sequence number (inclusive).
            fetch_body: If True, fetch the full RFC822 source. Otherwise
                        only the header block is fetched.
            batch_size: Sequence numbers per FETCH command.

        Yields:
            FetchedMessage for each message in range.

        Raises:
            IMAPConnectionError: If the connection fails mid-stream.
            IMAPError: If the server rejects a FETCH.
        """
        client = self._require_client()
        if fetch_body:
            items = "(UID FLAGS RFC822.SIZE INTERNALDATE ENVELOPE BODY.PEEK[])"
        else:
            items = "(UID FLAGS RFC822.SIZE INTERNALDATE ENVELOPE BODY.PEEK[HEADER])"

        for batch_start in range(start, end + 1, batch_size):
            batch_end = min(end, batch_start + batch_size - 1)
            msg_range = f"{batch_start}:{batch_end}"
            logger.debug(f"Fetching {msg_range} from {self.state.selected_folder}")

            try:
                response = await client.fetch(msg_range, items)
            except _TRANSPORT_ERRORS as e:
                raise IMAPConnectionError(f"FETCH {msg_range} failed: {e}") from e

            if response.result != "OK":
                raise IMAPError(f"Fetch failed: {_lines_text(response.lines)}")

            for message in sorted(parse_fetch_response(response.lines), key=lambda m: m.sequence):
                yield message


# =============================================================================
# Response Parsing
# =============================================================================
# aioimaplib hands back response.lines as a flat list mixing text lines and
# raw literal payloads. A line ending in {N} announces that the next item is
# an N-byte literal. Everything below turns that into typed values.

_LIST_LINE = re.compile(r'^\(([^)]*)\)\s+(NIL|"(?:[^"\\]|\\.)*")\s+(.+)$', re.IGNORECASE)
_FETCH_START = re.compile(rb"^(\d+)\s+FETCH\s+", re.IGNORECASE)
_LITERAL_TAIL = re.compile(rb"\{(\d+)\+?\}\s*$")
_LITERAL_TAIL_TEXT = re.compile(r"\{(\d+)\+?\}\s*$")


def _to_text(item: Any) -> str:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item).decode("utf-8", errors="replace")
    return str(item)


def _lines_text(lines: list[Any]) -> str:
    return " ".join(_to_text(line) for line in lines)


def _unquote(value: str) -> str:
    """Strip surrounding quotes and IMAP backslash escapes."""
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return re.sub(r'\\(.)', r'\1', value[1:-1])
    return value


def parse_list_line(line: Any) -> FolderDescriptor | None:
    """
    Parse a single LIST response line into a FolderDescriptor.

    LIST response format:
        (\\HasNoChildren) "/" "INBOX"
        (\\HasNoChildren \\Sent) "/" "Sent"
        (\\Noselect) NIL Public
    """
    text = _to_text(line).strip()
    match = _LIST_LINE.match(text)
    if not match:
        # Status/completion lines ("LIST completed") land here
        if text and not text.lower().endswith("completed."):
            logger.debug(f"Skipping LIST line: {text}")
        return None

    flags_str, delimiter, name = match.groups()
    delimiter = "" if delimiter.upper() == "NIL" else _unquote(delimiter)
    return FolderDescriptor(
        name=_unquote(name.strip()),
        delimiter=delimiter,
        raw_flags=frozenset(flags_str.split()),
    )


def parse_select_response(lines: list[Any]) -> dict[str, int]:
    """Parse SELECT/EXAMINE untagged responses into a status dictionary."""
    status: dict[str, int] = {}
    patterns = {
        "EXISTS": re.compile(r"^(\d+)\s+EXISTS", re.IGNORECASE),
        "RECENT": re.compile(r"^(\d+)\s+RECENT", re.IGNORECASE),
        "UIDVALIDITY": re.compile(r"UIDVALIDITY\s+(\d+)", re.IGNORECASE),
        "UIDNEXT": re.compile(r"UIDNEXT\s+(\d+)", re.IGNORECASE),
        "UNSEEN": re.compile(r"UNSEEN\s+(\d+)", re.IGNORECASE),
    }
    for line in lines:
        text = _to_text(line).strip()
        for key, pattern in patterns.items():
            match = pattern.search(text)
            if match:
                status[key] = int(match.group(1))
    return status


class _Literal(bytes):
    """Raw literal payload inside a tokenized FETCH response."""


class _Atom(str):
    """Unquoted atom, as opposed to a quoted string."""


class _Paren(str):
    """Structural parenthesis token."""


_OPEN = _Paren("(")
_CLOSE = _Paren(")")


def _group_fetch_items(lines: list[Any]) -> list[tuple[int, list[bytes]]]:
    """
    Split response.lines into one segment list per "N FETCH" response.

    Text segments are bytes; literal payloads are _Literal.
    """
    groups: list[tuple[int, list[bytes]]] = []
    expect_literal = False

    for item in lines:
        data = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode("utf-8")

        if expect_literal:
            expect_literal = False
            if groups:
                groups[-1][1].append(_Literal(data))
            continue

        match = _FETCH_START.match(data)
        if match:
            groups.append((int(match.group(1)), [data[match.end():]]))
        elif groups:
            groups[-1][1].append(data)
        else:
            continue

        if _LITERAL_TAIL.search(data):
            expect_literal = True

    return groups


def _tokenize(segments: list[bytes]) -> list[Any]:
    """
    Tokenize FETCH data into parens, atoms, quoted strings, None (NIL) and
    literal payloads.

    Atoms may contain bracketed sections with spaces and parentheses,
    e.g. BODY[HEADER.FIELDS (REFERENCES)].
    """
    tokens: list[Any] = []

    for segment in segments:
        if isinstance(segment, _Literal):
            tokens.append(segment)
            continue

        # The {N} announcement is replaced by the literal that follows it
        text = _LITERAL_TAIL_TEXT.sub("", segment.decode("utf-8", errors="replace"))
        i, n = 0, len(text)

        while i < n:
            char = text[i]
            if char.isspace():
                i += 1
            elif char == "(":
                tokens.append(_OPEN)
                i += 1
            elif char == ")":
                tokens.append(_CLOSE)
                i += 1
            elif char == '"':
                j = i + 1
                buf = []
                while j < n and text[j] != '"':
                    if text[j] == "\\" and j + 1 < n:
                        j += 1
                    buf.append(text[j])
                    j += 1
                tokens.append("".join(buf))
                i = j + 1
            else:
                j = i
                depth = 0
                while j < n:
                    c = text[j]
                    if c == "[":
                        depth += 1
                    elif c == "]":
                        depth -= 1
                    elif depth <= 0 and (c.isspace() or c in "()"):
                        break
                    j += 1
                atom = text[i:j]
                tokens.append(None if atom.upper() == "NIL" else _Atom(atom))
                i = j

    return tokens


def _parse_list(tokens: list[Any], pos: int) -> tuple[list[Any], int]:
    """Parse a parenthesized list whose opening paren is tokens[pos]."""
    items: list[Any] = []
    pos += 1
    while pos < len(tokens):
        token = tokens[pos]
        if token is _CLOSE:
            return items, pos + 1
        if token is _OPEN:
            sub, pos = _parse_list(tokens, pos)
            items.append(sub)
        else:
            items.append(token)
            pos += 1
    return items, pos


def _str(value: Any) -> str:
    """Convert a parsed envelope value to text."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def decode_header_value(value: str) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    try:
        parts = email.header.decode_header(value)
    except email.errors.HeaderParseError:
        return value
    result = ""
    for part, charset in parts:
        if isinstance(part, bytes):
            try:
                result += part.decode(charset or "utf-8", errors="replace")
            except LookupError:
                result += part.decode("utf-8", errors="replace")
        else:
            result += part
    return result


def _parse_addresses(value: Any) -> tuple[Address, ...]:
    """Parse an ENVELOPE address list: ((name adl mailbox host) ...)."""
    if not isinstance(value, list):
        return ()
    addresses = []
    for entry in value:
        if not isinstance(entry, list) or len(entry) < 4:
            continue
        name, _adl, mailbox, host = entry[:4]
        if mailbox is None and host is None:
            continue
        addresses.append(Address(
            name=decode_header_value(_str(name)),
            mailbox=_str(mailbox),
            host=_str(host),
        ))
    return tuple(addresses)


def parse_envelope(value: Any) -> Envelope | None:
    """
    Parse a tokenized ENVELOPE structure.

    Format: (date subject from sender reply-to to cc bcc in-reply-to message-id)
    """
    if not isinstance(value, list) or len(value) < 10:
        return None
    return Envelope(
        date=_str(value[0]),
        subject=decode_header_value(_str(value[1])),
        from_=_parse_addresses(value[2]),
        sender=_parse_addresses(value[3]),
        reply_to=_parse_addresses(value[4]),
        to=_parse_addresses(value[5]),
        cc=_parse_addresses(value[6]),
        bcc=_parse_addresses(value[7]),
        in_reply_to=_str(value[8]),
        message_id=_str(value[9]),
    )


def parse_internal_date(value: str) -> datetime | None:
    """Parse INTERNALDATE, e.g. "17-Jul-1996 02:44:25 -0700"."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        logger.debug(f"Unparsable INTERNALDATE: {value!r}")
        return None


def parse_fetch_response(lines: list[Any]) -> list[FetchedMessage]:
    """
    Parse FETCH response lines into FetchedMessage records.

    Unknown data items are ignored. A response whose structure cannot be
    parsed at all is skipped with a warning rather than failing the batch.
    """
    messages = []

    for sequence, segments in _group_fetch_items(lines):
        tokens = _tokenize(segments)
        if not tokens or tokens[0] is not _OPEN:
            logger.warning(f"Malformed FETCH response for message {sequence}")
            continue

        items, _ = _parse_list(tokens, 0)
        data: dict[str, Any] = {}
        for i in range(0, len(items) - 1, 2):
            key = items[i]
            if isinstance(key, str):
                data[key.upper()] = items[i + 1]

        message = FetchedMessage(sequence=sequence)
        try:
            if data.get("UID") is not None:
                message.uid = int(data["UID"])
            if data.get("RFC822.SIZE") is not None:
                message.size = int(data["RFC822.SIZE"])
        except (TypeError, ValueError):
            logger.warning(f"Bad UID/SIZE in FETCH response for message {sequence}")
        if isinstance(data.get("FLAGS"), list):
            message.flags = frozenset(str(f) for f in data["FLAGS"] if f is not None)
        message.internal_date = parse_internal_date(_str(data.get("INTERNALDATE")))
        message.envelope = parse_envelope(data.get("ENVELOPE"))

        for key, value in data.items():
            if key.startswith("BODY[") and isinstance(value, (bytes, bytearray)):
                message.raw = bytes(value)
                break
            if key.startswith("BODY[") and isinstance(value, str):
                # Small bodies may arrive as quoted strings
                message.raw = value.encode("utf-8")
                break

        messages.append(message)

    return messages


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when the server is unreachable, slow, or the link drops."""
    pass


class IMAPAuthenticationError(IMAPConnectionError):
    """Raised when IMAP authentication fails."""
    pass


class FolderOpenError(IMAPError):
    """Raised when a folder cannot be opened. The connection stays usable."""
    pass
