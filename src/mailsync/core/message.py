# =============================================================================
# Message Model
# =============================================================================
# Represents an email message at the two ends of the sync pipeline:
#
#   - FetchedMessage / Envelope / Address: typed protocol attributes as
#     parsed out of a FETCH response. Nothing past the normalizer touches
#     raw IMAP response lines.
#   - Message: the canonical record that is written to storage. It is
#     keyed by (account_id, message_id) so re-syncing the same mailbox
#     never produces duplicates.
#
# Only the flags and the folder assignment of a stored message are mutable
# by later syncs. Everything else is fixed at first insert.
# =============================================================================

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntFlag

from mailsync.core.folder import StandardFolder


class MessageFlags(IntFlag):
    """
    Message state flags, stored as a bitmask.

    Derived from IMAP system and keyword flags:
        - READ: \\Seen
        - STARRED: \\Flagged
        - IMPORTANT: \\Important or the $Important keyword (Gmail)

    Usage:
        if msg.flags & MessageFlags.READ:
            print("Message has been read")
    """
    NONE = 0
    READ = 1 << 0
    STARRED = 1 << 1
    IMPORTANT = 1 << 2

    @classmethod
    def from_imap(cls, imap_flags: frozenset[str] | set[str] | list[str]) -> "MessageFlags":
        """Convert raw IMAP flags to MessageFlags."""
        upper = {f.upper() for f in imap_flags}
        result = cls.NONE
        if "\\SEEN" in upper:
            result |= cls.READ
        if "\\FLAGGED" in upper:
            result |= cls.STARRED
        if "\\IMPORTANT" in upper or "$IMPORTANT" in upper:
            result |= cls.IMPORTANT
        return result


# =============================================================================
# Protocol Attributes
# =============================================================================

@dataclass(frozen=True)
class Address:
    """
    One address structure from an ENVELOPE.

    IMAP splits an address into (name, adl, mailbox, host); the source
    route (adl) is obsolete and dropped.
    """
    name: str = ""
    mailbox: str = ""
    host: str = ""

    @property
    def email(self) -> str:
        if self.mailbox and self.host:
            return f"{self.mailbox}@{self.host}"
        return self.mailbox


@dataclass(frozen=True)
class Envelope:
    """
    Parsed IMAP ENVELOPE (RFC 3501 section 7.4.2).

    Field order on the wire is: date, subject, from, sender, reply-to,
    to, cc, bcc, in-reply-to, message-id.
    """
    date: str = ""
    subject: str = ""
    from_: tuple[Address, ...] = ()
    sender: tuple[Address, ...] = ()
    reply_to: tuple[Address, ...] = ()
    to: tuple[Address, ...] = ()
    cc: tuple[Address, ...] = ()
    bcc: tuple[Address, ...] = ()
    in_reply_to: str = ""
    message_id: str = ""


@dataclass
class FetchedMessage:
    """
    A single message as returned by FETCH.

    Attributes:
        sequence: Message sequence number within the selected folder.
        uid: IMAP UID, if it was requested.
        flags: Raw IMAP flags (e.g., {"\\Seen", "$Important"}).
        size: RFC822.SIZE in bytes.
        internal_date: INTERNALDATE, the server's receive time.
        envelope: Parsed ENVELOPE, if present.
        raw: Full RFC822 bytes when the body was fetched, else None.
    """
    sequence: int
    uid: int | None = None
    flags: frozenset[str] = field(default_factory=frozenset)
    size: int = 0
    internal_date: datetime | None = None
    envelope: Envelope | None = None
    raw: bytes | None = None


# =============================================================================
# Canonical Message
# =============================================================================

@dataclass
class AttachmentMeta:
    """
    Metadata for a file attached to a message. The bytes are not stored.

    Attributes:
        filename: Original filename ("unnamed" when the part has none).
        content_type: MIME type (e.g., "application/pdf").
        size: Decoded payload size in bytes.
        content_id: Content-ID for inline parts, without angle brackets.
        disposition: "attachment" or "inline".
    """
    filename: str = "unnamed"
    content_type: str = "application/octet-stream"
    size: int = 0
    content_id: str | None = None
    disposition: str = "attachment"


@dataclass
class Message:
    """
    The canonical form of a synced email message.

    Attributes:
        message_id: RFC 5322 Message-ID without angle brackets, or a
                    synthesized "generated-..." id. Dedup key together
                    with the account id.
        subject: Subject line (RFC 2047 decoded).
        text_body: First text/plain part.
        html_body: First text/html part.

        from_address: Sender email ("unknown@unknown.com" if unparsable).
        from_name: Sender display name.
        to: "To" addresses.
        cc: "CC" addresses.
        bcc: "BCC" addresses.

        sent_at: Date header, normalized to UTC.
        received_at: INTERNALDATE, falling back to sent_at or sync time.

        folder_label: Server folder the message was found in.
        standard_folder: Storage bucket derived from folder_label.
        flags: Read/starred/important state.

        thread_key: Best-effort conversation key.
        in_reply_to: Message-ID this replies to.
        references: Message-IDs from the References header.
        attachments: Attachment metadata.
        size_bytes: RFC822.SIZE.
        uid: IMAP UID in folder_label, informational only.
    """

    message_id: str
    subject: str = ""
    text_body: str = ""
    html_body: str = ""

    # Addresses
    from_address: str = ""
    from_name: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)

    # Timestamps
    sent_at: datetime | None = None
    received_at: datetime | None = None

    # Placement and mutable state
    folder_label: str = ""
    standard_folder: StandardFolder = StandardFolder.INBOX
    flags: MessageFlags = MessageFlags.NONE

    # Threading
    thread_key: str | None = None
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)

    attachments: list[AttachmentMeta] = field(default_factory=list)
    size_bytes: int = 0
    uid: int | None = None

    # -------------------------------------------------------------------------
    # Convenience properties for checking flags
    # -------------------------------------------------------------------------

    @property
    def is_read(self) -> bool:
        return bool(self.flags & MessageFlags.READ)

    @property
    def is_starred(self) -> bool:
        return bool(self.flags & MessageFlags.STARRED)

    @property
    def is_important(self) -> bool:
        return bool(self.flags & MessageFlags.IMPORTANT)

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

    def __repr__(self) -> str:
        return (
            f"Message(message_id={self.message_id!r}, subject={self.subject!r}, "
            f"from={self.from_address!r}, folder={self.folder_label!r})"
        )
