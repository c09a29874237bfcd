# =============================================================================
# Message Normalizer
# =============================================================================
# Turns one fetched message (raw RFC822 bytes plus the typed FETCH
# attributes) into the canonical Message record that is stored.
#
# Two paths:
#   1. Full parse: headers, bodies and attachment metadata come from the
#      raw source; the ENVELOPE fills any gaps.
#   2. Degraded: if the source is missing or unparsable, a record is built
#      from the FETCH attributes alone (envelope, flags, size, dates).
#
# A single bad message must never abort a folder, so the full parse falls
# back to the degraded one. Only when even that is impossible is a
# MessageParseError raised for the caller to record.
#
# Derived fields:
#   - message_id: header value without <>; synthesized when absent
#   - thread_key: In-Reply-To, else first References entry, else a hash
#                 of the subject with Re:/Fwd: prefixes removed
#   - standard_folder: storage bucket from the folder mapper
# =============================================================================

import email
import email.utils
import hashlib
import logging
import re
import secrets
import time
from datetime import datetime, timezone
from email.message import Message as EmailMessage

from mailsync.core import (
    Address,
    AttachmentMeta,
    Envelope,
    FetchedMessage,
    Message,
    MessageFlags,
)
from mailsync.folders.mapper import StandardFolderMapper
from mailsync.imap.client import decode_header_value

logger = logging.getLogger(__name__)


# Sender used when the From header is missing or unparsable
UNKNOWN_SENDER = "unknown@unknown.com"

_REPLY_PREFIX = re.compile(r"^\s*((re|fwd?|fw)\s*:\s*)+", re.IGNORECASE)


def strip_angle_brackets(value: str) -> str:
    """Remove whitespace and surrounding <> from a Message-ID."""
    return value.strip().strip("<>").strip()


def thread_key_for(subject: str, in_reply_to: str = "", references: list[str] | None = None) -> str | None:
    """
    Derive a best-effort conversation key.

    Args:
        subject: Message subject.
        in_reply_to: Message-ID this message replies to.
        references: Message-IDs from the References header.

    Returns:
        in_reply_to if set, else the first reference, else
        "thread-<hash>" of the normalized subject, else None.

    Example:
        >>> thread_key_for("Re: Fwd: Lunch") == thread_key_for("lunch")
        True
    """
    if in_reply_to:
        return in_reply_to
    if references:
        return references[0]

    normalized = _REPLY_PREFIX.sub("", subject or "").strip().lower()
    if not normalized:
        return None
    digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]
    return f"thread-{digest}"


def synthesize_message_id(attributes: FetchedMessage, sender: str = "", subject: str = "", date: str = "") -> str:
    """
    Build a Message-ID for a message that has none.

    When date, sender or subject are known, the id is a hash of those plus
    the message size, so re-syncing the same message yields the same id and
    deduplication still holds. Otherwise a time-based random id is used.
    """
    if date or sender or subject:
        basis = "|".join((date, sender.lower(), subject, str(attributes.size)))
        digest = hashlib.sha1(basis.encode("utf-8")).hexdigest()[:24]
        return f"generated-{digest}"
    return f"generated-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        # Assume UTC if no timezone
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_date(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return _to_utc(email.utils.parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        logger.debug(f"Unparsable Date header: {value!r}")
        return None


def _envelope_emails(addresses: tuple[Address, ...]) -> list[str]:
    return [a.email for a in addresses if a.email]


def _header_emails(msg: EmailMessage, header: str) -> list[tuple[str, str]]:
    """Return (name, email) pairs for an address header."""
    values = [decode_header_value(str(v)) for v in msg.get_all(header, [])]
    return [(name, addr) for name, addr in email.utils.getaddresses(values) if addr]


class MessageNormalizer:
    """
    Builds canonical Message records from fetched data.

    Usage:
        >>> normalizer = MessageNormalizer()
        >>> message = normalizer.normalize(fetched.raw, fetched, "INBOX")

    Attributes:
        mapper: Folder mapper used to assign the storage bucket.
    """

    def __init__(self, mapper: StandardFolderMapper | None = None) -> None:
        self.mapper = mapper or StandardFolderMapper()

    def normalize(
        self,
        raw: bytes | None,
        attributes: FetchedMessage,
        folder_label: str,
    ) -> Message:
        """
        Normalize one fetched message.

        Args:
            raw: RFC822 source (or header block), if it was fetched.
            attributes: Typed FETCH attributes for the message.
            folder_label: Server folder the message was found in.

        Returns:
            Canonical Message.

        Raises:
            MessageParseError: If not even a degraded record can be built.
        """
        if raw:
            try:
                message = self._from_source(raw, attributes)
            except Exception as e:
                logger.warning(
                    f"Could not parse message {attributes.sequence} in {folder_label}, "
                    f"using envelope only: {e}"
                )
            else:
                return self._finish(message, attributes, folder_label)

        if attributes.envelope is None:
            raise MessageParseError(
                f"Message {attributes.sequence} in {folder_label} has neither "
                f"a parsable source nor an envelope"
            )

        return self._finish(self._from_envelope(attributes.envelope, attributes), attributes, folder_label)

    # -------------------------------------------------------------------------
    # Full parse
    # -------------------------------------------------------------------------

    def _from_source(self, raw: bytes, attributes: FetchedMessage) -> Message:
        """Build a Message from the RFC822 source, using the envelope for gaps."""
        msg = email.message_from_bytes(raw)
        envelope = attributes.envelope or Envelope()

        subject = decode_header_value(str(msg.get("Subject", ""))) or envelope.subject
        date_header = str(msg.get("Date", "")) or envelope.date

        senders = _header_emails(msg, "From")
        if senders:
            from_name, from_address = senders[0]
        elif envelope.from_:
            from_name, from_address = envelope.from_[0].name, envelope.from_[0].email
        else:
            from_name, from_address = "", ""

        to = [addr for _, addr in _header_emails(msg, "To")] or _envelope_emails(envelope.to)
        cc = [addr for _, addr in _header_emails(msg, "Cc")] or _envelope_emails(envelope.cc)
        bcc = [addr for _, addr in _header_emails(msg, "Bcc")] or _envelope_emails(envelope.bcc)

        raw_id = strip_angle_brackets(str(msg.get("Message-ID", "")) or envelope.message_id)
        in_reply_to = strip_angle_brackets(str(msg.get("In-Reply-To", "")) or envelope.in_reply_to)
        references = [
            strip_angle_brackets(ref)
            for ref in str(msg.get("References", "")).split()
            if strip_angle_brackets(ref)
        ]

        text_body, html_body, attachments = self._parse_body(msg)

        return Message(
            message_id=raw_id or synthesize_message_id(attributes, from_address, subject, date_header),
            subject=subject,
            text_body=text_body,
            html_body=html_body,
            from_address=from_address,
            from_name=from_name,
            to=to,
            cc=cc,
            bcc=bcc,
            sent_at=_parse_date(date_header),
            in_reply_to=in_reply_to,
            references=references,
            attachments=attachments,
        )

    def _parse_body(self, msg: EmailMessage) -> tuple[str, str, list[AttachmentMeta]]:
        """
        Extract the first text/plain and text/html parts plus attachment metadata.

        Returns:
            Tuple of (text_body, html_body, attachments).
        """
        text_body = ""
        html_body = ""
        attachments: list[AttachmentMeta] = []

        for part in msg.walk():
            # Skip multipart containers
            if part.is_multipart():
                continue

            content_type = part.get_content_type()
            disposition = (part.get_content_disposition() or "").lower()

            if disposition == "attachment" or (disposition == "inline" and part.get_filename()):
                attachments.append(self._attachment_meta(part, disposition))
            elif content_type == "text/plain" and not text_body:
                text_body = self._decode_part(part)
            elif content_type == "text/html" and not html_body:
                html_body = self._decode_part(part)
            elif not content_type.startswith("text/"):
                attachments.append(self._attachment_meta(part, disposition or "inline"))

        return text_body, html_body, attachments

    def _decode_part(self, part: EmailMessage) -> str:
        """Decode a message part to string using its declared charset."""
        payload = part.get_payload(decode=True)
        if isinstance(payload, bytes):
            charset = part.get_content_charset() or "utf-8"
            try:
                return payload.decode(charset, errors="replace")
            except LookupError:
                return payload.decode("utf-8", errors="replace")
        return str(payload) if payload else ""

    def _attachment_meta(self, part: EmailMessage, disposition: str) -> AttachmentMeta:
        payload = part.get_payload(decode=True)
        filename = part.get_filename()
        content_id = part.get("Content-ID")
        return AttachmentMeta(
            filename=decode_header_value(filename) if filename else "unnamed",
            content_type=part.get_content_type() or "application/octet-stream",
            size=len(payload) if isinstance(payload, bytes) else 0,
            content_id=strip_angle_brackets(str(content_id)) if content_id else None,
            disposition=disposition,
        )

    # -------------------------------------------------------------------------
    # Degraded parse
    # -------------------------------------------------------------------------

    def _from_envelope(self, envelope: Envelope, attributes: FetchedMessage) -> Message:
        """Build a Message from the ENVELOPE alone."""
        sender = envelope.from_[0] if envelope.from_ else None
        from_address = sender.email if sender else ""
        raw_id = strip_angle_brackets(envelope.message_id)

        return Message(
            message_id=raw_id or synthesize_message_id(
                attributes, from_address, envelope.subject, envelope.date
            ),
            subject=envelope.subject,
            from_address=from_address,
            from_name=sender.name if sender else "",
            to=_envelope_emails(envelope.to),
            cc=_envelope_emails(envelope.cc),
            bcc=_envelope_emails(envelope.bcc),
            sent_at=_parse_date(envelope.date),
            in_reply_to=strip_angle_brackets(envelope.in_reply_to),
        )

    # -------------------------------------------------------------------------
    # Shared
    # -------------------------------------------------------------------------

    def _finish(self, message: Message, attributes: FetchedMessage, folder_label: str) -> Message:
        """Fill in the fields that come from FETCH attributes and the folder."""
        if not message.from_address or "@" not in message.from_address:
            message.from_address = UNKNOWN_SENDER

        message.flags = MessageFlags.from_imap(attributes.flags)
        message.size_bytes = attributes.size
        message.uid = attributes.uid
        message.received_at = (
            _to_utc(attributes.internal_date)
            or message.sent_at
            or datetime.now(timezone.utc)
        )
        message.folder_label = folder_label
        message.standard_folder = self.mapper.map_to_standard_folder(
            folder_label, message.from_address, message.to
        ).standard_folder
        message.thread_key = thread_key_for(message.subject, message.in_reply_to, message.references)
        return message


# =============================================================================
# Exceptions
# =============================================================================

class MessageParseError(Exception):
    """Raised when a fetched message cannot be turned into a record at all."""
    pass
