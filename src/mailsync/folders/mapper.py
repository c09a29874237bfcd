# =============================================================================
# Standard Folder Mapper
# =============================================================================
# Files every stored message under one of four buckets:
#
#   inbox | sent | deleted | spam
#
# This is separate from the folder classifier on purpose. The classifier
# decides which server folders to sync (seven categories); the mapper
# decides where a synced message lives locally (four buckets).
#
# Check order: spam -> deleted -> sent -> inbox, each accepted at >= 0.7.
# Below that, heuristics take over. The mapper is deliberately
# conservative: an unrecognized folder lands in inbox with low confidence,
# and is never guessed to be spam unless its name says so.
# =============================================================================

import logging
import re
from dataclasses import dataclass
from typing import Iterable

from mailsync.core import FolderMapping, StandardFolder

logger = logging.getLogger(__name__)


ACCEPT_THRESHOLD = 0.7
HIGH_CONFIDENCE = 0.8
LOW_CONFIDENCE = 0.6


# (pattern, confidence, reason), tried in order within each bucket
_Pattern = tuple[re.Pattern[str], float, str]


def _p(regex: str, confidence: float, reason: str) -> _Pattern:
    return re.compile(regex, re.IGNORECASE), confidence, reason


SPAM_PATTERNS: tuple[_Pattern, ...] = (
    # Gmail
    _p(r"^\[Gmail\]/Spam$", 1.0, "Gmail spam folder"),
    _p(r"^\[Google Mail\]/Spam$", 1.0, "Google Mail spam folder"),
    # Yahoo
    _p(r"^Bulk Mail$", 1.0, "Yahoo bulk mail folder"),
    _p(r"^Bulk$", 0.9, "Bulk mail folder"),
    # Outlook / Hotmail
    _p(r"^Junk E?-?mail$", 1.0, "Outlook junk folder"),
    _p(r"^Junk$", 0.95, "Junk folder"),
    # Generic
    _p(r"^Spam$", 0.98, "Generic spam folder"),
    _p(r"^Junk Mail$", 0.95, "Junk Mail folder"),
    _p(r"^Quarantine$", 0.9, "Quarantine folder"),
    # Special-use names sometimes leak into folder paths
    _p(r"\\Junk", 1.0, "IMAP Junk flag"),
    _p(r"\\Spam", 1.0, "IMAP Spam flag"),
    _p(r"INBOX\.spam", 0.9, "IMAP spam subfolder"),
    _p(r"INBOX\.junk", 0.9, "IMAP junk subfolder"),
    # Partial matches
    _p(r"spam", 0.8, 'Contains "spam"'),
    _p(r"junk", 0.8, 'Contains "junk"'),
    _p(r"unsolicited", 0.7, "Unsolicited mail folder"),
)

DELETED_PATTERNS: tuple[_Pattern, ...] = (
    _p(r"^\[Gmail\]/Trash$", 1.0, "Gmail trash folder"),
    _p(r"^\[Google Mail\]/Trash$", 1.0, "Google Mail trash folder"),
    _p(r"^Deleted Items$", 1.0, "Outlook deleted items"),
    _p(r"^Deleted$", 0.9, "Deleted folder"),
    _p(r"^Trash$", 0.98, "Generic trash folder"),
    _p(r"^Bin$", 0.9, "Bin folder"),
    _p(r"^Recycle Bin$", 0.9, "Recycle bin folder"),
    _p(r"\\Trash", 1.0, "IMAP Trash flag"),
    _p(r"\\Deleted", 1.0, "IMAP Deleted flag"),
    _p(r"trash", 0.8, 'Contains "trash"'),
    _p(r"deleted", 0.8, 'Contains "deleted"'),
    _p(r"remove", 0.7, 'Contains "remove"'),
)

SENT_PATTERNS: tuple[_Pattern, ...] = (
    _p(r"^\[Gmail\]/Sent Mail$", 1.0, "Gmail sent mail folder"),
    _p(r"^\[Google Mail\]/Sent Mail$", 1.0, "Google Mail sent folder"),
    _p(r"^Sent Items$", 1.0, "Outlook sent items"),
    _p(r"^Sent$", 0.95, "Generic sent folder"),
    _p(r"^Sent Mail$", 0.95, "Sent mail folder"),
    _p(r"^Outbox$", 0.9, "Outbox folder"),
    _p(r"^Out$", 0.8, "Out folder"),
    _p(r"\\Sent", 1.0, "IMAP Sent flag"),
    _p(r"sent", 0.8, 'Contains "sent"'),
    _p(r"outgoing", 0.7, 'Contains "outgoing"'),
)

INBOX_PATTERNS: tuple[_Pattern, ...] = (
    _p(r"^INBOX$", 1.0, "Standard INBOX"),
    _p(r"^Incoming$", 0.9, "Incoming folder"),
    _p(r"^In$", 0.8, "In folder"),
    _p(r"^Mail$", 0.7, "Generic mail folder"),
)

# Checked in this order
_BUCKETS: tuple[tuple[StandardFolder, tuple[_Pattern, ...]], ...] = (
    (StandardFolder.SPAM, SPAM_PATTERNS),
    (StandardFolder.DELETED, DELETED_PATTERNS),
    (StandardFolder.SENT, SENT_PATTERNS),
    (StandardFolder.INBOX, INBOX_PATTERNS),
)

INBOX_CUES = re.compile(
    r"important|priority|flagged|starred|archive|personal|work|business|"
    r"newsletter|notification|social|promotion|update|receipt|invoice",
    re.IGNORECASE,
)
SPAM_CUES = re.compile(r"unwanted|blocked|filter|quarantine|suspicious", re.IGNORECASE)
DRAFT_CUES = re.compile(r"draft|template", re.IGNORECASE)
PROMO_CUES = re.compile(r"bulk|promo|marketing|\bads?\b", re.IGNORECASE)


@dataclass
class MappingStats:
    """Summary counts returned by map_multiple_folders()."""
    inbox: int = 0
    sent: int = 0
    deleted: int = 0
    spam: int = 0
    high_confidence: int = 0
    low_confidence: int = 0


class StandardFolderMapper:
    """
    Maps server folder labels onto the four storage buckets.

    Usage:
        >>> mapper = StandardFolderMapper(owner_address="me@example.com")
        >>> mapper.map_to_standard_folder("Sent Items").standard_folder
        <StandardFolder.SENT: 'sent'>

    Attributes:
        owner_address: The account's own address. When set, a message in an
                       unrecognized folder that was sent from this address
                       is filed under sent.
    """

    def __init__(self, owner_address: str | None = None) -> None:
        self.owner_address = owner_address.lower() if owner_address else None

    def map_to_standard_folder(
        self,
        name: str,
        from_address: str | None = None,
        to_addresses: Iterable[str] | None = None,
    ) -> FolderMapping:
        """
        Map a folder label (optionally with message addresses) to a bucket.

        Args:
            name: Server folder name.
            from_address: Sender of the message being filed, if known.
            to_addresses: Recipients of the message being filed, if known.

        Returns:
            FolderMapping with bucket, confidence and reason.
        """
        folder = name.strip()

        for bucket, patterns in _BUCKETS:
            for pattern, confidence, reason in patterns:
                if confidence >= ACCEPT_THRESHOLD and pattern.search(folder):
                    return FolderMapping(folder, bucket, confidence, reason)

        return self._apply_heuristics(folder, from_address, to_addresses)

    def _apply_heuristics(
        self,
        folder: str,
        from_address: str | None,
        to_addresses: Iterable[str] | None,
    ) -> FolderMapping:
        """Best guess for a folder no pattern recognized."""
        if self._sent_by_owner(from_address, to_addresses):
            return FolderMapping(
                folder, StandardFolder.SENT, 0.6,
                f'Heuristic: message in "{folder}" was sent by the account owner',
            )

        if INBOX_CUES.search(folder):
            return FolderMapping(
                folder, StandardFolder.INBOX, 0.6,
                f'Heuristic: "{folder}" likely contains inbox-type emails',
            )

        if SPAM_CUES.search(folder):
            return FolderMapping(
                folder, StandardFolder.SPAM, 0.6,
                f'Heuristic: "{folder}" likely contains spam emails',
            )

        if DRAFT_CUES.search(folder):
            return FolderMapping(
                folder, StandardFolder.INBOX, 0.5,
                f'Heuristic: "{folder}" contains draft emails, mapping to inbox',
            )

        if PROMO_CUES.search(folder):
            return FolderMapping(
                folder, StandardFolder.SPAM, 0.4,
                f'Conservative: "{folder}" likely promotional/bulk, mapped to spam',
            )

        return FolderMapping(
            folder, StandardFolder.INBOX, 0.2,
            f'Conservative default: Unknown folder "{folder}" mapped to inbox '
            f"with low confidence",
        )

    def _sent_by_owner(
        self,
        from_address: str | None,
        to_addresses: Iterable[str] | None,
    ) -> bool:
        if not self.owner_address or not from_address:
            return False
        if from_address.lower() != self.owner_address:
            return False
        # A note-to-self is still received mail
        recipients = {a.lower() for a in (to_addresses or ())}
        return recipients != {self.owner_address}

    def map_multiple_folders(
        self,
        names: Iterable[str],
    ) -> tuple[list[FolderMapping], MappingStats]:
        """
        Map several folders and summarize the outcome.

        Low-confidence mappings are logged as warnings so they can be
        reviewed.

        Returns:
            Tuple of (mappings, stats).
        """
        mappings = [self.map_to_standard_folder(name) for name in names]

        stats = MappingStats()
        for mapping in mappings:
            bucket = mapping.standard_folder.value
            setattr(stats, bucket, getattr(stats, bucket) + 1)
            if mapping.confidence >= HIGH_CONFIDENCE:
                stats.high_confidence += 1
            if mapping.confidence < LOW_CONFIDENCE:
                stats.low_confidence += 1

        logger.info(
            f"Mapped {len(mappings)} folders: {stats.inbox} inbox, {stats.sent} sent, "
            f"{stats.deleted} deleted, {stats.spam} spam"
        )

        if stats.low_confidence:
            logger.warning(
                f"{stats.low_confidence} folders mapped with low confidence - "
                f"manual review recommended"
            )
            for mapping in mappings:
                if mapping.confidence < LOW_CONFIDENCE:
                    logger.warning(
                        f"Low confidence: {mapping.original_folder} -> "
                        f"{mapping.standard_folder.value} ({mapping.confidence:.2f}) - "
                        f"{mapping.reason}"
                    )

        return mappings, stats


# Shared mapper without an owner address
_default_mapper = StandardFolderMapper()


def map_to_standard_folder(
    name: str,
    from_address: str | None = None,
    to_addresses: Iterable[str] | None = None,
) -> FolderMapping:
    """Module-level shortcut for StandardFolderMapper().map_to_standard_folder()."""
    return _default_mapper.map_to_standard_folder(name, from_address, to_addresses)
