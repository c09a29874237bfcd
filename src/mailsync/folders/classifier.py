# =============================================================================
# Folder Classifier
# =============================================================================
# Maps a raw folder name (plus optional RFC 6154 special-use flags) to a
# folder category with a confidence score. Pure and deterministic: no I/O,
# no state.
#
# Rules are an ordered table. Evaluation order is fixed:
#
#   spam/junk -> trash -> sent -> drafts -> inbox -> archive
#
# Spam rules always run first, so "INBOX.junk" or "Junk E-mail" can never be
# mistaken for an inbox. Special-use flags sit inside their category's slot
# with confidence 1.0. The first rule that matches with confidence >= 0.7
# wins; if nothing qualifies, a weaker heuristic pass looks for substring
# cues, and finally the folder is classified as OTHER.
#
# Provider conventions covered:
#   - Gmail:    [Gmail]/Spam, [Gmail]/Sent Mail, [Gmail]/All Mail, ...
#   - Yahoo:    Bulk Mail
#   - Outlook:  Junk E-mail, Sent Items, Deleted Items
#   - Courier/Dovecot style hierarchies: INBOX.Junk, INBOX/Sent
# =============================================================================

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from mailsync.core import FolderCategory, FolderClassification, FolderDescriptor

logger = logging.getLogger(__name__)


# Confidence needed for a rule to win outright
MATCH_THRESHOLD = 0.7

# Lower bar used when nothing clears MATCH_THRESHOLD
FALLBACK_THRESHOLD = 0.5

# Confidence assigned to folders no rule or heuristic recognizes
UNKNOWN_CONFIDENCE = 0.2

# Categories synced by default
DEFAULT_SYNC_CATEGORIES = (
    FolderCategory.INBOX,
    FolderCategory.SENT,
    FolderCategory.DRAFTS,
)


@dataclass(frozen=True)
class FolderRule:
    """
    One entry in the classification table.

    A rule matches either on the folder name (regex, case-insensitive) or on
    a special-use flag, never both.

    Attributes:
        category: Category assigned when the rule matches.
        confidence: Confidence assigned when the rule matches.
        reason: Human-readable explanation.
        pattern: Compiled name pattern, or None for flag rules.
        flag: Upper-cased special-use flag (e.g., "\\JUNK"), or None.
    """
    category: FolderCategory
    confidence: float
    reason: str
    pattern: re.Pattern[str] | None = None
    flag: str | None = None

    def matches(self, names: tuple[str, ...], flags: frozenset[str]) -> bool:
        if self.flag is not None:
            return self.flag in flags
        if self.pattern is not None:
            return any(self.pattern.search(n) for n in names)
        return False


def _name(category: FolderCategory, regex: str, confidence: float, reason: str) -> FolderRule:
    return FolderRule(category, confidence, reason, pattern=re.compile(regex, re.IGNORECASE))


def _flag(category: FolderCategory, flag: str, reason: str) -> FolderRule:
    return FolderRule(category, 1.0, reason, flag=flag.upper())


_SPAM = FolderCategory.SPAM
_TRASH = FolderCategory.TRASH
_SENT = FolderCategory.SENT
_DRAFTS = FolderCategory.DRAFTS
_INBOX = FolderCategory.INBOX
_ARCHIVE = FolderCategory.ARCHIVE


# The order of this tuple is the evaluation order.
RULES: tuple[FolderRule, ...] = (
    # Spam / junk
    _flag(_SPAM, "\\Junk", "IMAP \\Junk flag"),
    _flag(_SPAM, "\\Spam", "IMAP \\Spam flag"),
    _name(_SPAM, r"^\[Gmail\]/Spam$", 1.0, "Gmail spam folder"),
    _name(_SPAM, r"^\[Google Mail\]/Spam$", 1.0, "Google Mail spam folder"),
    _name(_SPAM, r"^Bulk Mail$", 1.0, "Yahoo bulk mail folder"),
    _name(_SPAM, r"^Junk E?-?mail$", 1.0, "Outlook junk folder"),
    _name(_SPAM, r"^Spam$", 0.95, "Spam folder"),
    _name(_SPAM, r"^Junk Mail$", 0.95, "Junk Mail folder"),
    _name(_SPAM, r"^Junk$", 0.9, "Junk folder"),
    _name(_SPAM, r"INBOX\.(junk|spam)", 0.8, "Junk subfolder of INBOX"),
    _name(_SPAM, r"spam", 0.7, 'Contains "spam"'),
    _name(_SPAM, r"junk", 0.7, 'Contains "junk"'),

    # Trash
    _flag(_TRASH, "\\Trash", "IMAP \\Trash flag"),
    _name(_TRASH, r"^\[Gmail\]/Trash$", 1.0, "Gmail trash folder"),
    _name(_TRASH, r"^\[Google Mail\]/Trash$", 1.0, "Google Mail trash folder"),
    _name(_TRASH, r"^Trash$", 0.9, "Trash folder"),
    _name(_TRASH, r"^Deleted Items$", 0.9, "Outlook deleted items"),
    _name(_TRASH, r"^Deleted( Messages)?$", 0.8, "Deleted folder"),

    # Sent
    _flag(_SENT, "\\Sent", "IMAP \\Sent flag"),
    _name(_SENT, r"^\[Gmail\]/Sent Mail$", 1.0, "Gmail sent mail folder"),
    _name(_SENT, r"^\[Google Mail\]/Sent Mail$", 1.0, "Google Mail sent mail folder"),
    _name(_SENT, r"^Sent$", 0.9, "Sent folder"),
    _name(_SENT, r"^Sent Mail$", 0.9, "Sent Mail folder"),
    _name(_SENT, r"^Sent Items$", 0.9, "Outlook sent items"),
    _name(_SENT, r"^Sent Messages$", 0.9, "Apple sent messages"),

    # Drafts
    _flag(_DRAFTS, "\\Drafts", "IMAP \\Drafts flag"),
    _name(_DRAFTS, r"^\[Gmail\]/Drafts$", 1.0, "Gmail drafts folder"),
    _name(_DRAFTS, r"^Drafts$", 0.9, "Drafts folder"),
    _name(_DRAFTS, r"^Draft$", 0.8, "Draft folder"),

    # Inbox
    _name(_INBOX, r"^INBOX$", 1.0, "Primary inbox"),

    # Archive
    _flag(_ARCHIVE, "\\Archive", "IMAP \\Archive flag"),
    _flag(_ARCHIVE, "\\All", "IMAP \\All flag"),
    _name(_ARCHIVE, r"^\[Gmail\]/All Mail$", 1.0, "Gmail all mail folder"),
    _name(_ARCHIVE, r"^\[Google Mail\]/All Mail$", 1.0, "Google Mail all mail folder"),
    _name(_ARCHIVE, r"^Archive$", 0.9, "Archive folder"),
    _name(_ARCHIVE, r"^Archives$", 0.8, "Archives folder"),
)

# Substring cues tried only when no rule reached MATCH_THRESHOLD.
HEURISTICS: tuple[FolderRule, ...] = (
    _name(_SPAM, r"quarantine|unsolicited", 0.6, "Looks like a quarantine folder"),
    _name(_SPAM, r"promo|bulk|marketing", 0.5, "Looks like promotional mail"),
    _name(_TRASH, r"\bbin\b|recycle", 0.6, "Looks like a recycle bin"),
    _name(_SENT, r"outbox|outgoing", 0.6, "Looks like outgoing mail"),
    _name(_DRAFTS, r"draft|template", 0.5, "Looks like drafts or templates"),
    _name(_ARCHIVE, r"archive|all mail", 0.6, "Looks like an archive"),
)


# Explanations shown by folder_recommendations()
_RECOMMENDATION_REASONS = {
    FolderCategory.INBOX: "Primary inbox folder",
    FolderCategory.SENT: "Sent mail folder",
    FolderCategory.DRAFTS: "Draft messages folder",
    FolderCategory.SPAM: "Spam/junk folder - contains filtered emails",
    FolderCategory.TRASH: "Deleted items - usually not needed",
    FolderCategory.ARCHIVE: "Archive folder - contains all mail (may duplicate inbox)",
    FolderCategory.OTHER: "Unknown folder type - manual review recommended",
}


@dataclass
class SyncSuggestion:
    """
    Folders partitioned by whether they should be synced.

    Attributes:
        recommended: Folders to sync by default.
        spam_only: Every folder classified as spam, whether or not it is
                   also in recommended.
        other: Folders excluded by default (trash, archive, unknown).
    """
    recommended: list[str] = field(default_factory=list)
    spam_only: list[str] = field(default_factory=list)
    other: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FolderRecommendation:
    """Per-folder sync recommendation with an explanation."""
    folder: str
    category: FolderCategory
    confidence: float
    should_sync: bool
    reason: str


# =============================================================================
# Classification
# =============================================================================

def classify(
    name: str,
    flags: Iterable[str] | None = None,
    delimiter: str | None = None,
) -> FolderClassification:
    """
    Classify a folder by name and special-use flags.

    Args:
        name: Full folder name as reported by LIST.
        flags: Optional name attributes from LIST (e.g., {"\\Junk"}).
        delimiter: Hierarchy delimiter. When given, the last path component
                   is also tested, so "INBOX/Sent" is recognized as sent.

    Returns:
        FolderClassification with category, confidence and reason.

    Example:
        >>> classify("Junk E-mail").category
        <FolderCategory.SPAM: 'spam'>
    """
    flag_set = frozenset(f.upper() for f in (flags or ()))
    names: tuple[str, ...] = (name,)
    if delimiter and delimiter in name:
        leaf = name.rsplit(delimiter, 1)[1]
        if leaf:
            names = (name, leaf)

    for rule in RULES:
        if rule.confidence >= MATCH_THRESHOLD and rule.matches(names, flag_set):
            return FolderClassification(name, rule.category, rule.confidence, rule.reason)

    for rule in HEURISTICS:
        if rule.matches(names, flag_set):
            return FolderClassification(name, rule.category, rule.confidence, rule.reason)

    return FolderClassification(
        name, FolderCategory.OTHER, UNKNOWN_CONFIDENCE, "No rule matched"
    )


def classify_folder(folder: FolderDescriptor | str) -> FolderClassification:
    """Classify either a FolderDescriptor or a bare folder name."""
    if isinstance(folder, FolderDescriptor):
        return classify(folder.name, folder.raw_flags, folder.delimiter)
    return classify(folder)


def _name_of(folder: FolderDescriptor | str) -> str:
    return folder.name if isinstance(folder, FolderDescriptor) else folder


def is_spam_folder(name: str) -> bool:
    """Returns True if the name is confidently a spam folder."""
    result = classify(name)
    return result.is_spam and result.confidence >= MATCH_THRESHOLD


# =============================================================================
# Selection Helpers
# =============================================================================

def suggest_sync_set(
    folders: Iterable[FolderDescriptor | str],
    include_spam: bool = True,
) -> SyncSuggestion:
    """
    Partition folders into recommended / spam / other.

    Inbox, sent and drafts folders are always recommended. Spam folders are
    recommended only when include_spam is set. Trash, archive and unknown
    folders are excluded by default. Anything below FALLBACK_THRESHOLD is
    treated as unknown, and non-selectable containers are never recommended.

    Args:
        folders: Folders from discovery (descriptors or names).
        include_spam: Whether spam folders join the recommended set.

    Returns:
        SyncSuggestion.
    """
    suggestion = SyncSuggestion()

    for folder in folders:
        name = _name_of(folder)
        if isinstance(folder, FolderDescriptor) and not folder.is_selectable:
            suggestion.other.append(name)
            continue

        result = classify_folder(folder)
        confident = result.confidence >= FALLBACK_THRESHOLD

        if result.is_spam:
            suggestion.spam_only.append(name)
            if include_spam and confident:
                suggestion.recommended.append(name)
        elif result.category in DEFAULT_SYNC_CATEGORIES and confident:
            suggestion.recommended.append(name)
        else:
            suggestion.other.append(name)

    return suggestion


def detect_spam_folders(folders: Iterable[FolderDescriptor | str]) -> list[str]:
    """
    Find spam folders.

    Tries MATCH_THRESHOLD first. If nothing qualifies, retries with
    FALLBACK_THRESHOLD so that providers with unusual naming still get a
    best guess.
    """
    classified = [(_name_of(f), classify_folder(f)) for f in folders]

    for threshold in (MATCH_THRESHOLD, FALLBACK_THRESHOLD):
        found = [
            name for name, result in classified
            if result.is_spam and result.confidence >= threshold
        ]
        if found:
            for name in found:
                logger.info(f"Detected spam folder: {name} (threshold {threshold})")
            return found

    return []


def folders_by_category(
    folders: Iterable[FolderDescriptor | str],
    category: FolderCategory,
) -> list[str]:
    """Return names of folders confidently classified as the given category."""
    results = []
    for folder in folders:
        result = classify_folder(folder)
        if result.category is category and result.confidence >= MATCH_THRESHOLD:
            results.append(_name_of(folder))
    return results


def folder_recommendations(
    folders: Iterable[FolderDescriptor | str],
) -> list[FolderRecommendation]:
    """
    Explain, for every folder, whether it would be synced and why.

    Unknown folders are flagged for sync only when the classifier is
    unsure enough that skipping them could lose mail.
    """
    recommendations = []
    for folder in folders:
        result = classify_folder(folder)
        if result.category is FolderCategory.OTHER:
            should_sync = result.confidence < FALLBACK_THRESHOLD
        else:
            should_sync = result.category in DEFAULT_SYNC_CATEGORIES or result.is_spam

        recommendations.append(FolderRecommendation(
            folder=_name_of(folder),
            category=result.category,
            confidence=result.confidence,
            should_sync=should_sync,
            reason=_RECOMMENDATION_REASONS[result.category],
        ))
    return recommendations
