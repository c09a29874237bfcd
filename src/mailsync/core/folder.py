# =============================================================================
# Folder Model
# =============================================================================
# Represents a mailbox folder as discovered on the server, plus the derived
# classification used to decide whether it should be synced.
#
# Two separate vocabularies exist:
#   - FolderCategory: the seven-way purpose of a folder on the server
#     (inbox, sent, drafts, spam, trash, archive, other). Drives selection.
#   - StandardFolder: the four buckets a stored message is filed under
#     (inbox, sent, deleted, spam). Drives persistence.
# =============================================================================

from dataclasses import dataclass, field
from enum import Enum


class FolderCategory(Enum):
    """
    Purpose of a server folder.

    Maps to IMAP SPECIAL-USE attributes (RFC 6154) when available, or is
    inferred from common naming conventions.
    """
    INBOX = "inbox"         # Primary incoming mail
    SENT = "sent"           # Sent messages
    DRAFTS = "drafts"       # Unsent drafts
    SPAM = "spam"           # Spam/junk mail
    TRASH = "trash"         # Deleted messages
    ARCHIVE = "archive"     # Archived / all mail
    OTHER = "other"         # User-created or unrecognized folders


class StandardFolder(Enum):
    """Storage bucket a message is filed under."""
    INBOX = "inbox"
    SENT = "sent"
    DELETED = "deleted"
    SPAM = "spam"


@dataclass(frozen=True)
class FolderDescriptor:
    """
    A folder as reported by the LIST command.

    Produced fresh on every discovery call and never cached across sessions.

    Attributes:
        name: Full folder path (e.g., "INBOX", "[Gmail]/Sent Mail").
        delimiter: Hierarchy delimiter (usually "/" or ".").
        raw_flags: Name attributes from the LIST response, such as
                   \\HasNoChildren or the special-use \\Junk.
    """
    name: str
    delimiter: str = "/"
    raw_flags: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_selectable(self) -> bool:
        """Returns False for \\Noselect / \\NonExistent container folders."""
        upper = {f.upper() for f in self.raw_flags}
        return "\\NOSELECT" not in upper and "\\NONEXISTENT" not in upper

    @property
    def parent_path(self) -> str | None:
        """
        Returns the parent folder path, or None for a top-level folder.

        Example:
            >>> FolderDescriptor(name="Work/Projects/Alpha").parent_path
            'Work/Projects'
        """
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[0]
        return None


@dataclass(frozen=True)
class FolderClassification:
    """
    Result of classifying one folder name.

    Attributes:
        name: The folder name that was classified.
        category: Detected purpose.
        confidence: How sure the classifier is, in [0, 1].
        reason: Human-readable explanation of the rule that matched.
    """
    name: str
    category: FolderCategory
    confidence: float
    reason: str = ""

    @property
    def is_spam(self) -> bool:
        return self.category is FolderCategory.SPAM


@dataclass(frozen=True)
class FolderMapping:
    """
    Result of mapping a folder label onto a storage bucket.

    Attributes:
        original_folder: The server folder name.
        standard_folder: Bucket the folder's messages are filed under.
        confidence: How sure the mapper is, in [0, 1].
        reason: Human-readable explanation.
    """
    original_folder: str
    standard_folder: StandardFolder
    confidence: float
    reason: str = ""
