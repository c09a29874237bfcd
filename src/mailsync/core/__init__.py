# =============================================================================
# mailsync Core Module
# =============================================================================
# Core domain models for mailsync. These are plain dataclasses with no I/O,
# so they can be imported anywhere without circular dependency issues.
#
#   - Account: IMAP credentials and timeouts
#   - FolderDescriptor / FolderClassification / FolderMapping: folders
#   - FetchedMessage / Envelope / Address: typed FETCH data
#   - Message / AttachmentMeta: the canonical stored message
#   - SyncSession / MultiFolderResult: sync progress and outcome
# =============================================================================

from mailsync.core.account import Account
from mailsync.core.folder import (
    FolderCategory,
    FolderClassification,
    FolderDescriptor,
    FolderMapping,
    StandardFolder,
)
from mailsync.core.message import (
    Address,
    AttachmentMeta,
    Envelope,
    FetchedMessage,
    Message,
    MessageFlags,
)
from mailsync.core.session import (
    FolderFailure,
    FolderResult,
    MultiFolderResult,
    SyncSession,
    SyncStatus,
)

__all__ = [
    "Account",
    "FolderCategory",
    "FolderClassification",
    "FolderDescriptor",
    "FolderMapping",
    "StandardFolder",
    "Address",
    "AttachmentMeta",
    "Envelope",
    "FetchedMessage",
    "Message",
    "MessageFlags",
    "FolderFailure",
    "FolderResult",
    "MultiFolderResult",
    "SyncSession",
    "SyncStatus",
]
