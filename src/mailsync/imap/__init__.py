# =============================================================================
# IMAP Module
# =============================================================================
# Handles all IMAP (Internet Message Access Protocol) operations:
#   - Connecting to IMAP servers with SSL/STARTTLS
#   - Pooling one connection per account
#   - Listing folders and fetching messages in batches
#   - Normalizing fetched messages into stored records
#   - Running and tracking multi-folder sync sessions
#
# This module uses aioimaplib for async IMAP operations.
# =============================================================================

from mailsync.imap.client import (
    ConnectionState,
    FolderOpenError,
    IMAPAuthenticationError,
    IMAPClient,
    IMAPConnectionError,
    IMAPError,
    sequence_bounds,
    sequence_range,
)
from mailsync.imap.connection import (
    ConnectionManager,
    ConnectionStatus,
    ConnectionTestResult,
)
from mailsync.imap.normalizer import MessageNormalizer, MessageParseError
from mailsync.imap.progress import ProgressTracker, SessionActiveError
from mailsync.imap.sync import SyncOptions, SyncOrchestrator, resolve_folders

__all__ = [
    # Client
    "ConnectionState",
    "FolderOpenError",
    "IMAPAuthenticationError",
    "IMAPClient",
    "IMAPConnectionError",
    "IMAPError",
    "sequence_bounds",
    "sequence_range",
    # Connections
    "ConnectionManager",
    "ConnectionStatus",
    "ConnectionTestResult",
    # Normalizer
    "MessageNormalizer",
    "MessageParseError",
    # Progress
    "ProgressTracker",
    "SessionActiveError",
    # Sync
    "SyncOptions",
    "SyncOrchestrator",
    "resolve_folders",
]
