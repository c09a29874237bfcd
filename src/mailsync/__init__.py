# =============================================================================
# mailsync: Multi-folder IMAP Mailbox Sync
# =============================================================================
#
# mailsync pulls messages from every interesting folder of an IMAP account
# into a local SQLite store, and reports progress while it does so.
#
# Features:
#   - Folder classification (inbox, sent, drafts, spam, ...) from names
#     and RFC 6154 special-use flags
#   - Sequential or bounded-parallel folder sync
#   - Deduplication by Message-ID, so re-running a sync is cheap
#   - Pollable and subscribable progress sessions, with cancellation
#   - Encrypted subject and bodies at rest
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailsync"

# Main entry point - this is what gets called by the 'mailsync' command
from mailsync.app import main

__all__ = ["main", "__version__", "__app_name__"]
