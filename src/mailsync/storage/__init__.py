# =============================================================================
# Storage Module
# =============================================================================
# Handles persistent storage using SQLite.
#
# Provides:
#   - Database initialization
#   - Keyed message upserts, lookups, grouped counts and bulk deletes
#   - Async operations via aiosqlite
#
# The database is stored in the XDG data directory
# (~/.local/share/mailsync/).
# =============================================================================

from mailsync.storage.database import Database
from mailsync.storage.repository import PersistenceConflict, Repository

__all__ = ["Database", "PersistenceConflict", "Repository"]
