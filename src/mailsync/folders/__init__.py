# =============================================================================
# Folders Module
# =============================================================================
# Folder name intelligence:
#   - classifier: which server folders are worth syncing
#   - mapper: which local bucket a synced message is filed under
#
# Both are pure functions of folder names and flags; neither does I/O.
# =============================================================================

from mailsync.folders.classifier import (
    FolderRecommendation,
    FolderRule,
    SyncSuggestion,
    classify,
    classify_folder,
    detect_spam_folders,
    folder_recommendations,
    folders_by_category,
    is_spam_folder,
    suggest_sync_set,
)
from mailsync.folders.mapper import (
    MappingStats,
    StandardFolderMapper,
    map_to_standard_folder,
)

__all__ = [
    # Classifier
    "FolderRecommendation",
    "FolderRule",
    "SyncSuggestion",
    "classify",
    "classify_folder",
    "detect_spam_folders",
    "folder_recommendations",
    "folders_by_category",
    "is_spam_folder",
    "suggest_sync_set",
    # Mapper
    "MappingStats",
    "StandardFolderMapper",
    "map_to_standard_folder",
]
