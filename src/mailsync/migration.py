# =============================================================================
# Folder Label Migration
# =============================================================================
# Re-files stored messages after the folder mapping rules change.
#
# Each message keeps its server folder label; its storage bucket
# (standard_folder) is derived from that label. This module recomputes the
# bucket for every distinct label of an account and rewrites the rows whose
# bucket changed. preview() reports the same analysis without writing.
# =============================================================================

import logging
from dataclasses import dataclass, field

from mailsync.folders import StandardFolderMapper
from mailsync.folders.mapper import HIGH_CONFIDENCE
from mailsync.storage import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FolderAnalysis:
    """How one stored folder label would be filed."""
    original_folder: str
    current_folder: str
    standard_folder: str
    confidence: float
    count: int
    reason: str

    @property
    def changes(self) -> bool:
        return self.current_folder != self.standard_folder


@dataclass
class MigrationPreview:
    total_messages: int = 0
    folders: list[FolderAnalysis] = field(default_factory=list)


@dataclass
class MigrationResult:
    """
    Attributes:
        total_messages: Messages examined.
        migrated: Messages whose bucket changed.
        skipped: Messages already in the right bucket.
        folder_mappings: Folder label -> bucket name.
    """
    total_messages: int = 0
    migrated: int = 0
    skipped: int = 0
    folder_mappings: dict[str, str] = field(default_factory=dict)


class FolderMigration:
    """
    Recomputes storage buckets for an account's stored messages.

    Usage:
        >>> migration = FolderMigration(repo)
        >>> preview = await migration.preview("personal")
        >>> result = await migration.migrate("personal")
    """

    def __init__(self, repository: Repository, mapper: StandardFolderMapper | None = None) -> None:
        self.repository = repository
        self.mapper = mapper or StandardFolderMapper()

    async def preview(self, account_id: str) -> MigrationPreview:
        """Analyze every stored folder label without changing anything."""
        groups = await self.repository.count_grouped_by(
            account_id, ["folder_label", "standard_folder"]
        )

        preview = MigrationPreview()
        for group in groups:
            label = group["folder_label"]
            mapping = self.mapper.map_to_standard_folder(label)
            preview.total_messages += group["count"]
            preview.folders.append(FolderAnalysis(
                original_folder=label,
                current_folder=group["standard_folder"],
                standard_folder=mapping.standard_folder.value,
                confidence=mapping.confidence,
                count=group["count"],
                reason=mapping.reason,
            ))

        logger.info(
            f"Preview for {account_id}: {len(preview.folders)} label/bucket pairs, "
            f"{preview.total_messages} messages"
        )
        return preview

    async def migrate(self, account_id: str) -> MigrationResult:
        """Rewrite the bucket of every message whose label now maps elsewhere."""
        preview = await self.preview(account_id)
        result = MigrationResult(total_messages=preview.total_messages)

        relabelled: set[str] = set()
        for analysis in preview.folders:
            label = analysis.original_folder
            result.folder_mappings[label] = analysis.standard_folder
            if not analysis.changes:
                result.skipped += analysis.count
                continue

            if analysis.confidence < HIGH_CONFIDENCE:
                logger.warning(
                    f"Low confidence migration: {label!r} -> {analysis.standard_folder} "
                    f"({analysis.confidence:.2f}) - {analysis.reason}"
                )

            # One label can appear under several buckets; relabel() fixes all of them at once
            if label in relabelled:
                result.migrated += analysis.count
                continue
            mapping = self.mapper.map_to_standard_folder(label)
            await self.repository.relabel(account_id, label, mapping.standard_folder)
            relabelled.add(label)
            result.migrated += analysis.count

        logger.info(
            f"Migration for {account_id} completed: {result.migrated} migrated, "
            f"{result.skipped} skipped"
        )
        return result
