"""Tests for folder classification and standard folder mapping."""

import pytest

from mailsync.core import FolderCategory, FolderDescriptor, StandardFolder
from mailsync.folders import (
    StandardFolderMapper,
    classify,
    classify_folder,
    detect_spam_folders,
    folder_recommendations,
    folders_by_category,
    is_spam_folder,
    map_to_standard_folder,
    suggest_sync_set,
)


# =============================================================================
# Classifier
# =============================================================================

@pytest.mark.parametrize("name, category, minimum", [
    ("INBOX", FolderCategory.INBOX, 1.0),
    ("Junk E-mail", FolderCategory.SPAM, 0.9),
    ("[Gmail]/Spam", FolderCategory.SPAM, 1.0),
    ("Bulk Mail", FolderCategory.SPAM, 1.0),
    ("INBOX.junk", FolderCategory.SPAM, 0.7),
    ("Deleted Items", FolderCategory.TRASH, 0.9),
    ("[Gmail]/Sent Mail", FolderCategory.SENT, 1.0),
    ("Sent Items", FolderCategory.SENT, 0.9),
    ("Drafts", FolderCategory.DRAFTS, 0.9),
    ("[Gmail]/All Mail", FolderCategory.ARCHIVE, 1.0),
])
def test_classify_known_names(name, category, minimum):
    result = classify(name)
    assert result.category is category
    assert result.confidence >= minimum


def test_spam_rules_win_over_later_categories():
    """Rules are tried in order, so a spam match beats a trash match."""
    result = classify("Spam/Trash", delimiter="/")
    assert result.category is FolderCategory.SPAM


def test_special_use_flag_beats_name():
    folder = FolderDescriptor("Bulletins", raw_flags=frozenset({"\\Junk", "\\HasNoChildren"}))
    result = classify_folder(folder)
    assert result.category is FolderCategory.SPAM
    assert result.confidence == 1.0


def test_leaf_name_is_classified():
    assert classify("INBOX/Sent", delimiter="/").category is FolderCategory.SENT
    assert classify("INBOX/Sent").category is FolderCategory.OTHER


@pytest.mark.parametrize("name, category, confidence", [
    ("Quarantined", FolderCategory.SPAM, 0.6),
    ("Promotions", FolderCategory.SPAM, 0.5),
    ("Recycle", FolderCategory.TRASH, 0.6),
    ("Outgoing", FolderCategory.SENT, 0.6),
    ("My Drafts", FolderCategory.DRAFTS, 0.5),
    ("Old Archive 2019", FolderCategory.ARCHIVE, 0.6),
    ("Receipts", FolderCategory.OTHER, 0.2),
])
def test_heuristics_and_unknown(name, category, confidence):
    result = classify(name)
    assert result.category is category
    assert result.confidence == confidence


def test_is_spam_folder():
    assert is_spam_folder("Spam")
    assert is_spam_folder("Junk E-mail")
    assert not is_spam_folder("Promotions")
    assert not is_spam_folder("INBOX")


def test_suggest_sync_set():
    folders = [
        FolderDescriptor("INBOX"),
        FolderDescriptor("Sent"),
        FolderDescriptor("Drafts"),
        FolderDescriptor("Junk"),
        FolderDescriptor("Trash"),
        FolderDescriptor("Archive"),
        FolderDescriptor("Promotions"),
        FolderDescriptor("[Gmail]", raw_flags=frozenset({"\\Noselect"})),
        FolderDescriptor("Receipts"),
    ]

    suggestion = suggest_sync_set(folders)
    assert suggestion.recommended == ["INBOX", "Sent", "Drafts", "Junk", "Promotions"]
    assert suggestion.spam_only == ["Junk", "Promotions"]
    assert suggestion.other == ["Trash", "Archive", "[Gmail]", "Receipts"]

    without_spam = suggest_sync_set(folders, include_spam=False)
    assert without_spam.recommended == ["INBOX", "Sent", "Drafts"]
    assert without_spam.spam_only == ["Junk", "Promotions"]


def test_detect_spam_folders_falls_back_to_lower_threshold():
    assert detect_spam_folders(["INBOX", "Junk", "Promotions"]) == ["Junk"]
    assert detect_spam_folders(["INBOX", "Promotions"]) == ["Promotions"]
    assert detect_spam_folders(["INBOX", "Receipts"]) == []


def test_folders_by_category():
    names = ["INBOX", "Sent Items", "Sent", "Outgoing"]
    assert folders_by_category(names, FolderCategory.SENT) == ["Sent Items", "Sent"]


def test_folder_recommendations():
    recs = {r.folder: r for r in folder_recommendations(["INBOX", "Trash", "Junk", "Receipts"])}

    assert recs["INBOX"].should_sync
    assert recs["Junk"].should_sync
    assert not recs["Trash"].should_sync
    # Unknown folders are kept rather than risk losing mail
    assert recs["Receipts"].should_sync
    assert recs["Receipts"].category is FolderCategory.OTHER
    assert "manual review" in recs["Receipts"].reason


# =============================================================================
# Standard folder mapper
# =============================================================================

@pytest.mark.parametrize("name, bucket", [
    ("INBOX", StandardFolder.INBOX),
    ("[Gmail]/Spam", StandardFolder.SPAM),
    ("Junk E-mail", StandardFolder.SPAM),
    ("Deleted Items", StandardFolder.DELETED),
    ("[Gmail]/Trash", StandardFolder.DELETED),
    ("Sent Items", StandardFolder.SENT),
    ("Outbox", StandardFolder.SENT),
    ("Incoming", StandardFolder.INBOX),
])
def test_map_known_folders(name, bucket):
    mapping = map_to_standard_folder(name)
    assert mapping.standard_folder is bucket
    assert mapping.confidence >= 0.7
    assert mapping.original_folder == name


def test_map_spam_checked_before_sent():
    assert map_to_standard_folder("Junk Sent").standard_folder is StandardFolder.SPAM


def test_map_unknown_folder_is_conservative():
    mapping = map_to_standard_folder("MyCustomFolder123")
    assert mapping.standard_folder is StandardFolder.INBOX
    assert mapping.confidence <= 0.3


@pytest.mark.parametrize("name, bucket, confidence", [
    ("Newsletters", StandardFolder.INBOX, 0.6),
    ("Blocked senders", StandardFolder.SPAM, 0.6),
    ("Templates", StandardFolder.INBOX, 0.5),
    ("Ads", StandardFolder.SPAM, 0.4),
])
def test_map_heuristics(name, bucket, confidence):
    mapping = map_to_standard_folder(name)
    assert mapping.standard_folder is bucket
    assert mapping.confidence == confidence


def test_owner_sent_heuristic():
    mapper = StandardFolderMapper(owner_address="Me@Example.com")

    sent = mapper.map_to_standard_folder("Project X", "me@example.com", ["bob@example.com"])
    assert sent.standard_folder is StandardFolder.SENT
    assert sent.confidence == 0.6

    note_to_self = mapper.map_to_standard_folder("Project X", "me@example.com", ["me@example.com"])
    assert note_to_self.standard_folder is StandardFolder.INBOX

    received = mapper.map_to_standard_folder("Project X", "bob@example.com", ["me@example.com"])
    assert received.standard_folder is StandardFolder.INBOX


def test_map_multiple_folders():
    mapper = StandardFolderMapper()
    mappings, stats = mapper.map_multiple_folders(["INBOX", "Sent", "Trash", "Spam", "Whatever"])

    assert [m.standard_folder for m in mappings] == [
        StandardFolder.INBOX,
        StandardFolder.SENT,
        StandardFolder.DELETED,
        StandardFolder.SPAM,
        StandardFolder.INBOX,
    ]
    assert (stats.inbox, stats.sent, stats.deleted, stats.spam) == (2, 1, 1, 1)
    assert stats.high_confidence == 4
    assert stats.low_confidence == 1
