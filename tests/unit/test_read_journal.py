"""Tests for the MongoReadJournal entry point."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from cqrs_ddd_read_journal import (
    MongoConnectionManager,
    MongoReadJournal,
    MongoTimestampLedger,
    ReadJournalConfig,
    ReadJournalConfigurationError,
)

SETTINGS = {
    "auto-start-journals": ["mongodb-journal"],
    "auto-start-snapshot-stores": ["mongodb-snaps"],
    "plugins": {
        "mongodb-journal": {"overrides": {"journal-collection": "test_journal"}},
        "mongodb-snaps": {"overrides": {"snaps-collection": "test_snaps"}},
    },
    "numeric-collation": False,
    "timestamp-collection": "job_timestamps",
}


def test_from_mapping_resolves_collections():
    read_journal = MongoReadJournal.from_config(SETTINGS, MagicMock())

    assert read_journal.journal.collection_name == "test_journal"
    assert read_journal.snapshots.collection_name == "test_snaps"


def test_from_config_rejects_ambiguous_settings():
    settings = dict(SETTINGS, **{"auto-start-journals": ["a", "b"]})
    with pytest.raises(ReadJournalConfigurationError):
        MongoReadJournal.from_config(settings, MagicMock())


def test_timestamp_ledger_uses_configured_collection():
    config = ReadJournalConfig.from_mapping(SETTINGS)
    read_journal = MongoReadJournal.from_config(config, MagicMock())

    ledger = read_journal.timestamp_ledger()

    assert isinstance(ledger, MongoTimestampLedger)
    assert ledger.collection_name == "job_timestamps"
    assert read_journal.timestamp_ledger("other").collection_name == "other"


def test_timestamp_ledger_needs_a_collection():
    read_journal = MongoReadJournal(MagicMock(), "journal", "snaps")
    with pytest.raises(ReadJournalConfigurationError, match="timestamp collection"):
        read_journal.timestamp_ledger()


@pytest.mark.asyncio
async def test_streams_read_the_configured_journal(mongo_connection, write_event):
    await write_event("pid1", 1, tags=["priority-1"])
    await write_event("pid2", 1, tags=["priority-2"])
    read_journal = MongoReadJournal.from_config(SETTINGS, mongo_connection)

    pids = [pid async for pid in read_journal.journal.list_persistence_ids(10, 0)]
    by_priority = [
        pid
        async for pid in read_journal.journal.list_persistence_ids_by_priority_tag("", 0)
    ]

    assert pids == ["pid1", "pid2"]
    assert by_priority == ["pid2", "pid1"]


def test_from_config_needs_a_connected_manager():
    with pytest.raises(ReadJournalConfigurationError, match="Not connected"):
        MongoReadJournal.from_config(SETTINGS, MongoConnectionManager())
