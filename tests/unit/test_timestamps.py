"""Tests for MongoTimestampLedger."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import AutoReconnect, CollectionInvalid, OperationFailure

from cqrs_ddd_read_journal.exceptions import (
    MalformedDocumentError,
    MongoQueryError,
    TimestampLedgerError,
)
from cqrs_ddd_read_journal.models import TimestampRecord
from cqrs_ddd_read_journal.timestamps import MongoTimestampLedger

MOMENT = datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)


class CappedCollection:
    """Keeps only the newest document, like a capped collection with max=1."""

    def __init__(self):
        self.docs: list[dict] = []
        self.find_one_calls: list[tuple] = []

    async def insert_one(self, doc):
        self.docs = [dict(doc)]

    async def find_one(self, filter_doc, **kwargs):
        self.find_one_calls.append((filter_doc, kwargs))
        return dict(self.docs[-1]) if self.docs else None


@pytest.fixture
def ledger_db():
    """Database double with a capped collection behind ``db[name]``."""
    collection = CappedCollection()
    db = MagicMock()
    db.create_collection = AsyncMock()
    db.__getitem__.return_value = collection
    connection = MagicMock()
    connection.get_database.return_value = db
    return connection, db, collection


@pytest.mark.asyncio
async def test_read_after_write(ledger_db):
    connection, _, collection = ledger_db
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    assert await ledger.get_timestamp() is None

    await ledger.set_timestamp(MOMENT)
    await ledger.set_tagged_timestamp(MOMENT.replace(hour=9), "run-2")

    assert await ledger.get_tagged_timestamp() == TimestampRecord(
        MOMENT.replace(hour=9), "run-2"
    )
    assert await ledger.get_timestamp() == MOMENT.replace(hour=9)
    assert collection.find_one_calls[-1] == ({}, {"sort": [("$natural", -1)]})


@pytest.mark.asyncio
async def test_untagged_marker_has_no_tag(ledger_db):
    connection, _, collection = ledger_db
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    await ledger.set_tagged_timestamp(MOMENT, None)

    assert collection.docs == [{"ts": MOMENT}]
    assert await ledger.get_tagged_timestamp() == TimestampRecord(MOMENT)


@pytest.mark.asyncio
async def test_naive_timestamps_are_read_as_utc(ledger_db):
    connection, _, collection = ledger_db
    ledger = MongoTimestampLedger(connection, "job_timestamps")
    collection.docs = [{"ts": datetime(2024, 3, 1, 8, 30), "tag": "t"}]

    record = await ledger.get_tagged_timestamp()

    assert record == TimestampRecord(MOMENT, "t")
    assert record.timestamp.tzinfo is timezone.utc


@pytest.mark.asyncio
async def test_collection_is_created_capped_once(ledger_db):
    connection, db, _ = ledger_db
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    await ledger.set_timestamp(MOMENT)
    await ledger.set_timestamp(MOMENT)
    await ledger.get_timestamp()

    db.create_collection.assert_awaited_once_with(
        "job_timestamps", capped=True, size=4096, max=1
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        CollectionInvalid("collection job_timestamps already exists"),
        OperationFailure("already exists", code=48),
    ],
)
async def test_existing_collection_is_reused(ledger_db, error):
    connection, db, collection = ledger_db
    db.create_collection.side_effect = error
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    await ledger.set_timestamp(MOMENT)

    assert db.create_collection.await_count == 1
    assert collection.docs == [{"ts": MOMENT}]


@pytest.mark.asyncio
async def test_creation_is_retried_once(ledger_db):
    connection, db, _ = ledger_db
    db.create_collection.side_effect = [AutoReconnect("flap"), None]
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    await ledger.set_timestamp(MOMENT)

    assert db.create_collection.await_count == 2


@pytest.mark.asyncio
async def test_creation_failure_surfaces_after_retry(ledger_db):
    connection, db, _ = ledger_db
    db.create_collection.side_effect = OperationFailure("not authorized", code=13)
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    with pytest.raises(TimestampLedgerError, match="not authorized"):
        await ledger.get_timestamp()
    assert db.create_collection.await_count == 2


@pytest.mark.asyncio
async def test_transient_read_failure_is_retried(ledger_db, no_backoff):
    connection, _, collection = ledger_db
    collection.find_one = AsyncMock(side_effect=[AutoReconnect("flap"), None])
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    assert await ledger.get_timestamp() is None
    assert collection.find_one.await_count == 2
    assert no_backoff.await_count == 1


@pytest.mark.asyncio
async def test_malformed_marker(ledger_db):
    connection, _, collection = ledger_db
    collection.docs = [{"ts": "yesterday"}]
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    with pytest.raises(MalformedDocumentError, match="'ts'"):
        await ledger.get_timestamp()


@pytest.mark.asyncio
async def test_write_failure_is_wrapped(ledger_db):
    connection, _, collection = ledger_db
    collection.insert_one = AsyncMock(side_effect=AutoReconnect("down"))
    ledger = MongoTimestampLedger(connection, "job_timestamps")

    with pytest.raises(MongoQueryError, match="down"):
        await ledger.set_timestamp(MOMENT)
