"""Test configuration for the read journal."""

from __future__ import annotations

from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from cqrs_ddd_read_journal import MongoConnectionManager

JOURNAL = "test_journal"
SNAPS = "test_snaps"


class FakeCursor:
    """Async cursor over canned documents; raises *error* on iteration."""

    def __init__(self, docs: list[dict[str, Any]], error: Exception | None = None):
        self._docs = docs
        self._error = error

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        if self._error is not None:
            raise self._error
        for doc in self._docs:
            yield doc


class ScriptedCollection:
    """Collection double whose ``aggregate`` answers through *respond*.

    ``respond(stages, options)`` returns the result documents or raises; the
    error surfaces while iterating the cursor, as with Motor.
    """

    def __init__(self, name: str, respond: Callable[..., list[dict[str, Any]]]):
        self.name = name
        self._respond = respond
        self.aggregate_calls: list[tuple[list[dict[str, Any]], dict[str, Any]]] = []

    def aggregate(self, pipeline, **options):
        self.aggregate_calls.append((pipeline, options))
        try:
            docs = self._respond(pipeline, options)
        except Exception as e:  # noqa: BLE001
            return FakeCursor([], e)
        return FakeCursor(docs)


class ScriptedConnection:
    """Connection double serving a single scripted collection."""

    def __init__(self, collection: ScriptedCollection):
        self.collection = collection

    def get_database(self, name=None):
        return {self.collection.name: self.collection}


@pytest.fixture
async def mongo_connection():
    """Create a MongoDB connection for testing."""
    # Use mongomock for unit tests to avoid real database dependency
    try:
        from mongomock_motor import AsyncMongoMockClient
    except ImportError:
        pytest.skip("mongomock-motor not installed")

    connection = MongoConnectionManager("mongodb://mock:27017", database="test_db")
    connection._client = AsyncMongoMockClient(default_database_name="test_db")
    return connection


@pytest.fixture
def scripted():
    """Factory for a connection whose collection answers aggregations from a script."""

    def _make(respond, name=JOURNAL):
        collection = ScriptedCollection(name, respond)
        return ScriptedConnection(collection), collection

    return _make


@pytest.fixture
def no_backoff(monkeypatch):
    """Skip restart delays; returns the mock recording the requested delays."""
    sleep = AsyncMock()
    monkeypatch.setattr("cqrs_ddd_read_journal.restart._sleep", sleep)
    return sleep


@pytest.fixture
def write_event(mongo_connection):
    """Append one single-event journal document."""

    async def _write(pid, sn, tags=(), manifest="ThingCreated"):
        collection = mongo_connection.client["test_db"][JOURNAL]
        await collection.insert_one(
            {
                "pid": pid,
                "from": sn,
                "to": sn,
                "_tg": list(tags),
                "events": [
                    {
                        "pid": pid,
                        "sn": sn,
                        "manifest": manifest,
                        "_tg": list(tags),
                        "p": {},
                    }
                ],
            }
        )

    return _write


@pytest.fixture
def write_snapshot(mongo_connection):
    """Store one snapshot document; *ts* is epoch millis."""

    async def _write(pid, sn, ts=0, lifecycle=None, **fields):
        payload = dict(fields)
        if lifecycle is not None:
            payload["__lifecycle"] = lifecycle
        collection = mongo_connection.client["test_db"][SNAPS]
        await collection.insert_one({"pid": pid, "sn": sn, "ts": ts, "s2": payload})

    return _write
