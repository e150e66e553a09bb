"""Fixtures for tests against a real MongoDB (testcontainers)."""

from __future__ import annotations

import contextlib

import pytest

from cqrs_ddd_read_journal import MongoConnectionManager

# Collections dropped before each integration test
_TEST_COLLECTIONS = ["test_journal", "test_snaps", "job_timestamps"]


@pytest.fixture(scope="module")
def mongo_container():
    """Create a MongoDB container using testcontainers."""
    pytest.importorskip("testcontainers")

    from testcontainers.mongodb import MongoDbContainer

    with MongoDbContainer("mongo:7.0") as mongo:
        yield mongo


@pytest.fixture
async def real_mongo_connection(mongo_container):
    """
    Real MongoDB connection on the ``test_db`` database.

    Function scope avoids "Event loop is closed" when tests run in different loops.
    """
    connection = MongoConnectionManager(
        mongo_container.get_connection_url(), database="test_db"
    )
    await connection.connect()

    db = connection.get_database()
    for name in _TEST_COLLECTIONS:
        with contextlib.suppress(Exception):
            await db[name].drop()

    yield connection

    connection.close()
