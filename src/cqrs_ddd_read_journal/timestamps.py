"""MongoTimestampLedger — a single-record capped collection holding the latest marker."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pymongo.errors import CollectionInvalid, OperationFailure, PyMongoError

from .connection import resolve_database
from .exceptions import MalformedDocumentError, MongoQueryError, TimestampLedgerError
from .fields import T_TAG, T_TIMESTAMP
from .models import TimestampRecord, as_utc
from .restart import RestartPolicy, RestartSettings, collect

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .connection import MongoConnectionManager

logger = logging.getLogger("cqrs_ddd.read_journal.timestamps")

NAMESPACE_EXISTS = 48
CAPPED_SIZE_BYTES = 4096
CREATE_RETRIES = 1


class MongoTimestampLedger:
    """Remember the latest point in time, optionally tagged, e.g. of a background job.

    The collection is capped to one document, so every write replaces the
    previous marker and reads return the newest insertion::

        ledger = MongoTimestampLedger(connection, "cleanup_timestamp")
        await ledger.set_tagged_timestamp(started_at, "run-42")
        record = await ledger.get_tagged_timestamp()
    """

    def __init__(
        self,
        connection: MongoConnectionManager,
        collection: str,
        *,
        database: str | None = None,
        max_idle_time: timedelta | float = timedelta(seconds=10),
    ) -> None:
        self._collection_name = collection
        self._db = resolve_database(connection, database)
        self._read_policy = RestartPolicy(RestartSettings.for_max_idle_time(max_idle_time))
        self._collection: Any = None
        self._lock = asyncio.Lock()

    @property
    def collection_name(self) -> str:
        return self._collection_name

    async def set_timestamp(self, timestamp: datetime) -> None:
        await self._insert({T_TIMESTAMP: as_utc(timestamp)})

    async def set_tagged_timestamp(self, timestamp: datetime, tag: str | None) -> None:
        doc: dict[str, Any] = {T_TIMESTAMP: as_utc(timestamp)}
        if tag is not None:
            doc[T_TAG] = tag
        await self._insert(doc)

    async def get_timestamp(self) -> datetime | None:
        record = await self.get_tagged_timestamp()
        return record.timestamp if record is not None else None

    async def get_tagged_timestamp(self) -> TimestampRecord | None:
        """Return the newest marker, or None when nothing was written yet."""
        collection = await self.ensure_collection()
        records = await collect(
            self._read_policy.run(lambda: self._read_newest(collection))
        )
        return records[0] if records else None

    async def ensure_collection(self) -> Any:
        """Create the capped collection if needed and cache its handle."""
        if self._collection is not None:
            return self._collection
        async with self._lock:
            if self._collection is None:
                self._collection = await self._create_or_open()
        return self._collection

    async def _create_or_open(self) -> Any:
        db = self._db
        last_error: PyMongoError | None = None
        for attempt in range(1 + CREATE_RETRIES):
            try:
                await db.create_collection(
                    self._collection_name,
                    capped=True,
                    size=CAPPED_SIZE_BYTES,
                    max=1,
                )
            except CollectionInvalid:
                break
            except PyMongoError as e:
                if isinstance(e, OperationFailure) and e.code == NAMESPACE_EXISTS:
                    break
                last_error = e
                logger.warning(
                    "Creating capped collection %s failed (attempt %d): %s",
                    self._collection_name,
                    attempt + 1,
                    e,
                )
            else:
                logger.info("Created capped collection %s", self._collection_name)
                break
        else:
            raise TimestampLedgerError(
                f"Could not create capped collection {self._collection_name!r}: "
                f"{last_error}"
            ) from last_error
        return db[self._collection_name]

    async def _insert(self, doc: dict[str, Any]) -> None:
        collection = await self.ensure_collection()
        try:
            await collection.insert_one(doc)
        except PyMongoError as e:
            raise MongoQueryError(
                f"Could not write to {self._collection_name!r}: {e}"
            ) from e

    async def _read_newest(self, collection: Any) -> AsyncIterator[TimestampRecord]:
        doc = await collection.find_one({}, sort=[("$natural", -1)])
        if doc is not None:
            yield self._decode(doc)

    def _decode(self, doc: dict[str, Any]) -> TimestampRecord:
        timestamp = doc.get(T_TIMESTAMP)
        if not isinstance(timestamp, datetime):
            raise MalformedDocumentError(self._collection_name, T_TIMESTAMP, doc)
        tag = doc.get(T_TAG)
        if tag is not None and not isinstance(tag, str):
            raise MalformedDocumentError(self._collection_name, T_TAG, doc)
        return TimestampRecord(timestamp=as_utc(timestamp), tag=tag)
