"""Queries over the snapshot store collection."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pymongo.errors import PyMongoError

from .connection import resolve_database
from .exceptions import MalformedDocumentError, MongoQueryError
from .fields import (
    LIFECYCLE,
    S_ID,
    S_PROCESSOR_ID,
    S_SERIALIZED_SNAPSHOT,
    S_SN,
    S_TS,
)
from .models import (
    NewestSnapshot,
    SnapshotBatch,
    SnapshotFilter,
    SnapshotLifecycle,
    to_epoch_millis,
)
from .pagination import KeyOrderedPaginator
from .pipeline import AggregationPipeline, first
from .restart import RestartPolicy, RestartSettings, collect, compute_max_restarts

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from .connection import MongoConnectionManager

logger = logging.getLogger("cqrs_ddd.read_journal.snapshots")

# Output fields of the per-batch summary group.
_MAX_PID = "m"
_ITEMS = "i"

_RESERVED_FIELDS = frozenset({S_ID, S_SN, LIFECYCLE})


def _check_snapshot_fields(fields: Sequence[str]) -> None:
    for name in fields:
        if not name or "." in name or name.startswith("$") or name in _RESERVED_FIELDS:
            raise ValueError(f"Invalid snapshot field {name!r}")


class MongoSnapshotQueries:
    """
    Read-side queries over an akka-persistence-mongo snapshot collection.

    Snapshot documents have the schema::

        {
            "pid": str,
            "sn": int,
            "ts": int,              # epoch millis
            "s2": {..., "__lifecycle": "ACTIVE" | "DELETED"}
        }

    Several snapshots may exist per persistence id; the newest one has the
    highest ``sn``.
    """

    def __init__(
        self,
        connection: MongoConnectionManager,
        collection: str,
        *,
        database: str | None = None,
    ) -> None:
        self._collection_name = collection
        self._collection = resolve_database(connection, database)[collection]

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def _snaps(self) -> Any:
        return self._collection

    # ------------------------------------------------------------------
    # Newest snapshot streams
    # ------------------------------------------------------------------

    def list_newest_snapshots(
        self,
        lower_bound_pid: str = "",
        batch_size: int = 100,
        include_deleted: bool = False,
        min_age: timedelta = timedelta(0),
        extra_fields: Sequence[str] = (),
        *,
        max_idle_time: timedelta | float = 0,
    ) -> AsyncIterator[NewestSnapshot]:
        """Stream the newest snapshot of every persistence id above *lower_bound_pid*.

        Ids whose newest snapshot is DELETED are skipped unless
        *include_deleted*. Snapshots younger than *min_age* are ignored.
        *extra_fields* are projected out of the serialized snapshot.
        """
        return self.list_newest_snapshots_matching(
            SnapshotFilter(lower_bound_pid=lower_bound_pid, min_age_from_now=min_age),
            batch_size,
            include_deleted=include_deleted,
            extra_fields=extra_fields,
            max_idle_time=max_idle_time,
        )

    def list_newest_snapshots_matching(
        self,
        snapshot_filter: SnapshotFilter,
        batch_size: int,
        *,
        include_deleted: bool = False,
        extra_fields: Sequence[str] = (),
        max_idle_time: timedelta | float = 0,
    ) -> AsyncIterator[NewestSnapshot]:
        """Stream newest snapshots selected by *snapshot_filter*."""
        batches = self.list_snapshot_batches(
            snapshot_filter,
            batch_size,
            include_deleted=include_deleted,
            extra_fields=extra_fields,
            max_idle_time=max_idle_time,
        )
        return _items_of(batches)

    def list_snapshot_batches(
        self,
        snapshot_filter: SnapshotFilter,
        batch_size: int,
        *,
        include_deleted: bool = False,
        extra_fields: Sequence[str] = (),
        max_idle_time: timedelta | float = 0,
    ) -> AsyncIterator[SnapshotBatch]:
        """Stream pages of newest snapshots.

        A page whose snapshots were all pruned comes out with empty ``items``
        and still moves the cursor to its ``max_pid``.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        _check_snapshot_fields(extra_fields)
        policy = RestartPolicy(
            RestartSettings(max_restarts=compute_max_restarts(max_idle_time))
        )

        async def batch_source(start: str) -> list[SnapshotBatch]:
            pipeline = self._newest_snapshots_pipeline(
                snapshot_filter.with_lower_bound(start),
                batch_size,
                include_deleted,
                extra_fields,
            )
            return await collect(
                policy.run(
                    lambda: self._aggregate_batch(
                        pipeline, extra_fields, batchSize=batch_size
                    )
                )
            )

        paginator = KeyOrderedPaginator(
            snapshot_filter.lower_bound_pid,
            batch_source,
            key_of=lambda batch: batch.max_pid,
        )
        return _single_batches(paginator)

    # ------------------------------------------------------------------
    # Point lookups and deletion
    # ------------------------------------------------------------------

    async def get_last_snapshot_sequence_nr_before(
        self, pid: str, timestamp: datetime
    ) -> int | None:
        """Sequence number of the newest snapshot of *pid* taken at or before *timestamp*."""
        try:
            doc = await self._snaps().find_one(
                {S_PROCESSOR_ID: pid, S_TS: {"$lte": to_epoch_millis(timestamp)}},
                projection={S_SN: 1},
                sort=[(S_SN, -1)],
            )
        except PyMongoError as e:
            raise MongoQueryError(f"Could not read snapshots of {pid!r}: {e}") from e
        if doc is None:
            return None
        return self._sequence_nr_of(doc)

    async def get_smallest_snapshot_sequence_nr(self, pid: str) -> int | None:
        """Return the lowest snapshot sequence number of *pid*, or None."""
        try:
            doc = await self._snaps().find_one(
                {S_PROCESSOR_ID: pid},
                projection={S_SN: 1},
                sort=[(S_SN, 1)],
            )
        except PyMongoError as e:
            raise MongoQueryError(f"Could not read snapshots of {pid!r}: {e}") from e
        if doc is None:
            return None
        return self._sequence_nr_of(doc)

    async def delete_snapshots(self, pid: str, min_seq_nr: int, max_seq_nr: int) -> int:
        """Delete the snapshots of *pid* in ``[min_seq_nr, max_seq_nr]``; returns the count."""
        try:
            result = await self._snaps().delete_many(
                {
                    S_PROCESSOR_ID: pid,
                    S_SN: {"$gte": min_seq_nr, "$lte": max_seq_nr},
                }
            )
        except PyMongoError as e:
            raise MongoQueryError(f"Could not delete snapshots of {pid!r}: {e}") from e
        logger.info(
            "Deleted %d snapshot(s) of %s in [%d, %d]",
            result.deleted_count,
            pid,
            min_seq_nr,
            max_seq_nr,
        )
        return int(result.deleted_count)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _newest_snapshots_pipeline(
        self,
        snapshot_filter: SnapshotFilter,
        batch_size: int,
        include_deleted: bool,
        extra_fields: Sequence[str],
    ) -> AggregationPipeline:
        snapshot_fields = (LIFECYCLE, *extra_fields)
        pipeline = (
            AggregationPipeline()
            .match(snapshot_filter.to_mongo_filter(S_PROCESSOR_ID, S_TS))
            .sort([(S_PROCESSOR_ID, "asc"), (S_SN, "desc")])
            # $limit must precede $group or the whole collection is scanned.
            .limit(batch_size)
            # Group by pid; the pid is in _id from here on.
            .group(
                f"${S_PROCESSOR_ID}",
                **{S_SN: first(f"${S_SN}")},
                **{
                    name: first(f"${S_SERIALIZED_SNAPSHOT}.{name}")
                    for name in snapshot_fields
                },
            )
            .sort([(S_ID, "asc")])
            # Summarize the page before pruning so the max pid survives a fully
            # pruned page.
            .group(
                None,
                **{_MAX_PID: {"$max": f"${S_ID}"}, _ITEMS: {"$push": "$$ROOT"}},
            )
        )
        if not include_deleted:
            pipeline.prune_array(
                _ITEMS,
                {"$ne": [f"$$snapshot.{LIFECYCLE}", SnapshotLifecycle.DELETED.value]},
                variable="snapshot",
                keep=[_MAX_PID],
            )
        return pipeline

    async def _aggregate_batch(
        self,
        pipeline: AggregationPipeline,
        extra_fields: Sequence[str],
        **options: Any,
    ) -> AsyncIterator[SnapshotBatch]:
        cursor = self._snaps().aggregate(pipeline.stages, **options)
        async for doc in cursor:
            batch = self._decode_batch(doc, extra_fields)
            if batch is not None:
                yield batch

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _malformed(self, field: str, doc: Any) -> MalformedDocumentError:
        return MalformedDocumentError(self._collection_name, field, doc)

    def _decode_batch(
        self, doc: dict[str, Any], extra_fields: Sequence[str]
    ) -> SnapshotBatch | None:
        max_pid = doc.get(_MAX_PID)
        if max_pid is None:
            # Grouping an empty page.
            return None
        if not isinstance(max_pid, str):
            raise self._malformed(_MAX_PID, doc)
        items = doc.get(_ITEMS)
        if not isinstance(items, list):
            raise self._malformed(_ITEMS, doc)
        return SnapshotBatch(
            max_pid=max_pid,
            items=[self._decode_snapshot(item, extra_fields) for item in items],
        )

    def _decode_snapshot(
        self, doc: Any, extra_fields: Sequence[str]
    ) -> NewestSnapshot:
        if not isinstance(doc, dict):
            raise self._malformed(_ITEMS, doc)
        pid = doc.get(S_ID)
        if not isinstance(pid, str):
            raise self._malformed(S_ID, doc)
        lifecycle = doc.get(LIFECYCLE)
        try:
            parsed = (
                SnapshotLifecycle(lifecycle)
                if lifecycle is not None
                else SnapshotLifecycle.ACTIVE
            )
        except ValueError as e:
            raise self._malformed(LIFECYCLE, doc) from e
        return NewestSnapshot(
            persistence_id=pid,
            sequence_nr=self._sequence_nr_of(doc),
            lifecycle=parsed,
            fields={name: doc.get(name) for name in extra_fields},
        )

    def _sequence_nr_of(self, doc: dict[str, Any]) -> int:
        value = doc.get(S_SN)
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._malformed(S_SN, doc)
        return value


async def _single_batches(
    paginator: KeyOrderedPaginator[SnapshotBatch],
) -> AsyncIterator[SnapshotBatch]:
    async for page in paginator.batches():
        for batch in page:
            yield batch


async def _items_of(batches: AsyncIterator[SnapshotBatch]) -> AsyncIterator[NewestSnapshot]:
    async for batch in batches:
        for snapshot in batch.items:
            yield snapshot
