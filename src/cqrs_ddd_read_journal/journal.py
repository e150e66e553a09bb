"""
Queries over the event journal collection.

Persistence ids are enumerated in batches of bounded aggregation queries
instead of one long-lived cursor: each batch starts above the largest id
of the previous one, sorts by ``(pid asc, to desc)`` and limits the scan
*before* grouping, so a query never touches more than ``batch_size``
journal documents. A batch may therefore hold fewer than ``batch_size``
distinct ids; pagination continues until a batch comes back empty.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pymongo.errors import PyMongoError

from .exceptions import MalformedDocumentError, MongoQueryError
from .fields import (
    J_EVENT,
    J_EVENT_MANIFEST,
    J_EVENT_PID,
    J_EVENT_SN,
    J_ID,
    J_PROCESSOR_ID,
    J_TAGS,
    J_TO,
)
from .connection import resolve_database
from .indexes import TAG_PID_INDEX, create_missing_indexes
from .models import JournalEntry
from .pagination import KeyOrderedPaginator, flatten, regroup
from .pipeline import AggregationPipeline, first, first_array_element, last
from .priority import (
    DEFAULT_PRIORITY_DIGITS,
    NUMERIC_COLLATION,
    order_by_priority,
    priority_tags_expression,
)
from .restart import RestartPolicy, RestartSettings, collect, compute_max_restarts

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable
    from datetime import timedelta

    from .connection import MongoConnectionManager

logger = logging.getLogger("cqrs_ddd.read_journal.journal")


def _check_batch_size(batch_size: int) -> None:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")


class MongoJournalQueries:
    """
    Read-side queries over an akka-persistence-mongo journal collection.

    Journal documents have the schema::

        {
            "pid": str,            # persistence id
            "from": int,
            "to": int,             # highest sequence number in this document
            "_tg": [str],          # tags
            "events": [{"pid": str, "sn": int, "manifest": str, "_tg": [str], "p": ...}]
        }

    Streaming queries are async generators; every batch query runs under a
    :class:`RestartPolicy` whose budget derives from ``max_idle_time``.
    Point lookups and deletions are not retried.
    """

    def __init__(
        self,
        connection: MongoConnectionManager,
        collection: str,
        *,
        database: str | None = None,
        numeric_collation: bool = True,
        priority_digits: int = DEFAULT_PRIORITY_DIGITS,
    ) -> None:
        """
        Initialize journal queries.

        Args:
            connection: MongoDB connection manager.
            collection: Name of the journal collection.
            database: Optional database name. If None, uses the connection's database.
            numeric_collation: Order priority tags with a numeric collation on the
                server; otherwise order them client-side with fixed-width encoding.
            priority_digits: Width of the fixed-width priority encoding.

        Raises:
            ReadJournalConfigurationError: If *connection* is not connected or
                no database name is known.
        """
        self._collection_name = collection
        self._collection = resolve_database(connection, database)[collection]
        self._numeric_collation = numeric_collation
        self._priority_digits = priority_digits

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def _journal(self) -> Any:
        return self._collection

    async def ensure_tag_index(self) -> list[str]:
        """Create the ``(_tg, pid)`` index used by tag queries if it is missing."""
        return await create_missing_indexes(self._journal(), [TAG_PID_INDEX])

    # ------------------------------------------------------------------
    # Persistence id streams
    # ------------------------------------------------------------------

    def list_persistence_ids(
        self, batch_size: int, max_idle_time: timedelta | float
    ) -> AsyncIterator[str]:
        """Stream every distinct persistence id in ascending order."""
        _check_batch_size(batch_size)
        return self._list_pids("", "", batch_size, compute_max_restarts(max_idle_time))

    def list_persistence_ids_above(
        self, lower_bound: str, batch_size: int
    ) -> AsyncIterator[str]:
        """Stream persistence ids greater than *lower_bound*, without restarts."""
        _check_batch_size(batch_size)
        return self._list_pids(lower_bound, "", batch_size, 0)

    def list_persistence_ids_above_with_tag(
        self, lower_bound: str, tag: str, batch_size: int
    ) -> AsyncIterator[str]:
        """Stream ids above *lower_bound* having *tag* on any event, without restarts."""
        _check_batch_size(batch_size)
        return self._list_pids(lower_bound, tag, batch_size, 0)

    def list_persistence_ids_with_tag(
        self,
        tag: str,
        batch_size: int,
        max_idle_time: timedelta | float,
        consider_only_latest: bool = False,
    ) -> AsyncIterator[str]:
        """Stream persistence ids whose journal carries *tag*.

        With ``consider_only_latest`` an id is only emitted when its newest
        event still has the tag. This costs one extra query per
        ``batch_size`` candidate ids.
        """
        _check_batch_size(batch_size)
        return self._list_pids_with_tag(
            tag, batch_size, compute_max_restarts(max_idle_time), consider_only_latest
        )

    def list_latest_journal_entries(
        self, batch_size: int, max_idle_time: timedelta | float
    ) -> AsyncIterator[JournalEntry]:
        """Stream the newest event (pid, sequence number, manifest) of every id."""
        _check_batch_size(batch_size)
        policy = RestartPolicy(
            RestartSettings(max_restarts=compute_max_restarts(max_idle_time))
        )
        fields = (J_EVENT_PID, J_EVENT_SN, J_EVENT_MANIFEST)

        async def batch_source(start: str) -> list[JournalEntry]:
            pipeline = self._latest_entries_pipeline(start, "", batch_size, fields)
            return await collect(
                policy.run(
                    lambda: self._aggregate(
                        pipeline, self._decode_entry, batchSize=batch_size
                    )
                )
            )

        paginator = KeyOrderedPaginator(
            "", batch_source, key_of=lambda entry: entry.persistence_id
        )
        return flatten(paginator.batches())

    def list_persistence_ids_by_priority_tag(
        self, tag: str, max_idle_time: timedelta | float
    ) -> AsyncIterator[str]:
        """Stream ids carrying *tag*, highest ``priority-<N>`` of the newest event first.

        Runs as a single aggregation, not paginated. An empty *tag* selects
        every id.
        """
        return self._list_pids_by_priority(tag, compute_max_restarts(max_idle_time))

    # ------------------------------------------------------------------
    # Point lookups and deletion
    # ------------------------------------------------------------------

    async def get_latest_tags(self, pid: str) -> set[str]:
        """Return the tags of the newest journal document of *pid*, or an empty set."""
        try:
            doc = await self._journal().find_one(
                {J_PROCESSOR_ID: pid},
                projection={J_TAGS: 1},
                sort=[(J_TO, -1)],
            )
        except PyMongoError as e:
            raise MongoQueryError(f"Could not read tags of {pid!r}: {e}") from e
        if doc is None:
            return set()
        return set(self._tags_of(doc))

    async def get_smallest_event_sequence_nr(self, pid: str) -> int | None:
        """Return the lowest stored sequence number of *pid*, or None."""
        try:
            doc = await self._journal().find_one(
                {J_PROCESSOR_ID: pid},
                projection={J_TO: 1},
                sort=[(J_TO, 1)],
            )
        except PyMongoError as e:
            raise MongoQueryError(
                f"Could not read smallest sequence number of {pid!r}: {e}"
            ) from e
        if doc is None:
            return None
        return self._sequence_nr_of(doc, J_TO)

    async def delete_events(self, pid: str, min_seq_nr: int, max_seq_nr: int) -> int:
        """Delete the events of *pid* in ``[min_seq_nr, max_seq_nr]``.

        Returns the number of deleted journal documents; repeating the call
        deletes nothing and returns 0.
        """
        try:
            result = await self._journal().delete_many(
                {
                    J_PROCESSOR_ID: pid,
                    J_TO: {"$gte": min_seq_nr, "$lte": max_seq_nr},
                }
            )
        except PyMongoError as e:
            raise MongoQueryError(f"Could not delete events of {pid!r}: {e}") from e
        logger.info(
            "Deleted %d journal document(s) of %s in [%d, %d]",
            result.deleted_count,
            pid,
            min_seq_nr,
            max_seq_nr,
        )
        return int(result.deleted_count)

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def _latest_entries_pipeline(
        self,
        start_pid: str,
        tag: str,
        batch_size: int,
        event_fields: Iterable[str],
    ) -> AggregationPipeline:
        pipeline = AggregationPipeline()
        # Consecutive $match stages are coalesced by the server.
        if tag:
            pipeline.match({J_TAGS: tag})
        if start_pid:
            pipeline.match({J_PROCESSOR_ID: {"$gt": start_pid}})
        pipeline.sort([(J_PROCESSOR_ID, "asc"), (J_TO, "desc")])
        # $limit must precede $group or the whole collection is scanned.
        pipeline.limit(batch_size)
        pipeline.group(
            f"${J_PROCESSOR_ID}",
            **{name: first(first_array_element(J_EVENT, name)) for name in event_fields},
        )
        # Group output order is undefined.
        pipeline.sort([(J_ID, "asc")])
        return pipeline

    def _newest_entry_tag_pipeline(self, pids: list[str], tag: str) -> AggregationPipeline:
        return (
            AggregationPipeline()
            .match({J_PROCESSOR_ID: {"$in": pids}})
            .sort([(J_TO, "desc")])
            .group(
                f"${J_PROCESSOR_ID}",
                **{J_TAGS: first(first_array_element(J_EVENT, J_TAGS))},
            )
            .match({J_TAGS: tag})
            .sort([(J_ID, "asc")])
        )

    async def _list_pids(
        self, lower_bound: str, tag: str, batch_size: int, max_restarts: int
    ) -> AsyncIterator[str]:
        policy = RestartPolicy(RestartSettings(max_restarts=max_restarts))

        async def batch_source(start: str) -> list[str]:
            pipeline = self._latest_entries_pipeline(start, tag, batch_size, ())
            # One round trip per page.
            return await collect(
                policy.run(
                    lambda: self._aggregate(
                        pipeline, self._decode_pid, batchSize=batch_size
                    )
                )
            )

        paginator = KeyOrderedPaginator(
            lower_bound, batch_source, key_of=lambda pid: pid
        )
        async for pid in flatten(paginator.batches()):
            yield pid

    async def _list_pids_with_tag(
        self, tag: str, batch_size: int, max_restarts: int, consider_only_latest: bool
    ) -> AsyncIterator[str]:
        candidates = self._list_pids("", tag, batch_size, max_restarts)
        if not consider_only_latest:
            async for pid in candidates:
                yield pid
            return

        policy = RestartPolicy(RestartSettings(max_restarts=max_restarts))
        async for chunk in regroup(candidates, batch_size):
            verified = await collect(
                policy.run(
                    lambda chunk=chunk: self._pids_with_tag_in_newest_entry(chunk, tag)
                )
            )
            logger.debug(
                "%d of %d candidate id(s) carry tag %r in their newest event",
                len(verified),
                len(chunk),
                tag,
            )
            for pid in verified:
                yield pid

    async def _list_pids_by_priority(
        self, tag: str, max_restarts: int
    ) -> AsyncIterator[str]:
        policy = RestartPolicy(RestartSettings(max_restarts=max_restarts))
        pipeline = AggregationPipeline()
        if tag:
            pipeline.match({J_TAGS: tag})
        # $last is the newest event because journal documents are inserted in order.
        pipeline.group(f"${J_PROCESSOR_ID}", **{J_TAGS: last(f"${J_TAGS}")})

        if self._numeric_collation:
            pipeline.project({J_TAGS: priority_tags_expression(J_TAGS)})
            pipeline.sort([(J_TAGS, "desc")])
            async for pid in policy.run(
                lambda: self._aggregate(
                    pipeline, self._decode_pid, collation=NUMERIC_COLLATION
                )
            ):
                yield pid
            return

        rows = await collect(
            policy.run(lambda: self._aggregate(pipeline, self._decode_pid_and_tags))
        )
        for pid in order_by_priority(rows, self._priority_digits):
            yield pid

    def _pids_with_tag_in_newest_entry(self, pids: list[str], tag: str) -> AsyncIterator[str]:
        return self._aggregate(self._newest_entry_tag_pipeline(pids, tag), self._decode_pid)

    async def _aggregate(
        self,
        pipeline: AggregationPipeline,
        decode: Callable[[dict[str, Any]], Any],
        **options: Any,
    ) -> AsyncIterator[Any]:
        cursor = self._journal().aggregate(pipeline.stages, **options)
        async for doc in cursor:
            yield decode(doc)

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _malformed(self, field: str, doc: Any) -> MalformedDocumentError:
        return MalformedDocumentError(self._collection_name, field, doc)

    def _decode_pid(self, doc: dict[str, Any]) -> str:
        pid = doc.get(J_ID)
        if not isinstance(pid, str):
            raise self._malformed(J_ID, doc)
        return pid

    def _decode_pid_and_tags(self, doc: dict[str, Any]) -> tuple[str, list[str]]:
        return self._decode_pid(doc), self._tags_of(doc)

    def _decode_entry(self, doc: dict[str, Any]) -> JournalEntry:
        manifest = doc.get(J_EVENT_MANIFEST)
        if manifest is not None and not isinstance(manifest, str):
            raise self._malformed(J_EVENT_MANIFEST, doc)
        sequence_nr = None
        if doc.get(J_EVENT_SN) is not None:
            sequence_nr = self._sequence_nr_of(doc, J_EVENT_SN)
        return JournalEntry(
            persistence_id=self._decode_pid(doc),
            sequence_nr=sequence_nr,
            manifest=manifest,
        )

    def _tags_of(self, doc: dict[str, Any]) -> list[str]:
        tags = doc.get(J_TAGS)
        if tags is None:
            return []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise self._malformed(J_TAGS, doc)
        return tags

    def _sequence_nr_of(self, doc: dict[str, Any], field: str) -> int:
        value = doc.get(field)
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._malformed(field, doc)
        return value
