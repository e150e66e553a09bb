"""MongoReadJournal — entry point bundling the journal, snapshot and ledger queries."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from .config import ReadJournalConfig
from .exceptions import ReadJournalConfigurationError
from .journal import MongoJournalQueries
from .snapshots import MongoSnapshotQueries
from .timestamps import MongoTimestampLedger

if TYPE_CHECKING:
    from .connection import MongoConnectionManager

logger = logging.getLogger("cqrs_ddd.read_journal")


class MongoReadJournal:
    """Read-side access to the collections written by the persistence plugins.

    Build it from the same configuration the write side uses so that both
    agree on the collection names::

        await connection.connect()
        journal = MongoReadJournal.from_config(settings, connection)
        async for pid in journal.journal.list_persistence_ids(100, 60):
            ...
    """

    def __init__(
        self,
        connection: MongoConnectionManager,
        journal_collection: str,
        snaps_collection: str,
        *,
        database: str | None = None,
        numeric_collation: bool = True,
        priority_digits: int | None = None,
        timestamp_collection: str | None = None,
    ) -> None:
        self._connection = connection
        self._database_name = database
        self._timestamp_collection = timestamp_collection
        journal_options: dict[str, Any] = {"numeric_collation": numeric_collation}
        if priority_digits is not None:
            journal_options["priority_digits"] = priority_digits
        self._journal = MongoJournalQueries(
            connection, journal_collection, database=database, **journal_options
        )
        self._snapshots = MongoSnapshotQueries(
            connection, snaps_collection, database=database
        )

    @classmethod
    def from_config(
        cls,
        config: ReadJournalConfig | Mapping[str, Any],
        connection: MongoConnectionManager,
        *,
        database: str | None = None,
    ) -> MongoReadJournal:
        """Resolve collection names from *config*.

        *connection* must already be connected.

        Raises:
            ReadJournalConfigurationError: If the configuration does not name
                exactly one journal and one snapshot store with their collections,
                or if no database can be resolved on *connection*.
        """
        if not isinstance(config, ReadJournalConfig):
            config = ReadJournalConfig.from_mapping(config)
        try:
            journal_collection = config.journal_collection
            snaps_collection = config.snaps_collection
        except ValueError as e:
            raise ReadJournalConfigurationError(str(e)) from e
        logger.info(
            "Read journal on collections %s and %s",
            journal_collection,
            snaps_collection,
        )
        return cls(
            connection,
            journal_collection,
            snaps_collection,
            database=database,
            numeric_collation=config.numeric_collation,
            priority_digits=config.priority_digits,
            timestamp_collection=config.timestamp_collection,
        )

    @property
    def journal(self) -> MongoJournalQueries:
        return self._journal

    @property
    def snapshots(self) -> MongoSnapshotQueries:
        return self._snapshots

    async def ensure_tag_index(self) -> list[str]:
        """Create the tag index on the journal collection if missing."""
        return await self._journal.ensure_tag_index()

    def timestamp_ledger(self, collection: str | None = None) -> MongoTimestampLedger:
        """Return a ledger on *collection* or on the configured timestamp collection."""
        name = collection or self._timestamp_collection
        if not name:
            raise ReadJournalConfigurationError(
                "No timestamp collection given and none configured"
            )
        return MongoTimestampLedger(self._connection, name, database=self._database_name)
