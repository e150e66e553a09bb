"""Async streaming reads over the MongoDB event journal and snapshot store.

Includes paginated persistence id streams, newest-snapshot streams with
soft-delete pruning, priority ordering, restart-with-backoff and a capped
timestamp ledger.
"""

from __future__ import annotations

from .config import (
    CollectionOverrides,
    MongoDbConfig,
    PersistencePluginConfig,
    ReadJournalConfig,
)
from .connection import MongoConnectionManager
from .exceptions import (
    IndexCreationError,
    MalformedDocumentError,
    MongoConnectionError,
    MongoQueryError,
    ReadJournalConfigurationError,
    ReadJournalError,
    TimestampLedgerError,
)
from .indexes import TAG_PID_INDEX, IndexSpec, create_missing_indexes
from .journal import MongoJournalQueries
from .models import (
    JournalEntry,
    NewestSnapshot,
    PersistenceId,
    SnapshotBatch,
    SnapshotFilter,
    SnapshotLifecycle,
    TimestampRecord,
)
from .pagination import KeyOrderedPaginator, flatten, regroup
from .pipeline import AggregationPipeline
from .read_journal import MongoReadJournal
from .restart import RestartPolicy, RestartSettings, compute_max_restarts
from .snapshots import MongoSnapshotQueries
from .timestamps import MongoTimestampLedger

__all__ = [
    # Entry point
    "MongoReadJournal",
    "MongoConnectionManager",
    # Queries
    "MongoJournalQueries",
    "MongoSnapshotQueries",
    "MongoTimestampLedger",
    # Streaming
    "KeyOrderedPaginator",
    "RestartPolicy",
    "RestartSettings",
    "compute_max_restarts",
    "flatten",
    "regroup",
    "AggregationPipeline",
    # Indexes
    "IndexSpec",
    "TAG_PID_INDEX",
    "create_missing_indexes",
    # Models
    "PersistenceId",
    "JournalEntry",
    "NewestSnapshot",
    "SnapshotBatch",
    "SnapshotFilter",
    "SnapshotLifecycle",
    "TimestampRecord",
    # Configuration
    "MongoDbConfig",
    "ReadJournalConfig",
    "PersistencePluginConfig",
    "CollectionOverrides",
    # Exceptions
    "ReadJournalError",
    "MongoConnectionError",
    "MongoQueryError",
    "MalformedDocumentError",
    "ReadJournalConfigurationError",
    "IndexCreationError",
    "TimestampLedgerError",
]
