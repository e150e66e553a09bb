"""Value types streamed by the journal and snapshot queries."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

PersistenceId = str

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SnapshotLifecycle(str, enum.Enum):
    """Whether the owning entity was deleted when the snapshot was taken."""

    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


@dataclass(frozen=True)
class JournalEntry:
    """Projection of the newest journal event of one persistence id."""

    persistence_id: PersistenceId
    sequence_nr: int | None = None
    manifest: str | None = None


@dataclass(frozen=True)
class NewestSnapshot:
    """Newest snapshot of one persistence id with the requested fields."""

    persistence_id: PersistenceId
    sequence_nr: int
    lifecycle: SnapshotLifecycle = SnapshotLifecycle.ACTIVE
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def deleted(self) -> bool:
        return self.lifecycle is SnapshotLifecycle.DELETED


@dataclass(frozen=True)
class SnapshotBatch:
    """One page of newest snapshots.

    ``max_pid`` is the largest id scanned by the page, also when pruning of
    deleted snapshots left ``items`` empty.
    """

    max_pid: PersistenceId
    items: list[NewestSnapshot] = field(default_factory=list)


@dataclass(frozen=True)
class SnapshotFilter:
    """Selection criteria for streaming newest snapshots.

    Attributes:
        lower_bound_pid: Exclusive lower bound of persistence ids.
        pid_filter: Optional regular expression persistence ids must match.
        min_age_from_now: Snapshots younger than this are skipped.
    """

    lower_bound_pid: PersistenceId = ""
    pid_filter: str | None = None
    min_age_from_now: timedelta = timedelta(0)

    def with_lower_bound(self, lower_bound_pid: PersistenceId) -> SnapshotFilter:
        return replace(self, lower_bound_pid=lower_bound_pid)

    def to_mongo_filter(
        self,
        pid_field: str,
        timestamp_field: str,
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Build the ``$match`` document; snapshot timestamps are epoch millis."""
        conditions: list[dict[str, Any]] = []
        if self.lower_bound_pid:
            conditions.append({pid_field: {"$gt": self.lower_bound_pid}})
        if self.pid_filter:
            conditions.append({pid_field: {"$regex": self.pid_filter}})
        if self.min_age_from_now > timedelta(0):
            reference = (now or datetime.now(timezone.utc)) - self.min_age_from_now
            conditions.append({timestamp_field: {"$lt": to_epoch_millis(reference)}})
        if not conditions:
            return {}
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}


@dataclass(frozen=True)
class TimestampRecord:
    """The latest marker held by the timestamp ledger."""

    timestamp: datetime
    tag: str | None = None


def to_epoch_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def as_utc(moment: datetime) -> datetime:
    """BSON dates come back naive unless the client is tz-aware."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
