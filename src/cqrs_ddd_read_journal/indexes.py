"""Index bootstrap — create missing indexes on startup."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .exceptions import IndexCreationError
from .fields import J_PROCESSOR_ID, J_TAGS

logger = logging.getLogger("cqrs_ddd.read_journal.indexes")


@dataclass(frozen=True)
class IndexSpec:
    """A named compound index. keys: [(field, 1|(-1)), ...]."""

    name: str
    keys: tuple[tuple[str, int], ...]
    unique: bool = False
    sparse: bool = False


# Same name as the index the write side creates on journal collections.
TAG_PID_INDEX = IndexSpec(
    name="ditto_tag_pid",
    keys=((J_TAGS, 1), (J_PROCESSOR_ID, 1)),
    unique=False,
    sparse=True,
)


def _key_pattern(info: Any) -> tuple[tuple[str, Any], ...]:
    key = info.get("key", ()) if isinstance(info, dict) else ()
    if isinstance(key, dict):
        key = key.items()
    return tuple((field, direction) for field, direction in key)


def _is_present(index: IndexSpec, existing: dict[str, Any]) -> bool:
    """An index exists if one has its name or its key pattern."""
    if index.name in existing:
        return True
    return any(_key_pattern(info) == index.keys for info in existing.values())


async def create_missing_indexes(collection: Any, indexes: list[IndexSpec]) -> list[str]:
    """Create every index of *indexes* not yet present on *collection*.

    Idempotent; returns the names of the indexes that were created.
    Raises IndexCreationError when listing or creating an index fails.
    """
    try:
        existing = dict(await collection.index_information())
    except Exception as e:
        raise IndexCreationError(
            f"Could not list indexes of {collection.name!r}: {e}"
        ) from e
    created: list[str] = []
    for index in indexes:
        if _is_present(index, existing):
            logger.debug("Index %s already present on %s", index.name, collection.name)
            continue
        try:
            await collection.create_index(
                list(index.keys),
                name=index.name,
                unique=index.unique,
                sparse=index.sparse,
            )
        except Exception as e:
            raise IndexCreationError(
                f"Could not create index {index.name!r} on {collection.name!r}: {e}"
            ) from e
        logger.info("Created index %s on %s", index.name, collection.name)
        created.append(index.name)
    return created
