"""Declarative aggregation pipeline builder.

Stage order is significant: every query in this package relies on
``$limit`` running before ``$group`` (bounded scans) and on the snapshot
prune running after the max-id group (progress on fully pruned pages).
"""

from __future__ import annotations

from typing import Any

from .exceptions import MongoQueryError


def _direction(direction: str | int) -> int:
    if isinstance(direction, int):
        if direction not in (1, -1):
            raise MongoQueryError(f"Sort direction must be 1 or -1, got {direction}")
        return direction
    normalized = str(direction).lower()
    if normalized == "asc":
        return 1
    if normalized == "desc":
        return -1
    raise MongoQueryError(f"Sort direction must be 'asc' or 'desc', got {direction!r}")


class AggregationPipeline:
    """Builds a MongoDB aggregation pipeline one stage at a time.

    Each method appends a stage and returns the builder, so pipelines read
    top to bottom in execution order::

        pipeline = (
            AggregationPipeline()
            .match({"pid": {"$gt": cursor}})
            .sort([("pid", "asc"), ("to", "desc")])
            .limit(batch_size)
            .group("$pid")
            .sort([("_id", "asc")])
        )
        collection.aggregate(pipeline.stages)
    """

    def __init__(self) -> None:
        self._stages: list[dict[str, Any]] = []

    @property
    def stages(self) -> list[dict[str, Any]]:
        return list(self._stages)

    def stage_names(self) -> list[str]:
        """Operator name of every stage, e.g. ``["$match", "$sort"]``."""
        return [next(iter(stage)) for stage in self._stages]

    def __len__(self) -> int:
        return len(self._stages)

    def match(self, filter_doc: dict[str, Any]) -> AggregationPipeline:
        if filter_doc:
            self._stages.append({"$match": filter_doc})
        return self

    def sort(self, order_by: list[tuple[str, str | int]]) -> AggregationPipeline:
        """Append ``$sort``; accepts ``[(field, "asc"|"desc"|1|-1)]``."""
        if not order_by:
            raise MongoQueryError("$sort needs at least one field")
        self._stages.append(
            {"$sort": {field: _direction(direction) for field, direction in order_by}}
        )
        return self

    def limit(self, count: int) -> AggregationPipeline:
        if count < 1:
            raise MongoQueryError(f"$limit must be positive, got {count}")
        self._stages.append({"$limit": count})
        return self

    def group(self, key: Any, **accumulators: dict[str, Any]) -> AggregationPipeline:
        """Append ``$group`` keyed by *key* (``None`` groups the whole input)."""
        stage: dict[str, Any] = {"_id": key}
        stage.update(accumulators)
        self._stages.append({"$group": stage})
        return self

    def project(self, projection: dict[str, Any]) -> AggregationPipeline:
        self._stages.append({"$project": projection})
        return self

    def prune_array(
        self,
        array_field: str,
        condition: dict[str, Any],
        *,
        variable: str = "item",
        keep: list[str] | None = None,
    ) -> AggregationPipeline:
        """Keep only the elements of *array_field* satisfying *condition*.

        *condition* refers to the element as ``$$<variable>``; fields listed in
        *keep* are carried over unchanged.
        """
        projection: dict[str, Any] = dict.fromkeys(keep or [], 1)
        projection[array_field] = {
            "$filter": {
                "input": f"${array_field}",
                "as": variable,
                "cond": condition,
            }
        }
        return self.project(projection)


def first(expression: Any) -> dict[str, Any]:
    """``$first`` accumulator."""
    return {"$first": expression}


def last(expression: Any) -> dict[str, Any]:
    """``$last`` accumulator."""
    return {"$last": expression}


def first_array_element(array_field: str, field: str) -> dict[str, Any]:
    """Expression for ``<array_field>[0].<field>``."""
    return {"$arrayElemAt": [f"${array_field}.{field}", 0]}
