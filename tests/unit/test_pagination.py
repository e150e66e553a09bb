"""Tests for KeyOrderedPaginator and the stream helpers."""

from __future__ import annotations

import pytest

from cqrs_ddd_read_journal.pagination import KeyOrderedPaginator, flatten, regroup

KEYS = ["pid1", "pid2", "pid3", "pid4", "pid5"]


class KeySource:
    """Serves the keys above the start key, *size* at a time, and records starts."""

    def __init__(self, keys, size):
        self.keys = sorted(keys)
        self.size = size
        self.starts: list[str] = []

    async def __call__(self, start):
        self.starts.append(start)
        return [key for key in self.keys if key > start][: self.size]


async def _elements(values):
    for value in values:
        yield value


@pytest.mark.asyncio
async def test_batches_cover_every_key_once_in_order() -> None:
    source = KeySource(KEYS, size=2)
    paginator = KeyOrderedPaginator("", source, key_of=lambda key: key)

    batches = [batch async for batch in paginator]

    assert batches == [["pid1", "pid2"], ["pid3", "pid4"], ["pid5"]]
    assert source.starts == ["", "pid2", "pid4", "pid5"]
    assert paginator.cursor == "pid5"


@pytest.mark.asyncio
async def test_lower_bound_is_exclusive() -> None:
    source = KeySource(KEYS, size=10)
    paginator = KeyOrderedPaginator("pid3", source, key_of=lambda key: key)

    elements = [key async for key in flatten(paginator.batches())]

    assert elements == ["pid4", "pid5"]


@pytest.mark.asyncio
async def test_empty_source_ends_immediately() -> None:
    source = KeySource([], size=2)
    paginator = KeyOrderedPaginator("", source, key_of=lambda key: key)

    assert [batch async for batch in paginator] == []
    assert paginator.cursor == ""


def test_reseed_keeps_the_larger_bound() -> None:
    paginator = KeyOrderedPaginator("pid2", KeySource(KEYS, 1), key_of=str)

    paginator.reseed("pid4")
    assert paginator.start_key == "pid4"

    paginator.reseed("pid1")
    assert paginator.start_key == "pid4"


@pytest.mark.asyncio
async def test_cursor_never_moves_backwards() -> None:
    """A batch with smaller keys than already seen leaves the cursor in place."""
    answers = [["pid3"], ["pid1"], []]

    async def source(start):
        return answers.pop(0)

    paginator = KeyOrderedPaginator("", source, key_of=lambda key: key)
    cursors = []
    async for _ in paginator:
        cursors.append(paginator.cursor)

    assert cursors == ["pid3", "pid3"]


@pytest.mark.asyncio
async def test_source_errors_propagate_and_keep_cursor() -> None:
    calls = []

    async def source(start):
        calls.append(start)
        if len(calls) == 2:
            raise RuntimeError("query failed")
        return ["pid1", "pid2"]

    paginator = KeyOrderedPaginator("", source, key_of=lambda key: key)
    with pytest.raises(RuntimeError, match="query failed"):
        async for _ in paginator:
            pass

    assert paginator.cursor == "pid2"
    assert calls == ["", "pid2"]


@pytest.mark.asyncio
async def test_regroup_rechunks_elements() -> None:
    chunks = [chunk async for chunk in regroup(_elements(range(5)), 2)]
    assert chunks == [[0, 1], [2, 3], [4]]


@pytest.mark.asyncio
async def test_regroup_rejects_empty_chunks() -> None:
    with pytest.raises(ValueError, match="size"):
        async for _ in regroup(_elements([1]), 0):
            pass
