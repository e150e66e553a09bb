"""KeyOrderedPaginator — advance a lower-bound cursor by the largest key seen."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

logger = logging.getLogger("cqrs_ddd.read_journal.pagination")

T = TypeVar("T")


class KeyOrderedPaginator(Generic[T]):
    """Lazily fetch batches of a collection sorted strictly ascending by key.

    ``batch_source(start)`` must return the next batch of elements whose key
    is greater than *start*, sorted ascending. After each batch the cursor
    moves to the largest key in it; iteration ends at the first empty batch.
    Exactly one batch query is in flight at a time, and errors from
    ``batch_source`` propagate untouched.

    Usage::

        paginator = KeyOrderedPaginator("", fetch_pids_above, key_of=lambda pid: pid)
        async for batch in paginator:
            ...
    """

    def __init__(
        self,
        lower_bound: str,
        batch_source: Callable[[str], Awaitable[list[T]]],
        key_of: Callable[[T], str],
    ) -> None:
        self._lower_bound = lower_bound
        self._batch_source = batch_source
        self._key_of = key_of
        self._cursor = ""

    @property
    def cursor(self) -> str:
        """The largest key observed so far (empty before the first batch)."""
        return self._cursor

    @property
    def start_key(self) -> str:
        """Exclusive lower bound of the next batch query."""
        return max(self._lower_bound, self._cursor)

    def reseed(self, lower_bound: str) -> None:
        """Raise the lower bound; a smaller value than the current one is ignored."""
        self._lower_bound = max(self._lower_bound, lower_bound)

    async def batches(self) -> AsyncIterator[list[T]]:
        while True:
            start = self.start_key
            batch = await self._batch_source(start)
            if not batch:
                logger.debug("Empty batch above %r; pagination complete", start)
                return
            self._cursor = max(self._cursor, max(self._key_of(e) for e in batch))
            logger.debug(
                "Fetched %d element(s) above %r; cursor now %r",
                len(batch),
                start,
                self._cursor,
            )
            yield batch

    def __aiter__(self) -> AsyncIterator[list[T]]:
        return self.batches()


async def flatten(batches: AsyncIterator[list[T]]) -> AsyncIterator[T]:
    """Concatenate a stream of batches into a stream of elements."""
    async for batch in batches:
        for element in batch:
            yield element


async def regroup(elements: AsyncIterator[T], size: int) -> AsyncIterator[list[T]]:
    """Re-chunk a stream of elements into lists of at most *size* elements."""
    if size < 1:
        raise ValueError("size must be >= 1")
    chunk: list[T] = []
    async for element in elements:
        chunk.append(element)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
