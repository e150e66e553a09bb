"""RestartPolicy — restart failing streams with exponential backoff and jitter."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import TYPE_CHECKING, TypeVar

from .exceptions import (
    MalformedDocumentError,
    MongoConnectionError,
    ReadJournalConfigurationError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger("cqrs_ddd.read_journal.restart")

T = TypeVar("T")

MIN_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 128.0
RANDOM_FACTOR = 0.1

# Errors that no amount of restarting can repair.
NON_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    MalformedDocumentError,
    MongoConnectionError,
    ReadJournalConfigurationError,
)


def _as_seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def compute_max_restarts(
    max_idle_time: timedelta | float,
    max_backoff: timedelta | float = MAX_BACKOFF_SECONDS,
) -> int:
    """Derive the number of restarts that fit into an idle-time budget.

    When the budget exceeds the backoff cap, the full ramp
    (1+2+4+8+16+32+64 = 127s) is always allowed and further restarts run at
    the capped interval. Otherwise the count is ``floor(log2(seconds))``.
    """
    budget_ms = int(_as_seconds(max_idle_time) * 1000)
    cap_ms = int(_as_seconds(max_backoff) * 1000)
    if cap_ms < budget_ms:
        return max(7, 6 + budget_ms // cap_ms)
    whole_seconds = budget_ms // 1000
    return max(0, whole_seconds.bit_length() - 1)


@dataclass(frozen=True)
class RestartSettings:
    """Backoff parameters of a :class:`RestartPolicy`.

    Attributes:
        min_backoff: Delay in seconds before the first restart.
        max_backoff: Cap on the delay in seconds.
        random_factor: Relative jitter applied to every delay (0.1 = ±10%).
        max_restarts: Restarts allowed before the failure propagates.
    """

    min_backoff: float = MIN_BACKOFF_SECONDS
    max_backoff: float = MAX_BACKOFF_SECONDS
    random_factor: float = RANDOM_FACTOR
    max_restarts: int = 0

    def __post_init__(self) -> None:
        if self.min_backoff < 0 or self.max_backoff < 0:
            raise ValueError("min_backoff and max_backoff must be >= 0")
        if self.min_backoff > self.max_backoff:
            raise ValueError("min_backoff must be <= max_backoff")
        if not 0 <= self.random_factor < 1:
            raise ValueError("random_factor must be in [0, 1)")
        if self.max_restarts < 0:
            raise ValueError("max_restarts must be >= 0")

    @classmethod
    def for_max_idle_time(cls, max_idle_time: timedelta | float) -> RestartSettings:
        """Settings whose restart budget is derived from *max_idle_time*."""
        return cls(max_restarts=compute_max_restarts(max_idle_time))

    def with_max_restarts(self, max_restarts: int) -> RestartSettings:
        return replace(self, max_restarts=max_restarts)


class RestartPolicy:
    """Re-create a failing async source with exponential backoff.

    The policy wraps a *factory* rather than an iterator: every restart asks
    the factory for a fresh source, so callers decide where a restarted
    source resumes. Elements already delivered before a failure may be
    delivered again by the restarted source.
    """

    def __init__(self, settings: RestartSettings | None = None) -> None:
        self.settings = settings or RestartSettings()

    def delay_for_restart(self, restart: int) -> float:
        """Return delay in seconds before the given 1-based restart.

        ``min_backoff * 2^(restart-1)`` capped by ``max_backoff``, then
        multiplied by a random factor in ``[1 - random_factor, 1 + random_factor]``.
        """
        if restart < 1:
            return 0.0
        settings = self.settings
        delay = min(settings.min_backoff * (2 ** (restart - 1)), settings.max_backoff)
        if settings.random_factor:
            jitter = random.uniform(-settings.random_factor, settings.random_factor)  # noqa: S311
            delay *= 1.0 + jitter
        return float(max(0.0, delay))

    async def run(self, source_factory: Callable[[], AsyncIterator[T]]) -> AsyncIterator[T]:
        """Yield the elements of ``source_factory()``, restarting it on failure.

        After ``max_restarts`` restarts the last error propagates unchanged.
        """
        restarts = 0
        while True:
            try:
                async for element in source_factory():
                    yield element
                return
            except NON_RETRYABLE_ERRORS:
                raise
            except Exception as e:
                if restarts >= self.settings.max_restarts:
                    if self.settings.max_restarts:
                        logger.error(
                            "Source failed after %d restarts, giving up: %s",
                            restarts,
                            e,
                        )
                    raise
                restarts += 1
                delay = self.delay_for_restart(restarts)
                logger.warning(
                    "Source failed (%s); restart %d/%d in %.2fs",
                    e,
                    restarts,
                    self.settings.max_restarts,
                    delay,
                )
                await _sleep(delay)


async def collect(source: AsyncIterator[T]) -> list[T]:
    """Drain an async source into a list."""
    return [element async for element in source]


async def _sleep(seconds: float) -> None:
    """Async sleep (overridable for tests)."""
    import asyncio

    await asyncio.sleep(seconds)
