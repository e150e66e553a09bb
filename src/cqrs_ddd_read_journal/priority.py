"""Ordering of persistence ids by ``priority-<N>`` tags.

MongoDB orders the tags numerically when the aggregation runs with a
``numericOrdering`` collation. Without it, tags are remapped to fixed-width
ordinal strings so that plain string comparison reproduces numeric order.
The remapping only holds while priorities have at most ``digits`` digits.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .fields import PRIORITY_TAG_PREFIX

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger("cqrs_ddd.read_journal.priority")

DEFAULT_PRIORITY_DIGITS = 10

NUMERIC_COLLATION: dict[str, Any] = {"locale": "en_US", "numericOrdering": True}


def is_priority_tag(tag: object) -> bool:
    return isinstance(tag, str) and tag.startswith(PRIORITY_TAG_PREFIX)


def encode_priority_tag(tag: str, digits: int = DEFAULT_PRIORITY_DIGITS) -> str:
    """Left-pad the numeric part of a priority tag to *digits* characters.

    ``priority-5`` becomes ``priority-0000000005``. Non-numeric suffixes are
    returned unchanged.
    """
    value = tag[len(PRIORITY_TAG_PREFIX) :]
    if not value.isdigit():
        return tag
    if len(value) > digits:
        logger.warning(
            "Priority tag %r exceeds %d digits; its ordering is not numeric",
            tag,
            digits,
        )
        return tag
    return PRIORITY_TAG_PREFIX + value.zfill(digits)


def priority_sort_key(
    tags: Iterable[object] | None, digits: int = DEFAULT_PRIORITY_DIGITS
) -> str | None:
    """Largest encoded priority tag, or None when there is none."""
    encoded = [
        encode_priority_tag(tag, digits) for tag in tags or () if is_priority_tag(tag)
    ]
    return max(encoded) if encoded else None


def order_by_priority(
    rows: Iterable[tuple[str, Iterable[object] | None]],
    digits: int = DEFAULT_PRIORITY_DIGITS,
) -> list[str]:
    """Order ``(pid, tags)`` rows by descending priority.

    Ids without a priority tag come last, in their original order.
    """
    keyed = [(pid, priority_sort_key(tags, digits)) for pid, tags in rows]
    with_priority = [item for item in keyed if item[1] is not None]
    without_priority = [pid for pid, key in keyed if key is None]
    with_priority.sort(key=lambda item: item[1] or "", reverse=True)
    return [pid for pid, _ in with_priority] + without_priority


def priority_tags_expression(tags_field: str) -> dict[str, Any]:
    """Server-side expression keeping only the priority tags of *tags_field*."""
    return {
        "$filter": {
            "input": f"${tags_field}",
            "as": "tags",
            "cond": {
                "$eq": [
                    {"$substrCP": ["$$tags", 0, len(PRIORITY_TAG_PREFIX)]},
                    PRIORITY_TAG_PREFIX,
                ]
            },
        }
    }
