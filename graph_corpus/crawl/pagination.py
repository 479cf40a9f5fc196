"""Watermark-bounded pagination over the two feed shapes the API offers.

Relationship feeds are cursored and come back in traversal order (most
recent relationship first); the watermark is an ID we expect to meet again.
Timelines are ordered by descending message ID and paged with ``max_id``;
the watermark is the newest message ID already stored.

Both collectors stop as soon as a page proves nothing newer can follow, so a
feed with nothing new costs exactly one fetch.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Sequence, Tuple

from ..data.models import MessageSnapshot, RelationshipPage

LOGGER = logging.getLogger(__name__)

START_CURSOR = -1
END_CURSOR = 0

RelationshipPageFetcher = Callable[[int], RelationshipPage]
MessagePageFetcher = Callable[[int], List[MessageSnapshot]]


def trim_until_id(ids: Sequence[int], seen_id: int) -> Tuple[List[int], bool]:
    """Return the IDs before ``seen_id`` and whether ``seen_id`` was present."""

    kept: List[int] = []
    for value in ids:
        if value == seen_id:
            return kept, True
        kept.append(value)
    return kept, False


def trim_messages(messages: Sequence[MessageSnapshot], watermark: int) -> List[MessageSnapshot]:
    """Drop every message whose ID is not strictly greater than ``watermark``."""

    return [message for message in messages if message.message_id > watermark]


def collect_relationship_ids(fetch_page: RelationshipPageFetcher, watermark: int) -> List[int]:
    """Walk a cursored ID feed until the watermark, an empty page, or the end cursor.

    A watermark of 0 means nothing is known yet and the feed is read to
    exhaustion. The result keeps traversal order.
    """

    collected: List[int] = []
    cursor = START_CURSOR
    pages = 0
    while True:
        page = fetch_page(cursor)
        pages += 1
        if not page.ids:
            break
        kept, found = trim_until_id(page.ids, watermark)
        collected.extend(kept)
        if found or page.next_cursor == END_CURSOR:
            break
        cursor = page.next_cursor
    LOGGER.debug("Collected %s new ids over %s page(s) (watermark=%s)", len(collected), pages, watermark)
    return collected


def collect_messages(fetch_page: MessagePageFetcher, watermark: int) -> List[MessageSnapshot]:
    """Page a newest-first timeline backwards until it drops below the watermark."""

    collected: List[MessageSnapshot] = []
    max_id = 0
    pages = 0
    while True:
        page = fetch_page(max_id)
        pages += 1
        if not page:
            break
        oldest = page[-1].message_id
        collected.extend(trim_messages(page, watermark))
        if not oldest > watermark:
            break
        max_id = oldest
    LOGGER.debug("Collected %s new messages over %s page(s) (watermark=%s)", len(collected), pages, watermark)
    return collected
