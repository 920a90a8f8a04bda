"""
BoardSync — Paced Iteration

Sequential, rate-limited iteration over a fixed sequence of work items
(collection partitions, sweep batches, tenants). The pause is inserted
between consecutive items, never before the first or after the last, so a
run of N items costs (N - 1) * interval seconds of idle time.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from typing import TypeVar

T = TypeVar("T")


async def paced(items: Iterable[T], interval: float) -> AsyncIterator[T]:
    """
    Yield items one at a time, sleeping `interval` seconds between them.

    Usage:
        async for partition in paced(PARTITION_FETCH_ORDER, 1.5):
            ...
    """
    first = True
    for item in items:
        if not first and interval > 0:
            await asyncio.sleep(interval)
        first = False
        yield item
