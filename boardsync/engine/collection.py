"""
BoardSync — Collection Merge & Platform Actions

Pure functions over collection partitions:

1. merge_partitions() collapses the per-status partitions into one item per
   upstream id. The same id routinely appears in several partitions (an
   owned game can also be listed for trade), and the first occurrence in
   MERGE_PRIORITY wins.
2. determine_platform_action() maps an item's status flags to what the
   platform does with it.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from enum import Enum

from boardsync.pipeline.bgg_client import Partition
from boardsync.pipeline.bgg_xml import CollectionItem


class PlatformAction(str, Enum):
    OWNED = "owned"
    FOR_TRADE = "for_trade"
    PREORDERED = "preordered"
    PREVIOUSLY_OWNED = "previously_owned"
    WISHLIST = "wishlist"
    WANT_TO_PLAY = "want_to_play"
    SKIP = "skip"


# Actions that produce (or update) a TenantGame.
LIBRARY_ACTIONS = frozenset({
    PlatformAction.OWNED,
    PlatformAction.FOR_TRADE,
    PlatformAction.PREORDERED,
    PlatformAction.PREVIOUSLY_OWNED,
})

# Partitions are requested in this order (one request each).
PARTITION_FETCH_ORDER: tuple[Partition, ...] = (
    Partition.OWNED,
    Partition.PREVIOUSLY_OWNED,
    Partition.FOR_TRADE,
    Partition.PREORDERED,
    Partition.WISHLIST,
    Partition.WANT_TO_BUY,
    Partition.WANT_IN_TRADE,
    Partition.WANT_TO_PLAY,
)

# When an id appears in several partitions, the earliest partition here wins.
MERGE_PRIORITY: tuple[Partition, ...] = (
    Partition.OWNED,
    Partition.FOR_TRADE,
    Partition.PREVIOUSLY_OWNED,
    Partition.PREORDERED,
    Partition.WANT_IN_TRADE,
    Partition.WANT_TO_BUY,
    Partition.WISHLIST,
    Partition.WANT_TO_PLAY,
)

# Filename markers of the upstream's social-preview / thumbnail renditions.
LOW_QUALITY_IMAGE_RE = re.compile(
    r"__opengraph|fit-in/1200x630|filters:strip_icc|__thumb|__micro",
    re.IGNORECASE,
)


def merge_partitions(
    partitions: Mapping[Partition, Sequence[CollectionItem]],
) -> dict[str, CollectionItem]:
    """
    Collapse partitions into one item per bgg_id, honouring MERGE_PRIORITY.

    Missing partitions (failed fetches) are simply absent from the mapping.
    The result preserves priority order, then document order.
    """
    merged: dict[str, CollectionItem] = {}
    for partition in MERGE_PRIORITY:
        for item in partitions.get(partition, ()):
            if item.bgg_id in merged:
                continue
            merged[item.bgg_id] = item
    return merged


def determine_platform_action(item: CollectionItem) -> PlatformAction:
    """Map a collection item's status flags to a platform action."""
    if item.own:
        if item.fortrade:
            return PlatformAction.FOR_TRADE
        if item.preordered:
            return PlatformAction.PREORDERED
        return PlatformAction.OWNED

    if item.prevowned:
        return PlatformAction.PREVIOUSLY_OWNED
    if item.fortrade:
        return PlatformAction.FOR_TRADE
    if item.preordered:
        return PlatformAction.PREORDERED
    if item.want or item.wanttobuy or item.wishlist:
        return PlatformAction.WISHLIST
    if item.wanttoplay:
        return PlatformAction.WANT_TO_PLAY
    return PlatformAction.SKIP


def is_low_quality_image(url: str | None) -> bool:
    if not url:
        return False
    return bool(LOW_QUALITY_IMAGE_RE.search(url))
