"""
Tests for collection merge and platform action routing
(boardsync/engine/collection.py).
"""

from __future__ import annotations

import pytest

from boardsync.engine.collection import (
    PlatformAction,
    determine_platform_action,
    is_low_quality_image,
    merge_partitions,
)
from boardsync.pipeline.bgg_client import Partition
from tests.factories import make_item


# ---------------------------------------------------------------------------
# merge_partitions
# ---------------------------------------------------------------------------


def test_owned_wins_over_trade() -> None:
    owned = make_item(7, "Azul", own=True)
    traded = make_item(7, "Azul (trade copy)", own=True, fortrade=True)

    merged = merge_partitions({Partition.FOR_TRADE: [traded], Partition.OWNED: [owned]})

    assert list(merged) == ["7"]
    assert merged["7"] is owned


def test_trade_wins_over_previously_owned_and_wishlist() -> None:
    traded = make_item(8, fortrade=True)
    prev = make_item(8, prevowned=True)
    wished = make_item(8, wishlist=True)

    merged = merge_partitions(
        {
            Partition.WISHLIST: [wished],
            Partition.PREVIOUSLY_OWNED: [prev],
            Partition.FOR_TRADE: [traded],
        }
    )
    assert merged["8"] is traded


def test_want_in_trade_beats_want_to_buy_and_wishlist() -> None:
    want = make_item(9, want=True)
    buy = make_item(9, wanttobuy=True)
    wish = make_item(9, wishlist=True)

    merged = merge_partitions(
        {Partition.WISHLIST: [wish], Partition.WANT_TO_BUY: [buy], Partition.WANT_IN_TRADE: [want]}
    )
    assert merged["9"] is want


def test_merge_keeps_distinct_ids_and_ignores_missing_partitions() -> None:
    merged = merge_partitions(
        {
            Partition.OWNED: [make_item(1, own=True), make_item(2, own=True)],
            Partition.WANT_TO_PLAY: [make_item(3, wanttoplay=True)],
        }
    )
    assert list(merged) == ["1", "2", "3"]


def test_item_in_owned_and_wishlist_is_never_wishlisted() -> None:
    merged = merge_partitions(
        {
            Partition.WISHLIST: [make_item(4, wishlist=True)],
            Partition.OWNED: [make_item(4, own=True)],
        }
    )
    assert determine_platform_action(merged["4"]) is PlatformAction.OWNED


def test_merge_empty() -> None:
    assert merge_partitions({}) == {}


# ---------------------------------------------------------------------------
# determine_platform_action
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "flags, expected",
    [
        ({"own": True}, PlatformAction.OWNED),
        ({"own": True, "fortrade": True}, PlatformAction.FOR_TRADE),
        ({"own": True, "preordered": True}, PlatformAction.PREORDERED),
        ({"own": True, "wishlist": True}, PlatformAction.OWNED),
        ({"prevowned": True}, PlatformAction.PREVIOUSLY_OWNED),
        ({"prevowned": True, "fortrade": True}, PlatformAction.PREVIOUSLY_OWNED),
        ({"fortrade": True}, PlatformAction.FOR_TRADE),
        ({"preordered": True}, PlatformAction.PREORDERED),
        ({"want": True}, PlatformAction.WISHLIST),
        ({"wanttobuy": True}, PlatformAction.WISHLIST),
        ({"wishlist": True}, PlatformAction.WISHLIST),
        ({"wanttoplay": True}, PlatformAction.WANT_TO_PLAY),
        ({}, PlatformAction.SKIP),
    ],
)
def test_determine_platform_action(flags: dict, expected: PlatformAction) -> None:
    assert determine_platform_action(make_item(1, **flags)) is expected


# ---------------------------------------------------------------------------
# is_low_quality_image
# ---------------------------------------------------------------------------


def test_low_quality_image_markers() -> None:
    assert is_low_quality_image("https://cf.geekdo-images.com/abc__opengraph/img/x.jpg")
    assert is_low_quality_image("https://cf.geekdo-images.com/fit-in/1200x630/x.jpg")
    assert is_low_quality_image("https://cf.geekdo-images.com/abc__thumb/img/x.jpg")
    assert not is_low_quality_image("https://cf.geekdo-images.com/abc__original/img/x.jpg")
    assert not is_low_quality_image(None)
    assert not is_low_quality_image("")
