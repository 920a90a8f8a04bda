"""
Builders for raw upstream records and a fake upstream client.
"""

from __future__ import annotations

from collections.abc import Sequence

from boardsync.pipeline.bgg_client import ALLOWED_THING_TYPES, Partition, UpstreamResult
from boardsync.pipeline.bgg_xml import CollectionItem, ThingRecord


def make_thing(
    bgg_id: int | str,
    title: str | None = "Test Game",
    item_type: str = "boardgame",
    **fields,
) -> ThingRecord:
    """Raw thing record with board-game-looking defaults."""
    defaults = {
        "min_players": 2,
        "max_players": 4,
        "playing_time": 45,
        "min_age": 10,
        "year_published": 2015,
        "average_rating": 7.46,
        "average_weight": 2.31,
        "mechanics": ["Hand Management"],
        "designers": ["Jane Designer"],
        "categories": ["Card Game"],
    }
    defaults.update(fields)
    return ThingRecord(bgg_id=str(bgg_id), item_type=item_type, title=title, **defaults)


def make_item(bgg_id: int | str, name: str = "Test Game", **fields) -> CollectionItem:
    return CollectionItem(bgg_id=str(bgg_id), name=name, subtype="boardgame", **fields)


class FakeBGGClient:
    """
    Stands in for BGGClient. Things, types, partitions and images are served
    from plain dicts; failing ids / partitions produce failed results.
    """

    def __init__(self):
        self.things: dict[str, ThingRecord] = {}
        self.types: dict[str, str] = {}
        self.partitions: dict[Partition, list[CollectionItem]] = {}
        self.images: dict[str, str] = {}
        self.failing_ids: set[str] = set()
        self.failing_partitions: set[Partition] = set()
        self.batch_calls: list[list[str]] = []
        self.type_calls: list[list[str]] = []
        self.partition_calls: list[Partition] = []
        self.image_calls: list[str] = []

    def add_things(self, *records: ThingRecord) -> None:
        for record in records:
            self.things[record.bgg_id] = record
            self.types[record.bgg_id] = record.item_type

    async def fetch_batch(
        self,
        ids: Sequence[int | str],
        kinds: Sequence[str] | None = ALLOWED_THING_TYPES,
        stats: bool = True,
    ) -> UpstreamResult[ThingRecord]:
        ids = [str(i) for i in ids]
        self.batch_calls.append(ids)
        if self.failing_ids & set(ids):
            return UpstreamResult(error="HTTP 503 after 3 attempts", status_code=503, attempts=3)
        items = [
            self.things[i]
            for i in ids
            if i in self.things and (not kinds or self.things[i].item_type in kinds)
        ]
        return UpstreamResult(items=items, status_code=200, attempts=1)

    async def fetch_types(self, ids: Sequence[int | str]) -> UpstreamResult[tuple[str, str]]:
        ids = [str(i) for i in ids]
        self.type_calls.append(ids)
        if self.failing_ids & set(ids):
            return UpstreamResult(error="HTTP 503 after 3 attempts", status_code=503, attempts=3)
        return UpstreamResult(
            items=[(i, self.types[i]) for i in ids if i in self.types],
            status_code=200,
            attempts=1,
        )

    async def fetch_partition(
        self,
        username: str,
        partition: Partition,
    ) -> UpstreamResult[CollectionItem]:
        self.partition_calls.append(partition)
        if partition in self.failing_partitions:
            return UpstreamResult(error="HTTP 202 after 6 attempts", status_code=202, attempts=6)
        return UpstreamResult(
            items=list(self.partitions.get(partition, [])), status_code=200, attempts=1
        )

    async def fetch_thing_image(self, bgg_id: str) -> str | None:
        self.image_calls.append(bgg_id)
        return self.images.get(bgg_id)
