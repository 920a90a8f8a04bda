"""
BoardSync — Upstream Markup Extraction

The BGG XML API is not contractually stable and occasionally returns
truncated or garbled fragments, so responses are read with tolerant pattern
extraction instead of a strict XML parser: every <item> block is extracted
independently, and a block that cannot be read is logged and dropped
without affecting its neighbours.

Records produced here are raw: every field is optional and text is still
escaped. Canonicalization happens in engine/normalizer.py.
"""

from __future__ import annotations

import re

import structlog
from pydantic import BaseModel, Field, ValidationError

from boardsync.utils.text import decode_entities

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
_ITEM_RE = re.compile(r"<item\b([^>]*)>(.*?)</item>", re.S | re.I)
_ATTR_RE = re.compile(r'([\w:-]+)\s*=\s*"([^"]*)"')
_NAME_TAG_RE = re.compile(r"<name\b([^>]*?)/?>", re.I)
_LINK_TAG_RE = re.compile(r"<link\b([^>]*?)/?>", re.I)
_IMAGE_RE = re.compile(r"<image>\s*([^<]+?)\s*</image>", re.I)
_THUMBNAIL_RE = re.compile(r"<thumbnail>\s*([^<]+?)\s*</thumbnail>", re.I)
_DESCRIPTION_RE = re.compile(r"<description[^>]*>(.*?)</description>", re.S | re.I)
_AVERAGE_RE = re.compile(r'<average\s[^>]*value="([^"]*)"', re.I)
_WEIGHT_RE = re.compile(r'<averageweight\s[^>]*value="([^"]*)"', re.I)
_COLLECTION_NAME_RE = re.compile(r"<name[^>]*>([^<]+)</name>", re.I)
_YEAR_TEXT_RE = re.compile(r"<yearpublished>\s*(-?\d+)\s*</yearpublished>", re.I)
_STATS_TAG_RE = re.compile(r"<stats\b([^>]*)>", re.I)
_STATUS_TAG_RE = re.compile(r"<status\b([^>]*?)/?>", re.I)
_ERROR_MESSAGE_RE = re.compile(
    r"<error[^>]*>\s*<message>(.*?)</message>", re.S | re.I
)

_LINK_FACETS = {
    "boardgamemechanic": "mechanics",
    "boardgamedesigner": "designers",
    "boardgameartist": "artists",
    "boardgamepublisher": "publishers",
    "boardgamecategory": "categories",
}


# ---------------------------------------------------------------------------
# Raw record models
# ---------------------------------------------------------------------------


class ThingRecord(BaseModel):
    """One <item> from a thing lookup. Nothing beyond the id is guaranteed."""

    bgg_id: str = Field(..., pattern=r"^\d+$")
    item_type: str = ""
    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    thumbnail_url: str | None = None
    min_players: int | None = None
    max_players: int | None = None
    playing_time: int | None = None
    min_age: int | None = None
    year_published: int | None = None
    average_rating: float | None = None
    average_weight: float | None = None
    mechanics: list[str] = Field(default_factory=list)
    designers: list[str] = Field(default_factory=list)
    artists: list[str] = Field(default_factory=list)
    publishers: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)


class CollectionItem(BaseModel):
    """One <item> from a user collection partition, with all status flags."""

    bgg_id: str = Field(..., pattern=r"^\d+$")
    name: str = "Unknown"
    subtype: str = ""
    image_url: str | None = None
    thumbnail_url: str | None = None
    year_published: int | None = None
    min_players: int | None = None
    max_players: int | None = None
    playing_time: int | None = None

    own: bool = False
    prevowned: bool = False
    fortrade: bool = False
    want: bool = False
    wanttobuy: bool = False
    wanttoplay: bool = False
    wishlist: bool = False
    preordered: bool = False

    @property
    def is_expansion(self) -> bool:
        return self.subtype == "boardgameexpansion"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _attrs(fragment: str) -> dict[str, str]:
    return {k.lower(): v for k, v in _ATTR_RE.findall(fragment)}


def _to_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        try:
            return int(float(raw))
        except ValueError:
            return None


def _to_float(raw: str | None) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw.strip())
    except ValueError:
        return None


def _value_of(block: str, tag: str) -> str | None:
    match = re.search(rf'<{tag}\b[^>]*\bvalue="([^"]*)"', block, re.I)
    return match.group(1) if match else None


def _first(pattern: re.Pattern[str], block: str) -> str | None:
    match = pattern.search(block)
    return match.group(1) if match else None


def extract_error_message(xml: str) -> str | None:
    """Return the upstream's <error><message> text, if the payload is an error document."""
    match = _ERROR_MESSAGE_RE.search(xml)
    if not match:
        return None
    return decode_entities(match.group(1).strip())


# ---------------------------------------------------------------------------
# Thing lookups
# ---------------------------------------------------------------------------


def _parse_thing_block(attrs: dict[str, str], block: str) -> ThingRecord:
    primary: str | None = None
    fallback: str | None = None
    for name_attrs in (_attrs(m) for m in _NAME_TAG_RE.findall(block)):
        value = name_attrs.get("value")
        if value is None:
            continue
        if name_attrs.get("type") == "primary" and primary is None:
            primary = value
        elif fallback is None:
            fallback = value

    facets: dict[str, list[str]] = {field: [] for field in _LINK_FACETS.values()}
    for link_attrs in (_attrs(m) for m in _LINK_TAG_RE.findall(block)):
        field = _LINK_FACETS.get(link_attrs.get("type", ""))
        value = link_attrs.get("value")
        if field and value:
            facets[field].append(value)

    return ThingRecord(
        bgg_id=attrs.get("id", ""),
        item_type=attrs.get("type", ""),
        title=primary or fallback,
        description=_first(_DESCRIPTION_RE, block),
        image_url=_first(_IMAGE_RE, block),
        thumbnail_url=_first(_THUMBNAIL_RE, block),
        min_players=_to_int(_value_of(block, "minplayers")),
        max_players=_to_int(_value_of(block, "maxplayers")),
        playing_time=_to_int(_value_of(block, "playingtime")),
        min_age=_to_int(_value_of(block, "minage")),
        year_published=_to_int(_value_of(block, "yearpublished")),
        average_rating=_to_float(_first(_AVERAGE_RE, block)),
        average_weight=_to_float(_first(_WEIGHT_RE, block)),
        **facets,
    )


def parse_thing_items(xml: str) -> list[ThingRecord]:
    """
    Extract every <item> from a thing response.

    Args:
        xml: Raw response body (possibly partial).

    Returns:
        One ThingRecord per readable item block, in document order.
    """
    records: list[ThingRecord] = []
    for raw_attrs, block in _ITEM_RE.findall(xml):
        attrs = _attrs(raw_attrs)
        try:
            records.append(_parse_thing_block(attrs, block))
        except ValidationError as e:
            logger.warning(
                "bgg_xml_thing_unreadable",
                item_attrs=raw_attrs[:100],
                error=str(e)[:200],
            )
    return records


def parse_thing_types(xml: str) -> dict[str, str]:
    """Map bgg_id -> item type for every item in a thing response."""
    types: dict[str, str] = {}
    for raw_attrs, _block in _ITEM_RE.findall(xml):
        attrs = _attrs(raw_attrs)
        if attrs.get("id", "").isdigit():
            types[attrs["id"]] = attrs.get("type", "")
    return types


def parse_thing_image(xml: str) -> str | None:
    return _first(_IMAGE_RE, xml)


# ---------------------------------------------------------------------------
# Collection partitions
# ---------------------------------------------------------------------------


def _parse_collection_block(attrs: dict[str, str], block: str) -> CollectionItem:
    stats = _attrs(_first(_STATS_TAG_RE, block) or "")
    status = _attrs(_first(_STATUS_TAG_RE, block) or "")
    name = _first(_COLLECTION_NAME_RE, block)

    def flag(key: str) -> bool:
        return status.get(key, "0").strip() == "1"

    return CollectionItem(
        bgg_id=attrs.get("objectid", ""),
        name=decode_entities(name.strip()) if name else "Unknown",
        subtype=attrs.get("subtype", ""),
        image_url=_first(_IMAGE_RE, block),
        thumbnail_url=_first(_THUMBNAIL_RE, block),
        year_published=_to_int(_first(_YEAR_TEXT_RE, block)),
        min_players=_to_int(stats.get("minplayers")) or None,
        max_players=_to_int(stats.get("maxplayers")) or None,
        playing_time=_to_int(stats.get("playingtime")) or None,
        own=flag("own"),
        prevowned=flag("prevowned"),
        fortrade=flag("fortrade"),
        want=flag("want"),
        wanttobuy=flag("wanttobuy"),
        wanttoplay=flag("wanttoplay"),
        wishlist=flag("wishlist"),
        preordered=flag("preordered"),
    )


def parse_collection_items(xml: str) -> list[CollectionItem]:
    """Extract every readable <item> from a collection response."""
    items: list[CollectionItem] = []
    for raw_attrs, block in _ITEM_RE.findall(xml):
        attrs = _attrs(raw_attrs)
        try:
            items.append(_parse_collection_block(attrs, block))
        except ValidationError as e:
            logger.warning(
                "bgg_xml_collection_item_unreadable",
                item_attrs=raw_attrs[:100],
                error=str(e)[:200],
            )
    return items
