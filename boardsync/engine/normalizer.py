"""
BoardSync — Record Normalizer

Converts a raw upstream ThingRecord into the canonical CatalogRecord the
store writes:

- Free text is entity-decoded before any other use.
- Complexity weight maps to a 5-bucket difficulty; the upstream's unrated
  sentinel (0) maps to UNKNOWN, never to the lightest bucket.
- Playing time maps to a configurable bucket label.
- Kind must be boardgame / boardgameexpansion, and a content filter rejects
  entries whose only tags describe non-board-game media unless something
  else marks them as a board game.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from boardsync.config import VerifiedType, settings
from boardsync.pipeline.bgg_xml import ThingRecord
from boardsync.utils.text import decode_entities

logger = structlog.get_logger(__name__)


class Difficulty(str, Enum):
    LIGHT = "1 - Light"
    MEDIUM_LIGHT = "2 - Medium Light"
    MEDIUM = "3 - Medium"
    MEDIUM_HEAVY = "4 - Medium Heavy"
    HEAVY = "5 - Heavy"
    UNKNOWN = "unknown"


class RecordKind(str, Enum):
    BOARDGAME = "boardgame"
    EXPANSION = "boardgame-expansion"
    OTHER = "other"


# Upper bounds (exclusive) for each difficulty bucket; anything above the
# last bound is HEAVY.
_WEIGHT_BREAKPOINTS: tuple[tuple[float, Difficulty], ...] = (
    (1.5, Difficulty.LIGHT),
    (2.25, Difficulty.MEDIUM_LIGHT),
    (3.0, Difficulty.MEDIUM),
    (3.75, Difficulty.MEDIUM_HEAVY),
)

EXCLUDED_CATEGORIES = frozenset({"Electronic", "Video Game", "Book"})
RPG_ONLY_CATEGORIES = frozenset({"Role Playing", "Expansion for Base-game"})
BOARD_GAME_INDICATORS = frozenset({
    "Card Game",
    "Dice",
    "Board Game",
    "Miniatures",
    "Party Game",
    "Wargame",
    "Abstract Strategy",
    "Collectible Components",
    "Trivia",
    "Children's Game",
    "Puzzle",
    "Deduction",
    "Word Game",
})

SOURCE_URL_TEMPLATE = "https://boardgamegeek.com/boardgame/{bgg_id}"


class CatalogRecord(BaseModel):
    """Canonical, storage-ready form of one upstream thing."""

    bgg_id: str
    kind: RecordKind
    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    min_players: int | None = None
    max_players: int | None = None
    play_time_minutes: int | None = None
    play_time: str | None = None
    suggested_age: str | None = None
    year_published: int | None = None
    bgg_community_rating: Decimal | None = None
    weight: Decimal | None = None
    difficulty: Difficulty = Difficulty.UNKNOWN
    mechanics: list[str] = Field(default_factory=list)
    designers: list[str] = Field(default_factory=list)
    artists: list[str] = Field(default_factory=list)
    publishers: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    rejected_reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.rejected_reason is None

    @property
    def is_expansion(self) -> bool:
        return self.kind is RecordKind.EXPANSION

    @property
    def verified_type(self) -> VerifiedType | None:
        if self.kind is RecordKind.BOARDGAME:
            return VerifiedType.BOARDGAME
        if self.kind is RecordKind.EXPANSION:
            return VerifiedType.EXPANSION
        return None

    @property
    def bgg_url(self) -> str:
        return SOURCE_URL_TEMPLATE.format(bgg_id=self.bgg_id)


# ---------------------------------------------------------------------------
# Field mappings
# ---------------------------------------------------------------------------


def weight_to_difficulty(weight: float | Decimal | None) -> Difficulty:
    """
    Map a 1-5 complexity weight to a difficulty bucket.

    0 and missing values are "unrated", not "light".
    """
    if weight is None or weight <= 0:
        return Difficulty.UNKNOWN
    for bound, bucket in _WEIGHT_BREAKPOINTS:
        if weight < bound:
            return bucket
    return Difficulty.HEAVY


def minutes_to_play_time(
    minutes: int | None,
    buckets: Sequence[tuple[int, str]] | None = None,
    longest_label: str | None = None,
) -> str | None:
    """
    Map minutes to a play-time label using ordered (max_minutes, label) pairs.

    Bucket tables default to the deployment's configuration so call sites
    never change when the target schema does.
    """
    if minutes is None or minutes <= 0:
        return None
    table = settings.PLAY_TIME_BUCKETS if buckets is None else buckets
    for bound, label in table:
        if minutes <= bound:
            return label
    return longest_label or settings.PLAY_TIME_LONGEST_LABEL


def classify_kind(item_type: str | None) -> RecordKind:
    if item_type == VerifiedType.BOARDGAME.value:
        return RecordKind.BOARDGAME
    if item_type == VerifiedType.EXPANSION.value:
        return RecordKind.EXPANSION
    return RecordKind.OTHER


def is_non_board_game(
    categories: Sequence[str],
    mechanics: Sequence[str],
    designers: Sequence[str] = (),
) -> bool:
    """
    True when the tags describe some other medium (video game, book, RPG).

    A single board-game indicator or any declared mechanic keeps the entry,
    so hybrids and oddly categorized classics survive.
    """
    tags = set(categories)
    has_indicator = bool(tags & BOARD_GAME_INDICATORS)
    if has_indicator or mechanics:
        return False
    if tags & EXCLUDED_CATEGORIES:
        return True
    rpg_only = bool(tags) and tags <= RPG_ONLY_CATEGORIES
    return rpg_only and not designers


def _round(value: float | None, places: str) -> Decimal | None:
    if value is None or value <= 0:
        return None
    return Decimal(str(value)).quantize(Decimal(places), rounding=ROUND_HALF_UP)


def _clean_text(value: str | None) -> str | None:
    decoded = decode_entities(value)
    if decoded is None:
        return None
    decoded = decoded.strip()
    return decoded or None


def _clean_names(values: Sequence[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        name = _clean_text(value)
        if name and name not in seen:
            seen.append(name)
    return seen


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def normalize(raw: ThingRecord) -> CatalogRecord:
    """
    Canonicalize one raw upstream record.

    Rejected records are still returned, with `rejected_reason` set, so
    the caller can count them.
    """
    kind = classify_kind(raw.item_type)
    title = _clean_text(raw.title)
    description = _clean_text(raw.description)
    if description and len(description) > settings.DESCRIPTION_MAX_LENGTH:
        description = description[: settings.DESCRIPTION_MAX_LENGTH]

    mechanics = _clean_names(raw.mechanics)
    designers = _clean_names(raw.designers)
    categories = _clean_names(raw.categories)

    rejected_reason: str | None = None
    if kind is RecordKind.OTHER:
        rejected_reason = f"kind '{raw.item_type or 'unknown'}' not allowed"
    elif not title:
        rejected_reason = "missing title"
    elif is_non_board_game(categories, mechanics, designers):
        rejected_reason = "non-board-game content"

    if rejected_reason:
        logger.debug(
            "normalizer_record_rejected",
            bgg_id=raw.bgg_id,
            item_type=raw.item_type,
            reason=rejected_reason,
        )

    return CatalogRecord(
        bgg_id=raw.bgg_id,
        kind=kind,
        title=title,
        description=description,
        image_url=(raw.image_url or raw.thumbnail_url or "").strip() or None,
        min_players=raw.min_players or None,
        max_players=raw.max_players or None,
        play_time_minutes=raw.playing_time or None,
        play_time=minutes_to_play_time(raw.playing_time),
        suggested_age=f"{raw.min_age}+" if raw.min_age else None,
        year_published=raw.year_published or None,
        bgg_community_rating=_round(raw.average_rating, "0.1"),
        weight=_round(raw.average_weight, "0.01"),
        difficulty=weight_to_difficulty(raw.average_weight),
        mechanics=mechanics,
        designers=designers,
        artists=_clean_names(raw.artists),
        publishers=_clean_names(raw.publishers),
        categories=categories,
        rejected_reason=rejected_reason,
    )
