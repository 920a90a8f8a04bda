"""
BoardSync — Shared Catalog Models

One deduplicated row per upstream game/expansion, shared by every tenant.
The external identifier (BGG id) is unique when present; it is NULL only
for title-only placeholders created by unrelated import flows until the
discovery sweeper promotes them.

Facets (mechanics, designers, artists, publishers) are name-keyed rows
linked through join tables with a unique (catalog_id, facet_id) pair so
re-linking is conflict tolerant.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BOOLEAN,
    DECIMAL as SA_DECIMAL,
    INTEGER,
    TIMESTAMP,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import expression

from boardsync.models.base import Base


class CatalogEntry(Base):
    """Globally shared description of one upstream game or expansion."""

    __tablename__ = "game_catalog"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    bgg_id: Mapped[str | None] = mapped_column(
        String,
        unique=True,
        nullable=True,
        index=True,
        comment="Upstream identifier; NULL only for title-only placeholders",
    )
    title: Mapped[str] = mapped_column(String, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    min_players: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    max_players: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    play_time_minutes: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    suggested_age: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="e.g. '12+'"
    )
    year_published: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    bgg_community_rating: Mapped[Decimal | None] = mapped_column(
        SA_DECIMAL(4, 2), nullable=True
    )
    weight: Mapped[Decimal | None] = mapped_column(
        SA_DECIMAL(3, 2),
        nullable=True,
        comment="Complexity weight 1-5; NULL when the upstream reports 0 (unrated)",
    )
    is_expansion: Mapped[bool] = mapped_column(
        BOOLEAN, default=False, server_default=expression.false(), nullable=False
    )
    bgg_verified_type: Mapped[str | None] = mapped_column(
        String,
        nullable=True,
        comment="boardgame | boardgameexpansion | linked | invalid",
    )
    bgg_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<CatalogEntry bgg_id={self.bgg_id!r} title={self.title!r} "
            f"type={self.bgg_verified_type!r}>"
        )


# ---------------------------------------------------------------------------
# Facets
# ---------------------------------------------------------------------------


class Mechanic(Base):
    __tablename__ = "mechanics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)


class Designer(Base):
    __tablename__ = "designers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)


class Artist(Base):
    __tablename__ = "artists"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)


class Publisher(Base):
    __tablename__ = "publishers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)


class CatalogMechanic(Base):
    __tablename__ = "catalog_mechanics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    catalog_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("game_catalog.id", ondelete="CASCADE"), nullable=False
    )
    mechanic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("mechanics.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (UniqueConstraint("catalog_id", "mechanic_id"),)


class CatalogDesigner(Base):
    __tablename__ = "catalog_designers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    catalog_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("game_catalog.id", ondelete="CASCADE"), nullable=False
    )
    designer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("designers.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (UniqueConstraint("catalog_id", "designer_id"),)


class CatalogArtist(Base):
    __tablename__ = "catalog_artists"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    catalog_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("game_catalog.id", ondelete="CASCADE"), nullable=False
    )
    artist_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("artists.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (UniqueConstraint("catalog_id", "artist_id"),)


class CatalogPublisher(Base):
    __tablename__ = "catalog_publishers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    catalog_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("game_catalog.id", ondelete="CASCADE"), nullable=False
    )
    publisher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("publishers.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (UniqueConstraint("catalog_id", "publisher_id"),)


# facet kind -> (facet model, join model, join column name)
FACET_TABLES: dict[str, tuple[type[Base], type[Base], str]] = {
    "mechanic": (Mechanic, CatalogMechanic, "mechanic_id"),
    "designer": (Designer, CatalogDesigner, "designer_id"),
    "artist": (Artist, CatalogArtist, "artist_id"),
    "publisher": (Publisher, CatalogPublisher, "publisher_id"),
}
