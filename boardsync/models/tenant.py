"""
BoardSync — Tenant-Scoped Models

A tenant is one game library owned by a user. The reconciler reads the
tenant's sync settings (owned by the settings screens, read-only here),
writes TenantGame rows plus the WishlistWant / TradeListing side records,
and records the outcome of each run on TenantSyncState.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BOOLEAN,
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


class Tenant(Base):
    """A game library and the user who owns it."""

    __tablename__ = "libraries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Tenant id={self.id!r} owner_id={self.owner_id!r}>"


class UserRole(Base):
    """Platform-wide roles (only 'admin' matters to this engine)."""

    __tablename__ = "user_roles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "role"),)


class TenantSyncSettings(Base):
    """Per-tenant upstream sync configuration."""

    __tablename__ = "library_sync_settings"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("libraries.id", ondelete="CASCADE"), primary_key=True
    )
    bgg_username: Mapped[str | None] = mapped_column(String, nullable=True)
    removal_behavior: Mapped[str] = mapped_column(
        String, nullable=False, default="flag", server_default="flag",
        comment="flag | remove",
    )
    sync_enabled: Mapped[bool] = mapped_column(
        BOOLEAN, default=False, server_default=expression.false(), nullable=False
    )
    sync_frequency: Mapped[str] = mapped_column(
        String, nullable=False, default="daily", server_default="daily",
        comment="manual | daily | weekly",
    )
    sync_collection: Mapped[bool] = mapped_column(
        BOOLEAN, default=True, server_default=expression.true(), nullable=False
    )
    sync_plays: Mapped[bool] = mapped_column(
        BOOLEAN, default=False, server_default=expression.false(), nullable=False
    )
    sync_wishlist: Mapped[bool] = mapped_column(
        BOOLEAN, default=False, server_default=expression.false(), nullable=False
    )


class TenantSyncState(Base):
    """Outcome of the most recent reconciliation plus the single-flight lease."""

    __tablename__ = "library_sync_state"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("libraries.id", ondelete="CASCADE"), primary_key=True
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_sync_status: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="success | partial | error"
    )
    last_sync_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="Set while a reconciliation holds the tenant lease",
    )
    lock_token: Mapped[str | None] = mapped_column(String, nullable=True)


class TenantGame(Base):
    """A tenant-scoped owned / previously owned / preordered game."""

    __tablename__ = "games"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    bgg_id: Mapped[str | None] = mapped_column(String, nullable=True)
    bgg_url: Mapped[str | None] = mapped_column(String, nullable=True)
    catalog_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("game_catalog.id", ondelete="SET NULL"), nullable=True, index=True
    )
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    min_players: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    max_players: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    is_expansion: Mapped[bool] = mapped_column(
        BOOLEAN, default=False, server_default=expression.false(), nullable=False
    )
    ownership_status: Mapped[str] = mapped_column(
        String, nullable=False, default="owned", server_default="owned",
        comment="owned | previously_owned",
    )
    is_coming_soon: Mapped[bool] = mapped_column(
        BOOLEAN, default=False, server_default=expression.false(), nullable=False
    )
    is_for_sale: Mapped[bool] = mapped_column(
        BOOLEAN, default=False, server_default=expression.false(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (UniqueConstraint("tenant_id", "bgg_id"),)

    def __repr__(self) -> str:
        return (
            f"<TenantGame title={self.title!r} bgg_id={self.bgg_id!r} "
            f"status={self.ownership_status!r}>"
        )


class WishlistWant(Base):
    """A game the tenant's owner wants, imported from a remote wishlist."""

    __tablename__ = "trade_wants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    bgg_id: Mapped[str] = mapped_column(String, nullable=False)
    game_title: Mapped[str] = mapped_column(String, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )

    __table_args__ = (UniqueConstraint("tenant_id", "bgg_id"),)


class TradeListing(Base):
    """A tenant game offered for trade."""

    __tablename__ = "trade_listings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("libraries.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    game_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("games.id", ondelete="CASCADE"), nullable=False
    )
    condition: Mapped[str] = mapped_column(
        String, nullable=False, default="Good", server_default="Good"
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now()
    )

    __table_args__ = (UniqueConstraint("tenant_id", "game_id"),)
