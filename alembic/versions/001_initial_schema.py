"""Initial schema — game_catalog, facets, scraper state, libraries, sync tables

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

FACETS = (
    ("mechanics", "catalog_mechanics", "mechanic_id"),
    ("designers", "catalog_designers", "designer_id"),
    ("artists", "catalog_artists", "artist_id"),
    ("publishers", "catalog_publishers", "publisher_id"),
)


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        server_default=sa.func.now(),
        nullable=nullable,
    )


def upgrade() -> None:
    # --- game_catalog (shared across tenants) ---
    op.create_table(
        "game_catalog",
        _uuid_pk(),
        sa.Column("bgg_id", sa.String(), nullable=True, comment="NULL only for title-only placeholders"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("min_players", sa.INTEGER(), nullable=True),
        sa.Column("max_players", sa.INTEGER(), nullable=True),
        sa.Column("play_time_minutes", sa.INTEGER(), nullable=True),
        sa.Column("suggested_age", sa.String(), nullable=True),
        sa.Column("year_published", sa.INTEGER(), nullable=True),
        sa.Column("bgg_community_rating", sa.DECIMAL(4, 2), nullable=True),
        sa.Column("weight", sa.DECIMAL(3, 2), nullable=True),
        sa.Column("is_expansion", sa.BOOLEAN(), server_default="false", nullable=False),
        sa.Column("bgg_verified_type", sa.String(), nullable=True),
        sa.Column("bgg_url", sa.String(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("bgg_id"),
    )
    op.create_index("ix_game_catalog_bgg_id", "game_catalog", ["bgg_id"])
    op.create_index("ix_game_catalog_title", "game_catalog", ["title"])

    # --- facets + join tables ---
    for facet_table, join_table, join_column in FACETS:
        op.create_table(
            facet_table,
            _uuid_pk(),
            sa.Column("name", sa.String(), nullable=False, unique=True),
        )
        op.create_table(
            join_table,
            _uuid_pk(),
            sa.Column(
                "catalog_id",
                UUID(as_uuid=True),
                sa.ForeignKey("game_catalog.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column(
                join_column,
                UUID(as_uuid=True),
                sa.ForeignKey(f"{facet_table}.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.UniqueConstraint("catalog_id", join_column),
        )

    # --- catalog_scraper_state (singleton cursor) ---
    op.create_table(
        "catalog_scraper_state",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("next_bgg_id", sa.INTEGER(), server_default="1", nullable=False),
        sa.Column("status", sa.String(), server_default="disabled", nullable=False),
        sa.Column("total_processed", sa.INTEGER(), server_default="0", nullable=False),
        sa.Column("total_added", sa.INTEGER(), server_default="0", nullable=False),
        sa.Column("total_skipped", sa.INTEGER(), server_default="0", nullable=False),
        sa.Column("total_errors", sa.INTEGER(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_run_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("run_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        _timestamp("updated_at"),
    )
    op.execute("INSERT INTO catalog_scraper_state (id) VALUES ('default')")

    # --- libraries / roles ---
    op.create_table(
        "libraries",
        _uuid_pk(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("owner_id", UUID(as_uuid=True), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_libraries_owner_id", "libraries", ["owner_id"])

    op.create_table(
        "user_roles",
        _uuid_pk(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.UniqueConstraint("user_id", "role"),
    )
    op.create_index("ix_user_roles_user_id", "user_roles", ["user_id"])

    # --- library_sync_settings / library_sync_state ---
    op.create_table(
        "library_sync_settings",
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("libraries.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("bgg_username", sa.String(), nullable=True),
        sa.Column("removal_behavior", sa.String(), server_default="flag", nullable=False),
        sa.Column("sync_enabled", sa.BOOLEAN(), server_default="false", nullable=False),
        sa.Column("sync_frequency", sa.String(), server_default="daily", nullable=False),
        sa.Column("sync_collection", sa.BOOLEAN(), server_default="true", nullable=False),
        sa.Column("sync_plays", sa.BOOLEAN(), server_default="false", nullable=False),
        sa.Column("sync_wishlist", sa.BOOLEAN(), server_default="false", nullable=False),
    )

    op.create_table(
        "library_sync_state",
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("libraries.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("last_synced_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_sync_status", sa.String(), nullable=True),
        sa.Column("last_sync_message", sa.Text(), nullable=True),
        sa.Column("locked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("lock_token", sa.String(), nullable=True),
    )

    # --- games (tenant-scoped) ---
    op.create_table(
        "games",
        _uuid_pk(),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("libraries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("bgg_id", sa.String(), nullable=True),
        sa.Column("bgg_url", sa.String(), nullable=True),
        sa.Column(
            "catalog_id",
            UUID(as_uuid=True),
            sa.ForeignKey("game_catalog.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("min_players", sa.INTEGER(), nullable=True),
        sa.Column("max_players", sa.INTEGER(), nullable=True),
        sa.Column("is_expansion", sa.BOOLEAN(), server_default="false", nullable=False),
        sa.Column("ownership_status", sa.String(), server_default="owned", nullable=False),
        sa.Column("is_coming_soon", sa.BOOLEAN(), server_default="false", nullable=False),
        sa.Column("is_for_sale", sa.BOOLEAN(), server_default="false", nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("tenant_id", "bgg_id"),
    )
    op.create_index("ix_games_tenant_id", "games", ["tenant_id"])
    op.create_index("ix_games_catalog_id", "games", ["catalog_id"])

    # --- trade_wants / trade_listings ---
    op.create_table(
        "trade_wants",
        _uuid_pk(),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("libraries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("bgg_id", sa.String(), nullable=False),
        sa.Column("game_title", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("tenant_id", "bgg_id"),
    )

    op.create_table(
        "trade_listings",
        _uuid_pk(),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("libraries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "game_id",
            UUID(as_uuid=True),
            sa.ForeignKey("games.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("condition", sa.String(), server_default="Good", nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("tenant_id", "game_id"),
    )


def downgrade() -> None:
    op.drop_table("trade_listings")
    op.drop_table("trade_wants")
    op.drop_index("ix_games_catalog_id", table_name="games")
    op.drop_index("ix_games_tenant_id", table_name="games")
    op.drop_table("games")
    op.drop_table("library_sync_state")
    op.drop_table("library_sync_settings")
    op.drop_index("ix_user_roles_user_id", table_name="user_roles")
    op.drop_table("user_roles")
    op.drop_index("ix_libraries_owner_id", table_name="libraries")
    op.drop_table("libraries")
    op.drop_table("catalog_scraper_state")
    for facet_table, join_table, _ in reversed(FACETS):
        op.drop_table(join_table)
        op.drop_table(facet_table)
    op.drop_index("ix_game_catalog_title", table_name="game_catalog")
    op.drop_index("ix_game_catalog_bgg_id", table_name="game_catalog")
    op.drop_table("game_catalog")
