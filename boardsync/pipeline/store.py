"""
BoardSync — Local Store Primitives

Record-level insert / update / upsert / delete helpers over an AsyncSession.
Everything conflict-prone goes through the dialect's INSERT ... ON CONFLICT
so that two writers touching the same natural key converge instead of
duplicating (PostgreSQL in production, SQLite in tests).

Helpers that represent a complete unit of work (cursor persistence, tenant
leases, sync outcomes, facet linking) commit themselves. Everything else
leaves the transaction to the caller.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.config import CursorStatus, VerifiedType
from boardsync.engine.normalizer import CatalogRecord
from boardsync.models import (
    CatalogEntry,
    ScraperCursor,
    Tenant,
    TenantGame,
    TenantSyncSettings,
    TenantSyncState,
    TradeListing,
    UserRole,
    WishlistWant,
)
from boardsync.models.catalog import FACET_TABLES
from boardsync.models.scraper_state import DEFAULT_CURSOR_ID

logger = structlog.get_logger(__name__)


class StatePersistenceError(Exception):
    """A state write could not be verified, even after the fallback write."""


class CursorState(BaseModel):
    """
    Snapshot of the discovery cursor.

    Passed into and returned from sweeper runs; only the store reads or
    writes the underlying row.
    """

    next_bgg_id: int = 1
    status: CursorStatus = CursorStatus.DISABLED
    total_processed: int = 0
    total_added: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    last_error: str | None = None
    last_run_at: datetime | None = None
    run_started_at: datetime | None = None

    @property
    def enabled(self) -> bool:
        return self.status is not CursorStatus.DISABLED


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _insert(session: AsyncSession, model: Any) -> Any:
    """Dialect-specific INSERT so ON CONFLICT is available."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def _catalog_values(record: CatalogRecord) -> dict[str, Any]:
    return {
        "title": record.title,
        "description": record.description,
        "image_url": record.image_url,
        "min_players": record.min_players,
        "max_players": record.max_players,
        "play_time_minutes": record.play_time_minutes,
        "suggested_age": record.suggested_age,
        "year_published": record.year_published,
        "bgg_community_rating": record.bgg_community_rating,
        "weight": record.weight,
        "is_expansion": record.is_expansion,
        "bgg_verified_type": record.verified_type.value if record.verified_type else None,
        "bgg_url": record.bgg_url,
    }


async def verified_catalog_ids(session: AsyncSession, bgg_ids: Iterable[str]) -> set[str]:
    """Return the subset of bgg_ids already stored with a verified type."""
    ids = list(bgg_ids)
    if not ids:
        return set()
    result = await session.execute(
        select(CatalogEntry.bgg_id).where(
            CatalogEntry.bgg_id.in_(ids),
            CatalogEntry.bgg_verified_type.is_not(None),
        )
    )
    return {row[0] for row in result}


async def find_catalog_id(session: AsyncSession, bgg_id: str) -> uuid.UUID | None:
    result = await session.execute(
        select(CatalogEntry.id).where(CatalogEntry.bgg_id == bgg_id)
    )
    return result.scalar_one_or_none()


async def find_placeholder(session: AsyncSession, title: str) -> uuid.UUID | None:
    """A title-only catalog entry (no bgg_id) with the same title, case-insensitive."""
    result = await session.execute(
        select(CatalogEntry.id)
        .where(
            CatalogEntry.bgg_id.is_(None),
            func.lower(CatalogEntry.title) == title.lower(),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def promote_placeholder(
    session: AsyncSession,
    entry_id: uuid.UUID,
    record: CatalogRecord,
) -> None:
    """Attach the external identifier to a placeholder and fill its fields."""
    await session.execute(
        update(CatalogEntry)
        .where(CatalogEntry.id == entry_id)
        .values(bgg_id=record.bgg_id, **_catalog_values(record))
        .execution_options(synchronize_session=False)
    )


async def upsert_catalog_entry(
    session: AsyncSession,
    record: CatalogRecord,
) -> tuple[uuid.UUID, bool]:
    """
    Insert or refresh the catalog entry keyed by bgg_id.

    Returns:
        (catalog id, created) where created is False for a refresh.
    """
    existing = await find_catalog_id(session, record.bgg_id)
    values = _catalog_values(record)

    stmt = _insert(session, CatalogEntry).values(bgg_id=record.bgg_id, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["bgg_id"], set_={**values, "updated_at": func.now()}
    )
    await session.execute(stmt)

    catalog_id = await find_catalog_id(session, record.bgg_id)
    if catalog_id is None:
        raise StatePersistenceError(f"catalog entry {record.bgg_id} missing after upsert")
    return catalog_id, existing is None


async def link_facets(
    session: AsyncSession,
    catalog_id: uuid.UUID,
    record: CatalogRecord,
) -> int:
    """
    Upsert facet rows by name and link them to the entry.

    Each link commits on its own; a failure rolls back only that link.

    Returns:
        Number of facet links that failed.
    """
    names_by_kind = {
        "mechanic": record.mechanics,
        "designer": record.designers,
        "artist": record.artists,
        "publisher": record.publishers,
    }
    failures = 0
    for kind, names in names_by_kind.items():
        facet_model, join_model, join_column = FACET_TABLES[kind]
        for name in names:
            try:
                await session.execute(
                    _insert(session, facet_model)
                    .values(name=name)
                    .on_conflict_do_nothing(index_elements=["name"])
                )
                facet_id = (
                    await session.execute(
                        select(facet_model.id).where(facet_model.name == name)
                    )
                ).scalar_one()
                await session.execute(
                    _insert(session, join_model)
                    .values(catalog_id=catalog_id, **{join_column: facet_id})
                    .on_conflict_do_nothing(index_elements=["catalog_id", join_column])
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                failures += 1
                logger.warning(
                    "store_facet_link_failed",
                    catalog_id=str(catalog_id),
                    facet=kind,
                    name=name,
                    error=str(e)[:200],
                )
    return failures


async def catalog_page(
    session: AsyncSession,
    after_bgg_id: str | None,
    limit: int,
) -> list[tuple[uuid.UUID, str, str]]:
    """Keyset page of (id, bgg_id, title) for entries with a bgg_id."""
    stmt = select(CatalogEntry.id, CatalogEntry.bgg_id, CatalogEntry.title).where(
        CatalogEntry.bgg_id.is_not(None)
    )
    if after_bgg_id is not None:
        stmt = stmt.where(CatalogEntry.bgg_id > after_bgg_id)
    stmt = stmt.order_by(CatalogEntry.bgg_id).limit(limit)
    result = await session.execute(stmt)
    return [(row[0], row[1], row[2]) for row in result]


async def referenced_catalog_ids(
    session: AsyncSession,
    catalog_ids: Sequence[uuid.UUID],
) -> set[uuid.UUID]:
    """Catalog ids that at least one TenantGame points at."""
    if not catalog_ids:
        return set()
    result = await session.execute(
        select(TenantGame.catalog_id)
        .where(TenantGame.catalog_id.in_(catalog_ids))
        .distinct()
    )
    return {row[0] for row in result}


async def delete_catalog_entries(
    session: AsyncSession,
    catalog_ids: Sequence[uuid.UUID],
) -> int:
    if not catalog_ids:
        return 0
    result = await session.execute(
        delete(CatalogEntry)
        .where(CatalogEntry.id.in_(catalog_ids))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def set_verified_type(
    session: AsyncSession,
    catalog_ids: Sequence[uuid.UUID],
    verified_type: VerifiedType,
) -> int:
    if not catalog_ids:
        return 0
    result = await session.execute(
        update(CatalogEntry)
        .where(CatalogEntry.id.in_(catalog_ids))
        .values(bgg_verified_type=verified_type.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def catalog_counts(session: AsyncSession) -> dict[str, int]:
    """Counts for the cleanup status action."""
    total = await session.scalar(select(func.count()).select_from(CatalogEntry))
    with_id = await session.scalar(
        select(func.count()).where(CatalogEntry.bgg_id.is_not(None))
    )
    linked = await session.scalar(
        select(func.count(func.distinct(TenantGame.catalog_id))).where(
            TenantGame.catalog_id.is_not(None)
        )
    )
    invalid = await session.scalar(
        select(func.count()).where(
            CatalogEntry.bgg_verified_type == VerifiedType.INVALID.value
        )
    )
    unverified = await session.scalar(
        select(func.count()).where(
            CatalogEntry.bgg_id.is_not(None),
            CatalogEntry.bgg_verified_type.is_(None),
        )
    )
    return {
        "total": total or 0,
        "with_bgg_id": with_id or 0,
        "linked_to_library": linked or 0,
        "invalid": invalid or 0,
        "unverified": unverified or 0,
    }


# ---------------------------------------------------------------------------
# Discovery cursor
# ---------------------------------------------------------------------------


def _cursor_values(state: CursorState) -> dict[str, Any]:
    return {
        "next_bgg_id": state.next_bgg_id,
        "status": state.status.value,
        "total_processed": state.total_processed,
        "total_added": state.total_added,
        "total_skipped": state.total_skipped,
        "total_errors": state.total_errors,
        "last_error": state.last_error,
        "last_run_at": state.last_run_at,
        "run_started_at": state.run_started_at,
    }


async def load_cursor(session: AsyncSession) -> CursorState:
    """Read the persisted cursor; a missing row reads as a fresh, disabled cursor."""
    result = await session.execute(
        select(ScraperCursor)
        .where(ScraperCursor.id == DEFAULT_CURSOR_ID)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return CursorState()
    return CursorState(
        next_bgg_id=row.next_bgg_id,
        status=CursorStatus(row.status),
        total_processed=row.total_processed,
        total_added=row.total_added,
        total_skipped=row.total_skipped,
        total_errors=row.total_errors,
        last_error=row.last_error,
        last_run_at=row.last_run_at,
        run_started_at=row.run_started_at,
    )


async def save_cursor(session: AsyncSession, state: CursorState) -> CursorState:
    """
    Persist the cursor and verify the write by reading it back.

    The primary path is an UPDATE of the singleton row. An UPDATE that
    touches zero rows (row missing, or silently filtered) falls back to an
    INSERT ... ON CONFLICT DO UPDATE.

    Raises:
        StatePersistenceError: the read-back does not match what was written.
    """
    values = _cursor_values(state)

    result = await session.execute(
        update(ScraperCursor)
        .where(ScraperCursor.id == DEFAULT_CURSOR_ID)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    updated = result.rowcount
    await session.commit()

    if not updated:
        logger.warning("store_cursor_update_no_rows", next_bgg_id=state.next_bgg_id)
        stmt = _insert(session, ScraperCursor).values(id=DEFAULT_CURSOR_ID, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
        await session.execute(stmt)
        await session.commit()

    check = await session.execute(
        select(ScraperCursor.next_bgg_id, ScraperCursor.status).where(
            ScraperCursor.id == DEFAULT_CURSOR_ID
        )
    )
    row = check.first()
    if row is None or row[0] != state.next_bgg_id or row[1] != state.status.value:
        logger.error(
            "store_cursor_verify_failed",
            expected_next_bgg_id=state.next_bgg_id,
            found=None if row is None else row[0],
        )
        raise StatePersistenceError(
            f"cursor write not persisted (expected next_bgg_id={state.next_bgg_id})"
        )
    return state


async def claim_cursor(
    session: AsyncSession,
    now: datetime,
    stale_before: datetime,
) -> bool:
    """
    Move the cursor from idle to running.

    A run whose run_started_at is older than stale_before is treated as
    abandoned and may be taken over. Returns False when another run holds
    the cursor or the sweeper is disabled.
    """
    result = await session.execute(
        update(ScraperCursor)
        .where(
            ScraperCursor.id == DEFAULT_CURSOR_ID,
            or_(
                ScraperCursor.status == CursorStatus.IDLE.value,
                (ScraperCursor.status == CursorStatus.RUNNING.value)
                & or_(
                    ScraperCursor.run_started_at.is_(None),
                    ScraperCursor.run_started_at < stale_before,
                ),
            ),
        )
        .values(status=CursorStatus.RUNNING.value, run_started_at=now)
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    await session.commit()
    return claimed


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


async def tenant_owner(session: AsyncSession, tenant_id: uuid.UUID) -> uuid.UUID | None:
    result = await session.execute(select(Tenant.owner_id).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def has_role(session: AsyncSession, user_id: uuid.UUID, role: str) -> bool:
    result = await session.execute(
        select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role == role)
    )
    return result.first() is not None


async def load_sync_settings(
    session: AsyncSession,
    tenant_id: uuid.UUID,
) -> TenantSyncSettings | None:
    result = await session.execute(
        select(TenantSyncSettings).where(TenantSyncSettings.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def load_sync_state(
    session: AsyncSession,
    tenant_id: uuid.UUID,
) -> TenantSyncState | None:
    result = await session.execute(
        select(TenantSyncState)
        .where(TenantSyncState.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_auto_sync_tenants(
    session: AsyncSession,
) -> list[tuple[uuid.UUID, str, datetime | None]]:
    """(tenant_id, sync_frequency, last_synced_at) for tenants with auto sync on."""
    result = await session.execute(
        select(
            TenantSyncSettings.tenant_id,
            TenantSyncSettings.sync_frequency,
            TenantSyncState.last_synced_at,
        )
        .outerjoin(
            TenantSyncState,
            TenantSyncState.tenant_id == TenantSyncSettings.tenant_id,
        )
        .where(
            TenantSyncSettings.sync_enabled.is_(True),
            TenantSyncSettings.bgg_username.is_not(None),
            TenantSyncSettings.bgg_username != "",
        )
    )
    return [(row[0], row[1], row[2]) for row in result]


async def _ensure_sync_state_row(session: AsyncSession, tenant_id: uuid.UUID) -> None:
    await session.execute(
        _insert(session, TenantSyncState)
        .values(tenant_id=tenant_id)
        .on_conflict_do_nothing(index_elements=["tenant_id"])
    )


async def acquire_tenant_lease(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    token: str,
    now: datetime,
    stale_before: datetime,
) -> bool:
    """Take the per-tenant reconciliation lease unless a live one is held."""
    await _ensure_sync_state_row(session, tenant_id)
    result = await session.execute(
        update(TenantSyncState)
        .where(
            TenantSyncState.tenant_id == tenant_id,
            or_(
                TenantSyncState.locked_at.is_(None),
                TenantSyncState.locked_at < stale_before,
            ),
        )
        .values(locked_at=now, lock_token=token)
        .execution_options(synchronize_session=False)
    )
    acquired = result.rowcount == 1
    await session.commit()
    return acquired


async def release_tenant_lease(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    token: str,
) -> None:
    await session.execute(
        update(TenantSyncState)
        .where(
            TenantSyncState.tenant_id == tenant_id,
            TenantSyncState.lock_token == token,
        )
        .values(locked_at=None, lock_token=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def record_sync_outcome(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    status: str,
    message: str,
    synced_at: datetime,
) -> None:
    """Write the run's status, summary and completion time to the sync state row."""
    await _ensure_sync_state_row(session, tenant_id)
    await session.execute(
        update(TenantSyncState)
        .where(TenantSyncState.tenant_id == tenant_id)
        .values(
            last_sync_status=status,
            last_sync_message=message,
            last_synced_at=synced_at,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()


# ---------------------------------------------------------------------------
# Tenant games and side records
# ---------------------------------------------------------------------------


async def list_tenant_games(session: AsyncSession, tenant_id: uuid.UUID) -> list[TenantGame]:
    result = await session.execute(
        select(TenantGame)
        .where(TenantGame.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def insert_tenant_game(session: AsyncSession, **values: Any) -> uuid.UUID:
    game_id = values.pop("id", None) or uuid.uuid4()
    await session.execute(insert(TenantGame).values(id=game_id, **values))
    return game_id


async def update_tenant_game(
    session: AsyncSession,
    game_id: uuid.UUID,
    changes: dict[str, Any],
) -> None:
    await session.execute(
        update(TenantGame)
        .where(TenantGame.id == game_id)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )


async def delete_tenant_game(session: AsyncSession, game_id: uuid.UUID) -> None:
    await session.execute(
        delete(TenantGame)
        .where(TenantGame.id == game_id)
        .execution_options(synchronize_session=False)
    )


async def insert_wishlist_want(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    user_id: uuid.UUID,
    bgg_id: str,
    title: str,
    notes: str | None = None,
) -> bool:
    """Create the want unless one exists for (tenant, bgg_id). True if created."""
    result = await session.execute(
        _insert(session, WishlistWant)
        .values(
            tenant_id=tenant_id,
            user_id=user_id,
            bgg_id=bgg_id,
            game_title=title,
            notes=notes,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "bgg_id"])
    )
    return result.rowcount == 1


async def insert_trade_listing(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    user_id: uuid.UUID,
    game_id: uuid.UUID,
    notes: str | None = None,
) -> bool:
    """Create the listing unless one exists for (tenant, game). True if created."""
    result = await session.execute(
        _insert(session, TradeListing)
        .values(tenant_id=tenant_id, user_id=user_id, game_id=game_id, notes=notes)
        .on_conflict_do_nothing(index_elements=["tenant_id", "game_id"])
    )
    return result.rowcount == 1
