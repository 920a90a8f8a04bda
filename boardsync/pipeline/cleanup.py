"""
BoardSync — Catalog Cleanup Pass

Re-checks catalog entries that carry a bgg_id against the upstream, asking
for their types WITHOUT a type filter:

- still a boardgame / boardgameexpansion -> kept, verified type refreshed
- unknown to the upstream, or some other type -> deleted if no TenantGame
  references it, otherwise kept and marked 'invalid'

A batch whose fetch failed is never read as "missing"; it is counted as
errors and left untouched. dry_run performs no writes.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.config import VerifiedType, settings
from boardsync.pipeline import store
from boardsync.pipeline.bgg_client import ALLOWED_THING_TYPES, BGGClient
from boardsync.utils.pacing import paced
from boardsync.utils.text import truncate

logger = structlog.get_logger(__name__)

_SAMPLE_SIZE = 50


class CleanupResult(BaseModel):
    dry_run: bool
    checked: int = 0
    deleted: int = 0
    kept: int = 0
    invalidated: int = 0
    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)
    sample_deleted: list[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        prefix = "[DRY RUN] " if self.dry_run else ""
        return (
            f"{prefix}Checked {self.checked}, deleted {self.deleted}, "
            f"kept {self.kept}, invalidated {self.invalidated}, errors {self.errors}"
        )


class CatalogCleanup:
    """Removes catalog entries the upstream no longer recognizes as board games."""

    def __init__(self, client: BGGClient, batch_delay: float | None = None):
        self.client = client
        self.batch_delay = (
            settings.SWEEP_BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        )

    async def status(self, session: AsyncSession) -> dict[str, int]:
        return await store.catalog_counts(session)

    async def _pages(self, session: AsyncSession, limit: int):
        """Keyset pages of at most THING_BATCH_SIZE rows, `limit` rows in total."""
        remaining = limit
        after: str | None = None
        while remaining > 0:
            page = await store.catalog_page(
                session, after, min(settings.THING_BATCH_SIZE, remaining)
            )
            if not page:
                return
            yield page
            remaining -= len(page)
            after = page[-1][1]

    async def run(
        self,
        session: AsyncSession,
        limit: int | None = None,
        dry_run: bool = False,
    ) -> CleanupResult:
        """
        Check up to `limit` entries (clamped to CLEANUP_MAX_LIMIT).

        Args:
            session: Open session; each batch commits on its own.
            limit: Entries to check (default CLEANUP_DEFAULT_LIMIT).
            dry_run: Report what would be deleted without writing.
        """
        limit = min(limit or settings.CLEANUP_DEFAULT_LIMIT, settings.CLEANUP_MAX_LIMIT)
        result = CleanupResult(dry_run=dry_run)
        pages = [page async for page in self._pages(session, limit)]

        logger.info("cleanup_start", limit=limit, dry_run=dry_run, batches=len(pages))

        async for page in paced(pages, self.batch_delay):
            result.checked += len(page)
            fetched = await self.client.fetch_types([bgg_id for _, bgg_id, _ in page])
            if fetched.failed:
                result.errors += len(page)
                if len(result.error_messages) < settings.MAX_REPORTED_ERRORS:
                    result.error_messages.append(
                        truncate(
                            f"Fetch failed for {page[0][1]}..{page[-1][1]}: {fetched.error}",
                            settings.ERROR_MESSAGE_MAX_LENGTH,
                        )
                    )
                logger.warning(
                    "cleanup_batch_fetch_failed",
                    first_bgg_id=page[0][1],
                    error=fetched.error,
                )
                continue

            types = dict(fetched.items)
            valid: dict[str, list] = {t: [] for t in ALLOWED_THING_TYPES}
            bad = []
            for catalog_id, bgg_id, title in page:
                item_type = types.get(bgg_id)
                if item_type in valid:
                    valid[item_type].append(catalog_id)
                else:
                    bad.append((catalog_id, bgg_id, title))

            referenced = await store.referenced_catalog_ids(
                session, [catalog_id for catalog_id, _, _ in bad]
            )
            to_delete = [row for row in bad if row[0] not in referenced]
            to_invalidate = [row[0] for row in bad if row[0] in referenced]

            result.kept += len(page) - len(to_delete)
            result.invalidated += len(to_invalidate)
            for _, bgg_id, title in to_delete:
                if len(result.sample_deleted) < _SAMPLE_SIZE:
                    result.sample_deleted.append(f"{title} (bgg:{bgg_id})")

            if dry_run:
                result.deleted += len(to_delete)
                continue

            try:
                for item_type, ids in valid.items():
                    await store.set_verified_type(session, ids, VerifiedType(item_type))
                await store.set_verified_type(session, to_invalidate, VerifiedType.INVALID)
                result.deleted += await store.delete_catalog_entries(
                    session, [row[0] for row in to_delete]
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                result.errors += len(page)
                if len(result.error_messages) < settings.MAX_REPORTED_ERRORS:
                    result.error_messages.append(
                        truncate(str(e), settings.ERROR_MESSAGE_MAX_LENGTH)
                    )
                logger.error("cleanup_batch_write_failed", error=str(e)[:200])

        logger.info(
            "cleanup_complete",
            dry_run=dry_run,
            checked=result.checked,
            deleted=result.deleted,
            kept=result.kept,
            invalidated=result.invalidated,
            errors=result.errors,
        )
        return result
