"""
BoardSync — Discovery Sweeper

Walks the upstream id space in batches of THING_BATCH_SIZE starting at the
cursor, and upserts every board game / expansion it finds into the shared
catalog together with its facets.

- Ids already stored with a verified type are skipped without a network call.
- A range that yields zero usable records moves the cursor by SWEEP_GAP_JUMP
  instead of one batch, so long dead zones cost one request per jump.
- Records are upserted keyed by bgg_id, so re-sweeping a range converges.

The sweeper never touches the cursor row: it takes a CursorState and returns
the advanced one. Claiming and persisting are the coordinator's job.

Usage:
    async with BGGClient() as client:
        sweeper = DiscoverySweeper(client)
        state, result = await sweeper.scrape(session, state)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.config import CursorStatus, settings
from boardsync.engine.normalizer import CatalogRecord, normalize
from boardsync.pipeline import store
from boardsync.pipeline.bgg_client import BGGClient
from boardsync.pipeline.store import CursorState, StatePersistenceError
from boardsync.utils.pacing import paced
from boardsync.utils.text import truncate

logger = structlog.get_logger(__name__)

StoreOutcome = Literal["added", "updated"]


class SweepResult(BaseModel):
    """Outcome of one scrape invocation."""

    start_bgg_id: int
    next_bgg_id: int
    batches: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    facet_errors: int = 0
    last_error: str | None = None

    @property
    def bgg_id_range(self) -> str:
        return f"{self.start_bgg_id}-{self.next_bgg_id - 1}"


class FetchIdOutcome(BaseModel):
    bgg_id: int
    status: Literal["added", "updated", "not_found", "skipped", "error"]
    title: str | None = None
    error: str | None = None


class FetchIdsResult(BaseModel):
    added: int = 0
    updated: int = 0
    errors: int = 0
    results: list[FetchIdOutcome] = Field(default_factory=list)


class DiscoverySweeper:
    """Cursor-driven catalog discovery over the upstream id space."""

    def __init__(
        self,
        client: BGGClient,
        batch_size: int | None = None,
        gap_jump: int | None = None,
        batch_delay: float | None = None,
    ):
        self.client = client
        self.batch_size = batch_size or settings.THING_BATCH_SIZE
        self.gap_jump = gap_jump or settings.SWEEP_GAP_JUMP
        self.batch_delay = (
            settings.SWEEP_BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        )

    async def _store_record(
        self,
        session: AsyncSession,
        record: CatalogRecord,
    ) -> tuple[StoreOutcome, int]:
        """
        Write one accepted record and link its facets.

        Returns:
            (outcome, failed facet links). SQLAlchemyError from the entry
            write propagates after the session is rolled back.
        """
        try:
            catalog_id = await store.find_catalog_id(session, record.bgg_id)
            placeholder = None
            if catalog_id is None and record.title:
                placeholder = await store.find_placeholder(session, record.title)

            if placeholder is not None:
                await store.promote_placeholder(session, placeholder, record)
                catalog_id, outcome = placeholder, "added"
                logger.info(
                    "sweeper_placeholder_promoted",
                    bgg_id=record.bgg_id,
                    title=record.title,
                    catalog_id=str(placeholder),
                )
            else:
                catalog_id, created = await store.upsert_catalog_entry(session, record)
                outcome = "added" if created else "updated"
            await session.commit()
        except (SQLAlchemyError, StatePersistenceError):
            await session.rollback()
            raise

        facet_failures = await store.link_facets(session, catalog_id, record)
        return outcome, facet_failures

    async def _sweep_batch(
        self,
        session: AsyncSession,
        batch_no: int,
        current_id: int,
        result: SweepResult,
    ) -> int:
        """Process the batch starting at current_id; returns the next cursor id."""
        ids = [str(current_id + i) for i in range(self.batch_size)]

        known = await store.verified_catalog_ids(session, ids)
        new_ids = [i for i in ids if i not in known]
        if not new_ids:
            logger.info("sweeper_batch_all_known", batch=batch_no + 1, first_id=ids[0])
            result.skipped += self.batch_size
            return current_id + self.batch_size

        fetched = await self.client.fetch_batch(new_ids)
        if fetched.failed:
            result.errors += 1
            result.last_error = truncate(
                f"Fetch failed for ids {ids[0]}-{ids[-1]}: {fetched.error}",
                settings.ERROR_MESSAGE_MAX_LENGTH,
            )
            logger.warning(
                "sweeper_batch_fetch_failed",
                batch=batch_no + 1,
                first_id=ids[0],
                error=fetched.error,
            )
            return current_id + self.batch_size

        records = [normalize(raw) for raw in fetched.items]
        usable = [r for r in records if r.accepted and r.bgg_id not in known]

        if not usable:
            logger.info(
                "sweeper_gap_jump",
                batch=batch_no + 1,
                first_id=ids[0],
                jump=self.gap_jump,
            )
            result.skipped += self.gap_jump
            return current_id + self.gap_jump

        result.skipped += len(records) - len(usable)
        for record in usable:
            try:
                outcome, facet_failures = await self._store_record(session, record)
            except (SQLAlchemyError, StatePersistenceError) as e:
                result.errors += 1
                result.last_error = truncate(
                    f"{record.bgg_id} ({record.title}): {e}",
                    settings.ERROR_MESSAGE_MAX_LENGTH,
                )
                logger.error(
                    "sweeper_record_store_failed",
                    bgg_id=record.bgg_id,
                    error=str(e)[:200],
                )
                continue
            result.facet_errors += facet_failures
            if outcome == "added":
                result.added += 1
            else:
                result.updated += 1

        logger.info(
            "sweeper_batch_complete",
            batch=batch_no + 1,
            first_id=ids[0],
            fetched=len(records),
            stored=len(usable),
        )
        return current_id + self.batch_size

    async def scrape(
        self,
        session: AsyncSession,
        state: CursorState,
        batches: int | None = None,
    ) -> tuple[CursorState, SweepResult]:
        """
        Sweep up to `batches` batches starting at state.next_bgg_id.

        A store failure outside the per-record writes costs the batch it
        happened in: it is counted as an error and the cursor moves on.

        Args:
            session: Open session; entries are committed one at a time.
            state: Cursor snapshot the run starts from.
            batches: Batch count override (default SWEEP_BATCHES_PER_RUN).

        Returns:
            (advanced cursor state with status idle, per-run result)
        """
        batch_count = batches or settings.SWEEP_BATCHES_PER_RUN
        current_id = state.next_bgg_id
        result = SweepResult(start_bgg_id=current_id, next_bgg_id=current_id)

        logger.info(
            "sweeper_run_start",
            start_bgg_id=current_id,
            batches=batch_count,
            batch_size=self.batch_size,
        )

        async for batch_no in paced(range(batch_count), self.batch_delay):
            result.batches += 1
            try:
                current_id = await self._sweep_batch(session, batch_no, current_id, result)
            except (SQLAlchemyError, StatePersistenceError) as e:
                await session.rollback()
                result.errors += 1
                result.last_error = truncate(
                    f"Batch at {current_id} failed: {e}",
                    settings.ERROR_MESSAGE_MAX_LENGTH,
                )
                logger.error(
                    "sweeper_batch_failed",
                    batch=batch_no + 1,
                    first_id=current_id,
                    error=str(e)[:200],
                )
                current_id += self.batch_size

        result.next_bgg_id = current_id
        new_state = state.model_copy(
            update={
                "next_bgg_id": current_id,
                "status": CursorStatus.IDLE,
                "total_processed": state.total_processed + (current_id - result.start_bgg_id),
                "total_added": state.total_added + result.added,
                "total_skipped": state.total_skipped + result.skipped,
                "total_errors": state.total_errors + result.errors,
                "last_error": result.last_error,
                "last_run_at": store.utcnow(),
                "run_started_at": None,
            }
        )

        logger.info(
            "sweeper_run_complete",
            bgg_id_range=result.bgg_id_range,
            added=result.added,
            updated=result.updated,
            skipped=result.skipped,
            errors=result.errors,
        )
        return new_state, result

    async def fetch_ids(
        self,
        session: AsyncSession,
        bgg_ids: Sequence[int],
    ) -> FetchIdsResult:
        """
        Force-refresh an explicit list of ids (at most FETCH_IDS_MAX).

        Existing entries are refreshed, new ones created; ids the upstream
        does not return are reported as not_found. The cursor is untouched.
        """
        if len(bgg_ids) > settings.FETCH_IDS_MAX:
            raise ValueError(f"at most {settings.FETCH_IDS_MAX} ids per call")

        outcome = FetchIdsResult()
        chunks = [
            list(bgg_ids[i : i + self.batch_size])
            for i in range(0, len(bgg_ids), self.batch_size)
        ]

        async for chunk in paced(chunks, self.batch_delay):
            fetched = await self.client.fetch_batch(chunk)
            if fetched.failed:
                for bgg_id in chunk:
                    outcome.results.append(
                        FetchIdOutcome(bgg_id=bgg_id, status="error", error="BGG fetch failed")
                    )
                outcome.errors += len(chunk)
                continue

            found: set[int] = set()
            for raw in fetched.items:
                record = normalize(raw)
                bgg_id = int(record.bgg_id)
                found.add(bgg_id)
                if not record.accepted:
                    outcome.results.append(
                        FetchIdOutcome(
                            bgg_id=bgg_id,
                            status="skipped",
                            title=record.title,
                            error=record.rejected_reason,
                        )
                    )
                    continue
                try:
                    status, _ = await self._store_record(session, record)
                except (SQLAlchemyError, StatePersistenceError) as e:
                    outcome.errors += 1
                    outcome.results.append(
                        FetchIdOutcome(
                            bgg_id=bgg_id,
                            status="error",
                            error=truncate(str(e), settings.ERROR_MESSAGE_MAX_LENGTH),
                        )
                    )
                    continue
                if status == "added":
                    outcome.added += 1
                else:
                    outcome.updated += 1
                outcome.results.append(
                    FetchIdOutcome(bgg_id=bgg_id, status=status, title=record.title)
                )

            for bgg_id in chunk:
                if bgg_id not in found:
                    outcome.results.append(FetchIdOutcome(bgg_id=bgg_id, status="not_found"))

        logger.info(
            "sweeper_fetch_ids_complete",
            requested=len(bgg_ids),
            added=outcome.added,
            updated=outcome.updated,
            errors=outcome.errors,
        )
        return outcome

