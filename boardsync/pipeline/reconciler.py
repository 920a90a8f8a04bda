"""
BoardSync — Collection Reconciler

Brings one tenant's local library in line with the tenant's remote
collection:

1. Fetch all 8 status partitions, one request each, paced.
2. Merge them with a fixed priority (owned > for-trade > previously-owned >
   preordered > want-in-trade > want-to-buy > wishlist > want-to-play).
3. Classify each merged item into a platform action and route it:
   wishlist -> WishlistWant, library actions -> TenantGame (+ TradeListing
   for for-trade), want-to-play / skip -> counted only.
4. Flag or remove local games that vanished from the remote collection.
5. Optionally delegate play-history import.
6. Record a status + human readable summary on the tenant's sync state.

A failed partition or a failed item becomes an error string; it never
aborts the run. Local data is only deleted when the tenant configured
removal behavior 'remove' AND every partition was fetched.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.config import OwnershipStatus, RemovalBehavior, SyncStatus, settings
from boardsync.engine.collection import (
    LIBRARY_ACTIONS,
    PARTITION_FETCH_ORDER,
    PlatformAction,
    determine_platform_action,
    is_low_quality_image,
    merge_partitions,
)
from boardsync.engine.normalizer import SOURCE_URL_TEMPLATE
from boardsync.pipeline import store
from boardsync.pipeline.bgg_client import BGGClient, Partition
from boardsync.pipeline.bgg_xml import CollectionItem
from boardsync.pipeline.plays import PlayImportError, PlayImporter
from boardsync.utils.pacing import paced
from boardsync.utils.text import truncate

logger = structlog.get_logger(__name__)

NO_USERNAME_MESSAGE = "No BGG username configured"
WISHLIST_NOTE = "Imported from BGG wishlist"
TRADE_NOTE = "Imported from BGG for-trade list"


class SyncResult(BaseModel):
    """Counts and errors of one reconciliation run."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    flagged: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    wishlist_added: int = 0
    preordered_added: int = 0
    trade_listed: int = 0
    previously_owned_added: int = 0
    plays_imported: int = 0

    partitions_fetched: int = 0
    partitions_failed: int = 0
    status: SyncStatus = SyncStatus.SUCCESS
    message: str = ""
    username_configured: bool = True

    def add_error(self, message: str) -> None:
        if len(self.errors) < settings.MAX_REPORTED_ERRORS:
            self.errors.append(truncate(message, settings.ERROR_MESSAGE_MAX_LENGTH))

    def summary(self) -> str:
        """Human readable counts, e.g. '3 added, 1 updated, 2 errors'."""
        wishlist_like = self.wishlist_added + self.preordered_added
        parts = [
            f"{self.added} added" if self.added else None,
            f"{self.updated} updated" if self.updated else None,
            f"{self.removed} removed" if self.removed else None,
            f"{self.flagged} no longer on BGG" if self.flagged else None,
            f"{self.skipped} unchanged" if self.skipped else None,
            f"{self.plays_imported} plays imported" if self.plays_imported else None,
            f"{wishlist_like} wishlist/preorder items" if wishlist_like else None,
            f"{self.trade_listed} listed for trade" if self.trade_listed else None,
            (
                f"{self.previously_owned_added} previously owned"
                if self.previously_owned_added
                else None
            ),
            f"{len(self.errors)} errors" if self.errors else None,
        ]
        return ", ".join(p for p in parts if p) or "No changes"


@dataclass
class _LocalGame:
    """Plain snapshot of a TenantGame row, safe across rollbacks."""

    id: uuid.UUID
    title: str
    bgg_id: str | None
    image_url: str | None
    min_players: int | None
    max_players: int | None
    ownership_status: str
    is_coming_soon: bool


def _library_flags(action: PlatformAction) -> tuple[OwnershipStatus, bool]:
    """(ownership_status, is_coming_soon) for a library action."""
    if action is PlatformAction.PREVIOUSLY_OWNED:
        return OwnershipStatus.PREVIOUSLY_OWNED, False
    if action is PlatformAction.PREORDERED:
        return OwnershipStatus.OWNED, True
    return OwnershipStatus.OWNED, False


class CollectionReconciler:
    """Per-tenant reconciliation of remote collection state into local records."""

    def __init__(
        self,
        client: BGGClient,
        play_importer: PlayImporter | None = None,
        partition_delay: float | None = None,
        image_delay: float | None = None,
    ):
        self.client = client
        self.play_importer = play_importer
        self.partition_delay = (
            settings.PARTITION_DELAY_SECONDS if partition_delay is None else partition_delay
        )
        self.image_delay = (
            settings.IMAGE_FETCH_DELAY_SECONDS if image_delay is None else image_delay
        )
        self._image_fetches = 0

    # -----------------------------------------------------------------------
    # Upstream
    # -----------------------------------------------------------------------

    async def fetch_partitions(
        self,
        username: str,
        result: SyncResult,
    ) -> dict[Partition, list[CollectionItem]]:
        """Fetch every partition sequentially; failures are recorded, not raised."""
        partitions: dict[Partition, list[CollectionItem]] = {}
        async for partition in paced(PARTITION_FETCH_ORDER, self.partition_delay):
            fetched = await self.client.fetch_partition(username, partition)
            if fetched.failed:
                result.partitions_failed += 1
                result.add_error(f"Partition {partition.value} failed: {fetched.error}")
                logger.warning(
                    "reconcile_partition_failed",
                    username=username,
                    partition=partition.value,
                    error=fetched.error,
                )
                continue
            result.partitions_fetched += 1
            partitions[partition] = fetched.items
        return partitions

    async def _better_image(self, bgg_id: str) -> str | None:
        """Detail lookup for a full-size image, paced by IMAGE_FETCH_DELAY_SECONDS."""
        if self._image_fetches and self.image_delay > 0:
            await asyncio.sleep(self.image_delay)
        self._image_fetches += 1
        image = await self.client.fetch_thing_image(bgg_id)
        if image is None:
            logger.info("reconcile_image_upgrade_unavailable", bgg_id=bgg_id)
        return image

    # -----------------------------------------------------------------------
    # Per-item routing
    # -----------------------------------------------------------------------

    async def _apply_wishlist(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        item: CollectionItem,
        result: SyncResult,
    ) -> None:
        created = await store.insert_wishlist_want(
            session, tenant_id, user_id, item.bgg_id, item.name, notes=WISHLIST_NOTE
        )
        await session.commit()
        if created:
            result.wishlist_added += 1

    async def _list_for_trade(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        game_id: uuid.UUID,
        result: SyncResult,
    ) -> None:
        created = await store.insert_trade_listing(
            session, tenant_id, user_id, game_id, notes=TRADE_NOTE
        )
        if created:
            result.trade_listed += 1

    async def _diff_existing(
        self,
        game: _LocalGame,
        item: CollectionItem,
        action: PlatformAction,
        matched_by_title: bool,
    ) -> dict[str, Any]:
        """Fields that actually change; empty when the local game is current."""
        ownership, coming_soon = _library_flags(action)
        changes: dict[str, Any] = {}

        if matched_by_title:
            changes["bgg_id"] = item.bgg_id
            changes["bgg_url"] = SOURCE_URL_TEMPLATE.format(bgg_id=item.bgg_id)

        if game.ownership_status != ownership.value:
            changes["ownership_status"] = ownership.value
        if game.is_coming_soon != coming_soon:
            changes["is_coming_soon"] = coming_soon

        remote_image = item.image_url
        if remote_image:
            if is_low_quality_image(remote_image):
                if not game.image_url or is_low_quality_image(game.image_url):
                    better = await self._better_image(item.bgg_id)
                    if better and better != game.image_url:
                        changes["image_url"] = better
            elif remote_image != game.image_url:
                changes["image_url"] = remote_image

        if item.min_players and item.min_players != game.min_players:
            changes["min_players"] = item.min_players
        if item.max_players and item.max_players != game.max_players:
            changes["max_players"] = item.max_players
        return changes

    async def _apply_library_item(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID,
        item: CollectionItem,
        action: PlatformAction,
        by_bgg_id: dict[str, _LocalGame],
        by_title: dict[str, _LocalGame],
        result: SyncResult,
    ) -> None:
        game = by_bgg_id.get(item.bgg_id)
        matched_by_title = False
        if game is None:
            game = by_title.get(item.name.lower())
            matched_by_title = game is not None
            if game is not None:
                logger.warning(
                    "reconcile_title_match",
                    tenant_id=str(tenant_id),
                    bgg_id=item.bgg_id,
                    title=item.name,
                    game_id=str(game.id),
                )

        if game is not None:
            changes = await self._diff_existing(game, item, action, matched_by_title)
            if changes:
                await store.update_tenant_game(session, game.id, changes)
                result.updated += 1
            else:
                result.skipped += 1
            if action is PlatformAction.FOR_TRADE:
                await self._list_for_trade(session, tenant_id, user_id, game.id, result)
            await session.commit()

            for key, value in changes.items():
                setattr(game, key, value)
            if matched_by_title:
                by_title.pop(item.name.lower(), None)
                by_bgg_id[item.bgg_id] = game
            return

        ownership, coming_soon = _library_flags(action)
        image_url = item.image_url or item.thumbnail_url
        if is_low_quality_image(image_url):
            image_url = await self._better_image(item.bgg_id) or image_url

        catalog_id = await store.find_catalog_id(session, item.bgg_id)
        game_id = await store.insert_tenant_game(
            session,
            tenant_id=tenant_id,
            title=item.name,
            bgg_id=item.bgg_id,
            bgg_url=SOURCE_URL_TEMPLATE.format(bgg_id=item.bgg_id),
            catalog_id=catalog_id,
            image_url=image_url,
            min_players=item.min_players,
            max_players=item.max_players,
            is_expansion=item.is_expansion,
            ownership_status=ownership.value,
            is_coming_soon=coming_soon,
        )
        if action is PlatformAction.FOR_TRADE:
            await self._list_for_trade(session, tenant_id, user_id, game_id, result)
        await session.commit()

        result.added += 1
        if ownership is OwnershipStatus.PREVIOUSLY_OWNED:
            result.previously_owned_added += 1
        if coming_soon:
            result.preordered_added += 1

        by_bgg_id[item.bgg_id] = _LocalGame(
            id=game_id,
            title=item.name,
            bgg_id=item.bgg_id,
            image_url=image_url,
            min_players=item.min_players,
            max_players=item.max_players,
            ownership_status=ownership.value,
            is_coming_soon=coming_soon,
        )

    # -----------------------------------------------------------------------
    # Removal
    # -----------------------------------------------------------------------

    async def _handle_missing(
        self,
        session: AsyncSession,
        games: list[_LocalGame],
        seen: set[str],
        behavior: RemovalBehavior,
        result: SyncResult,
    ) -> None:
        for game in games:
            if not game.bgg_id or game.bgg_id in seen:
                continue
            if behavior is not RemovalBehavior.REMOVE:
                result.flagged += 1
                continue
            try:
                await store.delete_tenant_game(session, game.id)
                await session.commit()
                result.removed += 1
            except SQLAlchemyError as e:
                await session.rollback()
                result.add_error(f"Remove {game.title}: {e}")
                logger.error(
                    "reconcile_remove_failed",
                    game_id=str(game.id),
                    error=str(e)[:200],
                )

    # -----------------------------------------------------------------------
    # Collection phase
    # -----------------------------------------------------------------------

    async def _sync_collection(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID | None,
        username: str,
        removal_behavior: RemovalBehavior,
        sync_wishlist: bool,
        result: SyncResult,
    ) -> None:
        partitions = await self.fetch_partitions(username, result)
        merged = merge_partitions(partitions)

        local = [
            _LocalGame(
                id=g.id,
                title=g.title,
                bgg_id=g.bgg_id,
                image_url=g.image_url,
                min_players=g.min_players,
                max_players=g.max_players,
                ownership_status=g.ownership_status or OwnershipStatus.OWNED.value,
                is_coming_soon=bool(g.is_coming_soon),
            )
            for g in await store.list_tenant_games(session, tenant_id)
        ]
        by_bgg_id = {g.bgg_id: g for g in local if g.bgg_id}
        by_title = {g.title.lower(): g for g in local if not g.bgg_id}

        for item in merged.values():
            action = determine_platform_action(item)
            try:
                if action is PlatformAction.WISHLIST:
                    if sync_wishlist and user_id is not None:
                        await self._apply_wishlist(session, tenant_id, user_id, item, result)
                elif action in LIBRARY_ACTIONS:
                    await self._apply_library_item(
                        session,
                        tenant_id,
                        user_id,
                        item,
                        action,
                        by_bgg_id,
                        by_title,
                        result,
                    )
                else:
                    result.skipped += 1
            except SQLAlchemyError as e:
                await session.rollback()
                result.add_error(f"{action.value} {item.name}: {e}")
                logger.error(
                    "reconcile_item_failed",
                    tenant_id=str(tenant_id),
                    bgg_id=item.bgg_id,
                    action=action.value,
                    error=str(e)[:200],
                )

        if result.partitions_fetched == 0:
            logger.warning("reconcile_removal_skipped_no_data", tenant_id=str(tenant_id))
            return

        behavior = removal_behavior
        if result.partitions_failed and behavior is RemovalBehavior.REMOVE:
            logger.warning(
                "reconcile_removal_downgraded_to_flag",
                tenant_id=str(tenant_id),
                partitions_failed=result.partitions_failed,
            )
            behavior = RemovalBehavior.FLAG
        await self._handle_missing(session, local, set(merged), behavior, result)

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def reconcile(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
    ) -> SyncResult:
        """
        Reconcile one tenant and persist the outcome on its sync state.

        The outcome is recorded even when the collection phase blows up; the
        failure then shows up as an error string with status 'error'.

        Args:
            session: Open session; each item commits on its own.
            tenant_id: Library to reconcile.
            user_id: Owner of created wishlist wants / trade listings
                     (default: the tenant's owner).

        Returns:
            SyncResult with counts, errors, status and summary message.
        """
        result = SyncResult()
        self._image_fetches = 0

        sync_settings = await store.load_sync_settings(session, tenant_id)
        username = (sync_settings.bgg_username or "").strip() if sync_settings else ""
        if not sync_settings or not username:
            result.username_configured = False
            result.status = SyncStatus.ERROR
            result.message = NO_USERNAME_MESSAGE
            await store.record_sync_outcome(
                session, tenant_id, result.status.value, result.message, store.utcnow()
            )
            logger.warning("reconcile_no_username", tenant_id=str(tenant_id))
            return result

        try:
            removal_behavior = RemovalBehavior(sync_settings.removal_behavior or "flag")
        except ValueError:
            logger.warning(
                "reconcile_unknown_removal_behavior",
                tenant_id=str(tenant_id),
                removal_behavior=sync_settings.removal_behavior,
            )
            removal_behavior = RemovalBehavior.FLAG
        sync_collection = sync_settings.sync_collection
        sync_plays = sync_settings.sync_plays
        sync_wishlist = sync_settings.sync_wishlist

        logger.info(
            "reconcile_start",
            tenant_id=str(tenant_id),
            username=username,
            removal_behavior=removal_behavior.value,
            sync_plays=sync_plays,
            sync_wishlist=sync_wishlist,
        )

        collection_failed = False
        if sync_collection:
            try:
                if user_id is None:
                    user_id = await store.tenant_owner(session, tenant_id)
                await self._sync_collection(
                    session,
                    tenant_id,
                    user_id,
                    username,
                    removal_behavior,
                    sync_wishlist,
                    result,
                )
            except Exception as e:
                await session.rollback()
                collection_failed = True
                result.add_error(f"Collection sync failed: {e}")
                logger.error(
                    "reconcile_collection_failed",
                    tenant_id=str(tenant_id),
                    error=str(e)[:200],
                    error_type=type(e).__name__,
                )

        if sync_plays and self.play_importer is not None:
            try:
                result.plays_imported = await self.play_importer(tenant_id, username)
            except PlayImportError as e:
                result.add_error(f"Play sync failed: {e}")
                logger.warning("reconcile_play_import_failed", tenant_id=str(tenant_id), error=str(e))

        if collection_failed or (sync_collection and result.partitions_fetched == 0):
            result.status = SyncStatus.ERROR
        elif result.errors:
            result.status = SyncStatus.PARTIAL
        else:
            result.status = SyncStatus.SUCCESS
        result.message = result.summary()

        await store.record_sync_outcome(
            session, tenant_id, result.status.value, result.message, store.utcnow()
        )
        logger.info(
            "reconcile_complete",
            tenant_id=str(tenant_id),
            status=result.status.value,
            message=result.message,
        )
        return result
