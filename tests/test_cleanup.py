"""
Tests for the catalog cleanup pass (boardsync/pipeline/cleanup.py).
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from boardsync.config import VerifiedType
from boardsync.engine.normalizer import normalize
from boardsync.models import CatalogEntry
from boardsync.pipeline import store
from boardsync.pipeline.cleanup import CatalogCleanup
from tests.factories import make_thing


@pytest.fixture
def cleanup(fake_client) -> CatalogCleanup:
    return CatalogCleanup(fake_client, batch_delay=0)


async def _seed(session, *bgg_ids: int) -> dict[str, object]:
    ids = {}
    for bgg_id in bgg_ids:
        catalog_id, _ = await store.upsert_catalog_entry(session, normalize(make_thing(bgg_id)))
        ids[str(bgg_id)] = catalog_id
    await session.commit()
    return ids


async def _types(session) -> dict[str, str | None]:
    rows = await session.execute(select(CatalogEntry.bgg_id, CatalogEntry.bgg_verified_type))
    return {row[0]: row[1] for row in rows}


@pytest.mark.asyncio
async def test_cleanup_deletes_unreferenced_and_invalidates_referenced(
    db_session, fake_client, cleanup, make_tenant
) -> None:
    ids = await _seed(db_session, 1, 2, 3, 4)
    fake_client.types = {"1": "boardgame", "2": "boardgameexpansion", "3": "videogame"}
    tenant_id, _ = await make_tenant()
    await store.insert_tenant_game(
        db_session, tenant_id=tenant_id, title="Held", bgg_id="3", catalog_id=ids["3"]
    )
    await db_session.commit()

    result = await cleanup.run(db_session, limit=10)

    assert result.checked == 4
    assert result.deleted == 1
    assert result.invalidated == 1
    assert result.kept == 3
    assert result.sample_deleted == ["Test Game (bgg:4)"]
    assert await _types(db_session) == {
        "1": VerifiedType.BOARDGAME.value,
        "2": VerifiedType.EXPANSION.value,
        "3": VerifiedType.INVALID.value,
    }


@pytest.mark.asyncio
async def test_cleanup_dry_run_writes_nothing(db_session, fake_client, cleanup) -> None:
    await _seed(db_session, 1, 2)
    fake_client.types = {"1": "boardgame"}

    result = await cleanup.run(db_session, dry_run=True)

    assert result.deleted == 1
    assert result.message.startswith("[DRY RUN]")
    assert set(await _types(db_session)) == {"1", "2"}


@pytest.mark.asyncio
async def test_cleanup_failed_fetch_is_not_missing(db_session, fake_client, cleanup) -> None:
    await _seed(db_session, 1, 2)
    fake_client.failing_ids = {"1"}

    result = await cleanup.run(db_session)

    assert result.errors == 2
    assert result.deleted == 0
    assert len(result.error_messages) == 1
    assert set(await _types(db_session)) == {"1", "2"}


@pytest.mark.asyncio
async def test_cleanup_pages_and_limit(db_session, fake_client, cleanup, monkeypatch) -> None:
    from boardsync.config import settings

    monkeypatch.setattr(settings, "THING_BATCH_SIZE", 2)
    await _seed(db_session, 1, 2, 3, 4, 5)
    fake_client.types = {str(i): "boardgame" for i in range(1, 6)}

    result = await cleanup.run(db_session, limit=3)

    assert result.checked == 3
    assert [len(call) for call in fake_client.type_calls] == [2, 1]


@pytest.mark.asyncio
async def test_cleanup_limit_is_clamped(db_session, fake_client, cleanup, monkeypatch) -> None:
    from boardsync.config import settings

    monkeypatch.setattr(settings, "CLEANUP_MAX_LIMIT", 2)
    await _seed(db_session, 1, 2, 3)
    fake_client.types = {str(i): "boardgame" for i in range(1, 4)}

    result = await cleanup.run(db_session, limit=1000)
    assert result.checked == 2


@pytest.mark.asyncio
async def test_cleanup_status(db_session, cleanup) -> None:
    await _seed(db_session, 1)
    db_session.add(CatalogEntry(title="Placeholder"))
    await db_session.commit()

    counts = await cleanup.status(db_session)
    assert counts["total"] == 2
    assert counts["with_bgg_id"] == 1
