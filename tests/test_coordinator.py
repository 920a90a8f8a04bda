"""
Tests for the run coordinator (boardsync/pipeline/coordinator.py).

Covers:
- Authorization: service credential, admins, tenant owners, strangers
- Input validation (400) before any work happens
- Sweeper actions: status / enable / disable / reset / scrape / fetch_ids
- Single-flight guards for the cursor and per tenant
- Sync responses and the missing-username rule
- Cleanup actions
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from boardsync.config import CursorStatus, settings
from boardsync.models import UserRole
from boardsync.pipeline import store
from boardsync.pipeline.bgg_client import Partition
from boardsync.pipeline.cleanup import CatalogCleanup
from boardsync.pipeline.coordinator import Credential, RunCoordinator
from boardsync.pipeline.reconciler import CollectionReconciler
from boardsync.pipeline.store import CursorState
from boardsync.pipeline.sweeper import DiscoverySweeper
from tests.factories import make_item, make_thing

SERVICE_KEY = "service-secret"


@pytest.fixture(autouse=True)
def service_key(monkeypatch) -> None:
    monkeypatch.setattr(settings, "SERVICE_ROLE_KEY", SERVICE_KEY)


@pytest.fixture
def coordinator(session_factory, fake_client) -> RunCoordinator:
    return RunCoordinator(
        session_factory,
        fake_client,
        sweeper=DiscoverySweeper(fake_client, batch_size=20, gap_jump=100, batch_delay=0),
        reconciler=CollectionReconciler(fake_client, partition_delay=0, image_delay=0),
        cleanup=CatalogCleanup(fake_client, batch_delay=0),
    )


@pytest.fixture
def service() -> Credential:
    return Credential(bearer_token=SERVICE_KEY)


@pytest.fixture
async def admin(db_session) -> Credential:
    user_id = uuid.uuid4()
    db_session.add(UserRole(user_id=user_id, role="admin"))
    await db_session.commit()
    return Credential(user_id=user_id)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sweeper_requires_credentials(coordinator) -> None:
    response = await coordinator.handle_sweeper({"action": "status"}, Credential())
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_wrong_service_key_is_not_elevated(coordinator) -> None:
    response = await coordinator.handle_sweeper(
        {"action": "status"}, Credential(bearer_token="guess")
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_sweeper_rejects_non_admin(coordinator) -> None:
    response = await coordinator.handle_sweeper(
        {"action": "status"}, Credential(user_id=uuid.uuid4())
    )
    assert response.status_code == 403
    assert response.body["success"] is False


@pytest.mark.asyncio
async def test_sweeper_allows_admin(coordinator, admin) -> None:
    response = await coordinator.handle_sweeper({"action": "status"}, admin)
    assert response.status_code == 200
    assert response.body["state"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_unknown_action_is_input_error(coordinator, service) -> None:
    response = await coordinator.handle_sweeper({"action": "explode"}, service)
    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Sweeper actions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scrape_skipped_while_disabled(coordinator, service, fake_client) -> None:
    response = await coordinator.handle_sweeper({"action": "scrape"}, service)

    assert response.status_code == 200
    assert response.body["run_skipped"] is True
    assert fake_client.batch_calls == []


@pytest.mark.asyncio
async def test_enable_then_scrape_persists_cursor(coordinator, service, fake_client, db_session) -> None:
    fake_client.add_things(make_thing(3, "Three"))

    enabled = await coordinator.handle_sweeper({"action": "enable"}, service)
    assert enabled.body["state"]["status"] == "idle"

    response = await coordinator.handle_sweeper({"action": "scrape", "batches": 2}, service)

    assert response.status_code == 200
    assert response.body["success"] is True
    assert response.body["added"] == 1
    assert response.body["bgg_id_range"] == "1-120"
    assert response.body["next_bgg_id"] == 121
    cursor = await store.load_cursor(db_session)
    assert cursor.next_bgg_id == 121
    assert cursor.status is CursorStatus.IDLE
    assert cursor.total_added == 1


@pytest.mark.asyncio
async def test_scrape_busy_cursor_is_skipped(coordinator, service, db_session) -> None:
    await store.save_cursor(
        db_session,
        CursorState(status=CursorStatus.RUNNING, run_started_at=store.utcnow()),
    )

    response = await coordinator.handle_sweeper({"action": "scrape"}, service)

    assert response.body["run_skipped"] is True
    assert response.body["reason"] == "Scraper already running"


@pytest.mark.asyncio
async def test_scrape_takes_over_abandoned_run(coordinator, service, db_session) -> None:
    await store.save_cursor(
        db_session,
        CursorState(
            status=CursorStatus.RUNNING,
            run_started_at=store.utcnow() - timedelta(hours=3),
        ),
    )

    response = await coordinator.handle_sweeper({"action": "scrape", "batches": 1}, service)

    assert response.body.get("run_skipped") is None
    assert response.body["next_bgg_id"] == 101


@pytest.mark.asyncio
async def test_scrape_failure_is_reported_and_leaves_cursor_idle(
    session_factory, fake_client, service, db_session
) -> None:
    sweeper = DiscoverySweeper(fake_client, batch_delay=0)
    sweeper.scrape = AsyncMock(side_effect=RuntimeError("boom"))
    coordinator = RunCoordinator(session_factory, fake_client, sweeper=sweeper)
    await store.save_cursor(db_session, CursorState(next_bgg_id=50, status=CursorStatus.IDLE))

    response = await coordinator.handle_sweeper({"action": "scrape"}, service)

    assert response.status_code == 200
    assert response.body["success"] is False
    assert response.body["error_messages"] == ["Scrape failed: boom"]
    cursor = await store.load_cursor(db_session)
    assert cursor.status is CursorStatus.IDLE
    assert cursor.next_bgg_id == 50
    assert cursor.last_error == "Scrape failed: boom"


@pytest.mark.asyncio
async def test_scrape_store_failure_keeps_committed_progress(
    coordinator, service, fake_client, db_session, monkeypatch
) -> None:
    fake_client.add_things(make_thing(1, "One"))
    await coordinator.handle_sweeper({"action": "enable"}, service)
    real_verified = store.verified_catalog_ids
    calls = 0

    async def verified_or_fail(session, ids):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise OperationalError("SELECT game_catalog", {}, Exception("connection reset"))
        return await real_verified(session, ids)

    monkeypatch.setattr(store, "verified_catalog_ids", verified_or_fail)

    response = await coordinator.handle_sweeper({"action": "scrape", "batches": 3}, service)

    assert response.status_code == 200
    assert response.body["added"] == 1
    assert response.body["errors"] == 1
    cursor = await store.load_cursor(db_session)
    assert cursor.status is CursorStatus.IDLE
    assert cursor.next_bgg_id == 141
    assert cursor.total_added == 1


@pytest.mark.asyncio
async def test_disable_and_reset(coordinator, service, db_session) -> None:
    await coordinator.handle_sweeper({"action": "enable"}, service)

    missing = await coordinator.handle_sweeper({"action": "reset"}, service)
    assert missing.status_code == 400

    reset = await coordinator.handle_sweeper({"action": "reset", "next_bgg_id": 5000}, service)
    assert reset.body["next_bgg_id"] == 5000

    disabled = await coordinator.handle_sweeper({"action": "disable"}, service)
    assert disabled.body["enabled"] is False

    cursor = await store.load_cursor(db_session)
    assert cursor.next_bgg_id == 5000
    assert cursor.status is CursorStatus.DISABLED


@pytest.mark.asyncio
async def test_fetch_ids_validation(coordinator, service) -> None:
    empty = await coordinator.handle_sweeper({"action": "fetch_ids", "bgg_ids": []}, service)
    too_many = await coordinator.handle_sweeper(
        {"action": "fetch_ids", "bgg_ids": list(range(1, 102))}, service
    )
    assert empty.status_code == 400
    assert too_many.status_code == 400


@pytest.mark.asyncio
async def test_fetch_ids(coordinator, service, fake_client) -> None:
    fake_client.add_things(make_thing(13, "CATAN"))

    response = await coordinator.handle_sweeper(
        {"action": "fetch_ids", "bgg_ids": [13, 14]}, service
    )

    assert response.status_code == 200
    assert response.body["added"] == 1
    assert [r["status"] for r in response.body["results"]] == ["added", "not_found"]


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_owner_allowed(coordinator, make_tenant, fake_client) -> None:
    tenant_id, owner_id = await make_tenant()
    fake_client.partitions = {Partition.OWNED: [make_item(100, own=True)]}

    response = await coordinator.handle_sync(
        {"tenant_id": str(tenant_id)}, Credential(user_id=owner_id)
    )

    assert response.status_code == 200
    assert response.body["success"] is True
    assert response.body["status"] == "success"
    assert response.body["added"] == 1
    assert response.body["message"] == "1 added"


@pytest.mark.asyncio
async def test_sync_stranger_forbidden(coordinator, make_tenant, fake_client) -> None:
    tenant_id, _ = await make_tenant()

    response = await coordinator.handle_sync(
        {"tenant_id": str(tenant_id)}, Credential(user_id=uuid.uuid4())
    )

    assert response.status_code == 403
    assert fake_client.partition_calls == []


@pytest.mark.asyncio
async def test_sync_admin_allowed(coordinator, make_tenant, admin) -> None:
    tenant_id, _ = await make_tenant()
    response = await coordinator.handle_sync({"tenant_id": str(tenant_id)}, admin)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_sync_invalid_tenant_id(coordinator, service) -> None:
    response = await coordinator.handle_sync({"tenant_id": "not-a-uuid"}, service)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_sync_without_username_is_400_and_recorded(coordinator, make_tenant, service, db_session) -> None:
    tenant_id, _ = await make_tenant(bgg_username="")

    response = await coordinator.handle_sync({"tenant_id": str(tenant_id)}, service)

    assert response.status_code == 400
    state = await store.load_sync_state(db_session, tenant_id)
    assert state.last_sync_status == "error"
    assert state.locked_at is None


@pytest.mark.asyncio
async def test_sync_busy_tenant_is_skipped(coordinator, make_tenant, service, db_session, fake_client) -> None:
    tenant_id, _ = await make_tenant()
    now = store.utcnow()
    await store.acquire_tenant_lease(db_session, tenant_id, "other", now, now - timedelta(minutes=30))

    response = await coordinator.handle_sync({"tenant_id": str(tenant_id)}, service)

    assert response.status_code == 200
    assert response.body["run_skipped"] is True
    assert fake_client.partition_calls == []


@pytest.mark.asyncio
async def test_sync_releases_lease(coordinator, make_tenant, service) -> None:
    tenant_id, _ = await make_tenant()

    first = await coordinator.handle_sync({"tenant_id": str(tenant_id)}, service)
    second = await coordinator.handle_sync({"tenant_id": str(tenant_id)}, service)

    assert first.body.get("run_skipped") is None
    assert second.body.get("run_skipped") is None


@pytest.mark.asyncio
async def test_sync_collection_failure_is_reported_not_raised(
    coordinator, make_tenant, service, db_session, monkeypatch
) -> None:
    tenant_id, _ = await make_tenant()

    async def broken_list(session, tenant_id):
        raise OperationalError("SELECT games", {}, Exception("connection reset"))

    monkeypatch.setattr(store, "list_tenant_games", broken_list)

    response = await coordinator.handle_sync({"tenant_id": str(tenant_id)}, service)

    assert response.status_code == 200
    assert response.body["status"] == "error"
    state = await store.load_sync_state(db_session, tenant_id)
    assert state.last_sync_status == "error"
    assert state.locked_at is None


@pytest.mark.asyncio
async def test_sync_status(coordinator, make_tenant, service) -> None:
    tenant_id, _ = await make_tenant()
    await coordinator.handle_sync({"tenant_id": str(tenant_id)}, service)

    response = await coordinator.handle_sync(
        {"action": "status", "tenant_id": str(tenant_id)}, service
    )

    assert response.body["last_sync_status"] == "success"
    assert response.body["running"] is False


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cleanup_requires_admin(coordinator) -> None:
    response = await coordinator.handle_cleanup(
        {"action": "run"}, Credential(user_id=uuid.uuid4())
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_cleanup_dry_run(coordinator, service, fake_client, db_session) -> None:
    from boardsync.engine.normalizer import normalize

    await store.upsert_catalog_entry(db_session, normalize(make_thing(1)))
    await db_session.commit()

    response = await coordinator.handle_cleanup({"action": "dry_run", "limit": 10}, service)

    assert response.status_code == 200
    assert response.body["dry_run"] is True
    assert response.body["deleted"] == 1
    assert response.body["message"].startswith("[DRY RUN]")


@pytest.mark.asyncio
async def test_cleanup_status(coordinator, service) -> None:
    response = await coordinator.handle_cleanup({"action": "status"}, service)
    assert response.body["total"] == 0
