"""
BoardSync — Due-Sync Fan-Out

Entry point for the external scheduler: find every tenant with automatic
sync on and an upstream username, drop the ones synced too recently for
their frequency, and reconcile the rest one after another through the
coordinator with the service credential.

A failing tenant is reported in the returned list and never stops the
fan-out.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from boardsync.config import SyncFrequency, settings
from boardsync.pipeline import store
from boardsync.pipeline.coordinator import Credential, RunCoordinator
from boardsync.utils.pacing import paced

logger = structlog.get_logger(__name__)


def _min_interval(frequency: str) -> timedelta | None:
    """Minimum gap between automatic syncs; None for manual-only tenants."""
    if frequency == SyncFrequency.WEEKLY.value:
        return timedelta(hours=settings.SYNC_WEEKLY_MIN_HOURS)
    if frequency == SyncFrequency.DAILY.value:
        return timedelta(hours=settings.SYNC_DAILY_MIN_HOURS)
    return None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_due(frequency: str, last_synced_at: datetime | None, now: datetime) -> bool:
    interval = _min_interval(frequency)
    if interval is None:
        return False
    if last_synced_at is None:
        return True
    return now - _as_utc(last_synced_at) >= interval


async def due_tenants(coordinator: RunCoordinator, now: datetime) -> list[uuid.UUID]:
    async with coordinator.session_factory() as session:
        candidates = await store.list_auto_sync_tenants(session)
    return [
        tenant_id
        for tenant_id, frequency, last_synced_at in candidates
        if is_due(frequency, last_synced_at, now)
    ]


async def run_due_syncs(
    coordinator: RunCoordinator,
    now: datetime | None = None,
    tenant_delay: float | None = None,
) -> list[dict[str, Any]]:
    """
    Reconcile every due tenant sequentially.

    Returns:
        One {tenant_id, status, message} entry per tenant attempted.
    """
    now = now or store.utcnow()
    delay = settings.CRON_TENANT_DELAY_SECONDS if tenant_delay is None else tenant_delay
    credential = Credential(bearer_token=settings.SERVICE_ROLE_KEY)

    tenants = await due_tenants(coordinator, now)
    logger.info("cron_due_tenants", count=len(tenants))

    results: list[dict[str, Any]] = []
    async for tenant_id in paced(tenants, delay):
        try:
            response = await coordinator.handle_sync(
                {"action": "sync", "tenant_id": str(tenant_id)}, credential
            )
        except Exception as e:
            logger.error("cron_tenant_failed", tenant_id=str(tenant_id), error=str(e))
            results.append({"tenant_id": str(tenant_id), "status": "error", "message": str(e)})
            continue

        body = response.body
        if response.status_code != 200:
            status, message = "error", body.get("error", f"HTTP {response.status_code}")
        elif body.get("run_skipped"):
            status, message = "skipped", body.get("reason", "")
        else:
            status, message = body.get("status", "error"), body.get("message", "")

        logger.info(
            "cron_tenant_synced",
            tenant_id=str(tenant_id),
            status=status,
            message=message,
        )
        results.append({"tenant_id": str(tenant_id), "status": status, "message": message})

    return results
