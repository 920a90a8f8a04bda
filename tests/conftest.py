"""
BoardSync — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory aiosqlite database with every table created
- A fake upstream client serving canned things and collection partitions
- A tenant factory
"""

from __future__ import annotations

import uuid
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from boardsync.models import Base, Tenant, TenantSyncSettings
from tests.factories import FakeBGGClient


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_client() -> FakeBGGClient:
    return FakeBGGClient()


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


@pytest.fixture
def make_tenant(db_session):
    """Factory: create a library with sync settings, returns (tenant_id, owner_id)."""

    async def _make(**settings_fields) -> tuple[uuid.UUID, uuid.UUID]:
        tenant_id, owner_id = uuid.uuid4(), uuid.uuid4()
        db_session.add(Tenant(id=tenant_id, name="Game Night", owner_id=owner_id))
        await db_session.flush()
        fields = {"bgg_username": "alice", "removal_behavior": "flag"}
        fields.update(settings_fields)
        db_session.add(TenantSyncSettings(tenant_id=tenant_id, **fields))
        await db_session.commit()
        return tenant_id, owner_id

    return _make
