"""
Models package — export all SQLAlchemy models.
"""

from boardsync.models.base import Base
from boardsync.models.catalog import (
    Artist,
    CatalogArtist,
    CatalogDesigner,
    CatalogEntry,
    CatalogMechanic,
    CatalogPublisher,
    Designer,
    Mechanic,
    Publisher,
)
from boardsync.models.scraper_state import ScraperCursor
from boardsync.models.tenant import (
    Tenant,
    TenantGame,
    TenantSyncSettings,
    TenantSyncState,
    TradeListing,
    UserRole,
    WishlistWant,
)

__all__ = [
    "Artist",
    "Base",
    "CatalogArtist",
    "CatalogDesigner",
    "CatalogEntry",
    "CatalogMechanic",
    "CatalogPublisher",
    "Designer",
    "Mechanic",
    "Publisher",
    "ScraperCursor",
    "Tenant",
    "TenantGame",
    "TenantSyncSettings",
    "TenantSyncState",
    "TradeListing",
    "UserRole",
    "WishlistWant",
]
