"""
BoardSync — Scraper Cursor Model

Singleton row (id='default') holding the discovery sweeper's persistent
position over the upstream ID space plus cumulative counters.

next_bgg_id never rewinds during normal operation. It moves forward by a
batch, or by the gap jump after an empty range, and only an explicit reset
sets it to an arbitrary value.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import INTEGER, TIMESTAMP, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from boardsync.models.base import Base

DEFAULT_CURSOR_ID = "default"


class ScraperCursor(Base):
    """Persisted discovery sweeper state."""

    __tablename__ = "catalog_scraper_state"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=DEFAULT_CURSOR_ID
    )
    next_bgg_id: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=1, server_default="1"
    )
    status: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default="disabled",
        server_default="disabled",
        comment="disabled | idle | running",
    )
    total_processed: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=0, server_default="0"
    )
    total_added: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=0, server_default="0"
    )
    total_skipped: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=0, server_default="0"
    )
    total_errors: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=0, server_default="0"
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    run_started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="Set while status='running'; used to detect abandoned runs",
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<ScraperCursor next_bgg_id={self.next_bgg_id!r} "
            f"status={self.status!r}>"
        )
