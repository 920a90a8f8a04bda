"""
BoardSync — Application Entrypoint

Configures structlog, creates the async SQLAlchemy engine and forwards one
invocation to the Run Coordinator with the service credential. Scheduling
is external: a cron job (or any other trigger) runs one command per tick.

Run via:
    python -m boardsync.main catalog scrape --batches 10
    python -m boardsync.main catalog fetch_ids 13 822 9209
    python -m boardsync.main sync 6f1c...e2 [--status]
    python -m boardsync.main sync-due
    python -m boardsync.main cleanup dry_run --limit 200
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from boardsync.config import settings
from boardsync.pipeline.bgg_client import BGGClient
from boardsync.pipeline.coordinator import Credential, RunCoordinator
from boardsync.pipeline.cron import run_due_syncs
from boardsync.pipeline.plays import HttpPlayImporter


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    # Log lines go to stderr so stdout carries only the JSON response
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


async def create_db_engine() -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    The DATABASE_URL is read from settings (env variable DATABASE_URL).

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)
    logger.info("database_engine_initializing")

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready")
    return engine, session_factory


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="boardsync",
        description="Run one BoardSync invocation and print its JSON response.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    catalog = commands.add_parser("catalog", help="Discovery sweeper actions.")
    catalog.add_argument(
        "action",
        choices=["status", "enable", "disable", "reset", "scrape", "fetch_ids"],
    )
    catalog.add_argument("ids", nargs="*", type=int, help="Ids for fetch_ids.")
    catalog.add_argument("--batches", type=int, default=None, help="Batches for scrape.")
    catalog.add_argument("--next-id", type=int, default=None, help="Cursor value for reset.")

    sync = commands.add_parser("sync", help="Reconcile one library's collection.")
    sync.add_argument("tenant_id", help="Library (tenant) UUID.")
    sync.add_argument("--status", action="store_true", help="Only show the last outcome.")

    commands.add_parser("sync-due", help="Reconcile every library whose auto sync is due.")

    cleanup = commands.add_parser("cleanup", help="Catalog cleanup pass.")
    cleanup.add_argument("action", choices=["status", "run", "dry_run"])
    cleanup.add_argument("--limit", type=int, default=None)

    return parser.parse_args(argv)


async def run(args: argparse.Namespace, coordinator: RunCoordinator) -> tuple[int, Any]:
    """Dispatch parsed CLI args; returns (status_code, body)."""
    credential = Credential(bearer_token=settings.SERVICE_ROLE_KEY)

    if args.command == "catalog":
        payload: dict[str, Any] = {"action": args.action}
        if args.batches is not None:
            payload["batches"] = args.batches
        if args.next_id is not None:
            payload["next_bgg_id"] = args.next_id
        if args.ids:
            payload["bgg_ids"] = args.ids
        response = await coordinator.handle_sweeper(payload, credential)
    elif args.command == "sync":
        payload = {
            "action": "status" if args.status else "sync",
            "tenant_id": args.tenant_id,
        }
        response = await coordinator.handle_sync(payload, credential)
    elif args.command == "sync-due":
        return 200, await run_due_syncs(coordinator)
    else:
        payload = {"action": args.action}
        if args.limit is not None:
            payload["limit"] = args.limit
        response = await coordinator.handle_cleanup(payload, credential)

    return response.status_code, response.body


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(log_level=settings.LOG_LEVEL)
    logger = structlog.get_logger(__name__)

    if not settings.SERVICE_ROLE_KEY:
        logger.warning("config_service_role_key_missing", note="service credential disabled")

    engine, session_factory = await create_db_engine()

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("database_health_check_passed")

        async with BGGClient() as client:
            coordinator = RunCoordinator(
                session_factory,
                client,
                play_importer=HttpPlayImporter() if settings.PLAY_IMPORT_URL else None,
            )
            status_code, body = await run(args, coordinator)
    except Exception as e:
        logger.error(
            "boardsync_fatal_error",
            command=args.command,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await engine.dispose()

    print(json.dumps(body, indent=2, default=str))
    return 0 if status_code == 200 else 1


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
