"""
BoardSync — Run Coordinator

The invocation contract shared by the sweeper, the reconciler and the
cleanup pass: validate the request, authorize the caller, take the
single-flight guard, run, and persist the outcome.

Only malformed input (400) and authorization failures (401 / 403) end an
invocation with a hard error. Everything else, including a busy guard or an
unverifiable state write, comes back as a 200 response with a structured
body.

Usage:
    coordinator = RunCoordinator(session_factory, client)
    response = await coordinator.handle_sweeper(
        {"action": "scrape", "batches": 5},
        Credential(bearer_token=settings.SERVICE_ROLE_KEY),
    )
"""

from __future__ import annotations

import hmac
import uuid
from datetime import timedelta
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boardsync.config import CursorStatus, settings
from boardsync.pipeline import store
from boardsync.pipeline.bgg_client import BGGClient
from boardsync.pipeline.cleanup import CatalogCleanup
from boardsync.pipeline.plays import PlayImporter
from boardsync.pipeline.reconciler import CollectionReconciler
from boardsync.pipeline.store import CursorState, StatePersistenceError
from boardsync.pipeline.sweeper import DiscoverySweeper, SweepResult
from boardsync.utils.text import truncate

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InvocationError(Exception):
    """Terminal failure of an invocation, carrying an HTTP-style status code."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(InvocationError):
    status_code = 400


class AuthenticationError(InvocationError):
    status_code = 401


class ForbiddenError(InvocationError):
    status_code = 403


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """
    Caller identity. A bearer token equal to SERVICE_ROLE_KEY is the
    elevated service credential; otherwise user_id must be set by whatever
    authenticated the caller upstream of this engine.
    """

    bearer_token: str | None = None
    user_id: uuid.UUID | None = None


class SweeperRequest(BaseModel):
    action: Literal["status", "enable", "disable", "reset", "scrape", "fetch_ids"] = "scrape"
    next_bgg_id: int | None = Field(default=None, ge=1)
    batches: int | None = Field(default=None, ge=1)
    bgg_ids: list[int] = Field(default_factory=list)


class SyncRequest(BaseModel):
    action: Literal["sync", "status"] = "sync"
    tenant_id: uuid.UUID


class CleanupRequest(BaseModel):
    action: Literal["status", "run", "dry_run"] = "status"
    limit: int | None = Field(default=None, ge=1)


class InvocationResponse(BaseModel):
    status_code: int = 200
    body: dict[str, Any] = Field(default_factory=dict)


def _parse(model: type[BaseModel], payload: dict[str, Any] | None) -> Any:
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise InputError(f"invalid request: {e.errors()[0].get('msg', 'malformed')}") from e


def _cursor_body(state: CursorState) -> dict[str, Any]:
    return state.model_dump(mode="json")


class RunCoordinator:
    """Authorizes and dispatches one invocation at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: BGGClient,
        play_importer: PlayImporter | None = None,
        sweeper: DiscoverySweeper | None = None,
        reconciler: CollectionReconciler | None = None,
        cleanup: CatalogCleanup | None = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.sweeper = sweeper or DiscoverySweeper(client)
        self.reconciler = reconciler or CollectionReconciler(client, play_importer)
        self.cleanup = cleanup or CatalogCleanup(client)

    # -----------------------------------------------------------------------
    # Authorization
    # -----------------------------------------------------------------------

    @staticmethod
    def is_service(credential: Credential) -> bool:
        if not settings.SERVICE_ROLE_KEY or not credential.bearer_token:
            return False
        return hmac.compare_digest(
            credential.bearer_token.encode(), settings.SERVICE_ROLE_KEY.encode()
        )

    async def _require_admin(self, session: AsyncSession, credential: Credential) -> None:
        if self.is_service(credential):
            return
        if credential.user_id is None:
            raise AuthenticationError("Authentication required")
        if not await store.has_role(session, credential.user_id, ADMIN_ROLE):
            raise ForbiddenError("Admin access required")

    async def _require_tenant_access(
        self,
        session: AsyncSession,
        credential: Credential,
        tenant_id: uuid.UUID,
    ) -> None:
        if self.is_service(credential):
            return
        if credential.user_id is None:
            raise AuthenticationError("Authentication required")
        owner = await store.tenant_owner(session, tenant_id)
        if owner == credential.user_id:
            return
        if not await store.has_role(session, credential.user_id, ADMIN_ROLE):
            raise ForbiddenError("Only library owners can sync")

    @staticmethod
    def _error_response(e: InvocationError) -> InvocationResponse:
        return InvocationResponse(
            status_code=e.status_code, body={"success": False, "error": e.message}
        )

    # -----------------------------------------------------------------------
    # Discovery sweeper
    # -----------------------------------------------------------------------

    async def handle_sweeper(
        self,
        payload: dict[str, Any] | None,
        credential: Credential,
    ) -> InvocationResponse:
        try:
            async with self.session_factory() as session:
                await self._require_admin(session, credential)
                request = _parse(SweeperRequest, payload)
                body = await self._dispatch_sweeper(session, request)
        except InvocationError as e:
            logger.warning("coordinator_sweeper_rejected", status_code=e.status_code, error=e.message)
            return self._error_response(e)
        return InvocationResponse(body=body)

    async def _dispatch_sweeper(
        self,
        session: AsyncSession,
        request: SweeperRequest,
    ) -> dict[str, Any]:
        if request.action == "status":
            return {"success": True, "state": _cursor_body(await store.load_cursor(session))}

        if request.action in ("enable", "disable"):
            state = await store.load_cursor(session)
            if request.action == "disable":
                state.status = CursorStatus.DISABLED
                state.run_started_at = None
            elif state.status is CursorStatus.DISABLED:
                state.status = CursorStatus.IDLE
            return await self._save_cursor_response(
                session, state, {"enabled": request.action == "enable"}
            )

        if request.action == "reset":
            if request.next_bgg_id is None:
                raise InputError("next_bgg_id required for reset")
            state = await store.load_cursor(session)
            if state.status is CursorStatus.RUNNING:
                return {"success": False, "run_skipped": True, "reason": "Scraper is running"}
            state.next_bgg_id = request.next_bgg_id
            return await self._save_cursor_response(
                session, state, {"next_bgg_id": request.next_bgg_id}
            )

        if request.action == "fetch_ids":
            ids = [i for i in request.bgg_ids if i > 0]
            if not ids:
                raise InputError("No valid bgg_ids provided")
            if len(ids) > settings.FETCH_IDS_MAX:
                raise InputError(f"Max {settings.FETCH_IDS_MAX} IDs per request")
            outcome = await self.sweeper.fetch_ids(session, ids)
            return {"success": True, **outcome.model_dump(mode="json")}

        return await self._scrape(session, request.batches)

    async def _save_cursor_response(
        self,
        session: AsyncSession,
        state: CursorState,
        extra: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            saved = await store.save_cursor(session, state)
        except StatePersistenceError as e:
            return {"success": False, "errors": [str(e)], "state": _cursor_body(state)}
        return {"success": True, **extra, "state": _cursor_body(saved)}

    async def _scrape(self, session: AsyncSession, batches: int | None) -> dict[str, Any]:
        now = store.utcnow()
        stale_before = now - timedelta(minutes=settings.SWEEP_STALE_RUN_MINUTES)

        current = await store.load_cursor(session)
        if current.status is CursorStatus.DISABLED:
            return {"success": True, "run_skipped": True, "reason": "Scraper is disabled"}
        if not await store.claim_cursor(session, now, stale_before):
            logger.info("coordinator_scrape_busy", next_bgg_id=current.next_bgg_id)
            return {"success": True, "run_skipped": True, "reason": "Scraper already running"}

        state = await store.load_cursor(session)
        result: SweepResult | None = None
        errors: list[str] = []
        try:
            state, result = await self.sweeper.scrape(session, state, batches)
        except Exception as e:
            await session.rollback()
            message = truncate(f"Scrape failed: {e}", settings.ERROR_MESSAGE_MAX_LENGTH)
            errors.append(message)
            state = state.model_copy(update={"last_error": message})
            logger.error(
                "coordinator_scrape_failed",
                next_bgg_id=state.next_bgg_id,
                error=str(e)[:200],
                error_type=type(e).__name__,
            )

        state = state.model_copy(update={"status": CursorStatus.IDLE, "run_started_at": None})
        try:
            await store.save_cursor(session, state)
        except StatePersistenceError as e:
            errors.append(str(e))

        if result is None:
            return {
                "success": False,
                "error_messages": errors,
                "next_bgg_id": state.next_bgg_id,
                "state": _cursor_body(state),
            }

        return {
            "success": not errors,
            "bgg_id_range": result.bgg_id_range,
            "added": result.added,
            "updated": result.updated,
            "skipped": result.skipped,
            "errors": result.errors,
            "error_messages": errors,
            "next_bgg_id": state.next_bgg_id,
            "last_error": result.last_error,
            "state": _cursor_body(state),
        }

    # -----------------------------------------------------------------------
    # Collection reconciler
    # -----------------------------------------------------------------------

    async def handle_sync(
        self,
        payload: dict[str, Any] | None,
        credential: Credential,
    ) -> InvocationResponse:
        try:
            request = _parse(SyncRequest, payload)
            async with self.session_factory() as session:
                await self._require_tenant_access(session, credential, request.tenant_id)
                if request.action == "status":
                    body = await self._sync_status(session, request.tenant_id)
                else:
                    body = await self._sync(session, request.tenant_id, credential)
        except InvocationError as e:
            logger.warning("coordinator_sync_rejected", status_code=e.status_code, error=e.message)
            return self._error_response(e)
        return InvocationResponse(body=body)

    async def _sync_status(self, session: AsyncSession, tenant_id: uuid.UUID) -> dict[str, Any]:
        state = await store.load_sync_state(session, tenant_id)
        if state is None:
            return {"success": True, "tenant_id": str(tenant_id), "last_synced_at": None}
        return {
            "success": True,
            "tenant_id": str(tenant_id),
            "last_synced_at": state.last_synced_at.isoformat() if state.last_synced_at else None,
            "last_sync_status": state.last_sync_status,
            "last_sync_message": state.last_sync_message,
            "running": state.locked_at is not None,
        }

    async def _sync(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        credential: Credential,
    ) -> dict[str, Any]:
        token = uuid.uuid4().hex
        now = store.utcnow()
        stale_before = now - timedelta(minutes=settings.SYNC_LOCK_STALE_MINUTES)
        if not await store.acquire_tenant_lease(session, tenant_id, token, now, stale_before):
            logger.info("coordinator_sync_busy", tenant_id=str(tenant_id))
            return {
                "success": True,
                "run_skipped": True,
                "reason": "Sync already running for this library",
            }

        try:
            user_id = None if self.is_service(credential) else credential.user_id
            result = await self.reconciler.reconcile(session, tenant_id, user_id=user_id)
        except Exception:
            await session.rollback()
            raise
        finally:
            await store.release_tenant_lease(session, tenant_id, token)

        if not result.username_configured:
            raise InputError(
                "No BGG username configured. Set it in Library Settings → BGG Sync."
            )

        return {
            "success": True,
            "status": result.status.value,
            "message": result.message,
            **result.model_dump(
                mode="json",
                exclude={"status", "message", "username_configured"},
            ),
        }

    # -----------------------------------------------------------------------
    # Catalog cleanup
    # -----------------------------------------------------------------------

    async def handle_cleanup(
        self,
        payload: dict[str, Any] | None,
        credential: Credential,
    ) -> InvocationResponse:
        try:
            async with self.session_factory() as session:
                await self._require_admin(session, credential)
                request = _parse(CleanupRequest, payload)
                if request.action == "status":
                    body = {"success": True, **await self.cleanup.status(session)}
                else:
                    outcome = await self.cleanup.run(
                        session, request.limit, dry_run=request.action == "dry_run"
                    )
                    body = {
                        "success": True,
                        "message": outcome.message,
                        **outcome.model_dump(mode="json"),
                    }
        except InvocationError as e:
            logger.warning("coordinator_cleanup_rejected", status_code=e.status_code, error=e.message)
            return self._error_response(e)
        return InvocationResponse(body=body)
