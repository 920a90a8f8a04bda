"""
BoardSync — Play History Import Delegate

Play-history import is owned by a separate service. The reconciler only
hands it the tenant and upstream username and folds the reported count
into its summary.
"""

from __future__ import annotations

import uuid
from typing import Any, Protocol

import httpx
import structlog

from boardsync.config import settings

logger = structlog.get_logger(__name__)


class PlayImportError(Exception):
    """The play-history import collaborator reported or caused a failure."""


class PlayImporter(Protocol):
    async def __call__(self, tenant_id: uuid.UUID, username: str) -> int: ...


class HttpPlayImporter:
    """
    POSTs {bgg_username, library_id, update_existing} to PLAY_IMPORT_URL.

    Returns the collaborator's `imported` count; anything other than a
    `success: true` body raises PlayImportError.
    """

    def __init__(
        self,
        url: str | None = None,
        bearer_token: str | None = None,
        timeout: float | None = None,
    ):
        self._url = url if url is not None else settings.PLAY_IMPORT_URL
        self._bearer_token = (
            settings.SERVICE_ROLE_KEY if bearer_token is None else bearer_token
        )
        self._timeout = timeout or settings.BGG_HTTP_TIMEOUT_SECONDS

    async def __call__(self, tenant_id: uuid.UUID, username: str) -> int:
        if not self._url:
            raise PlayImportError("play import endpoint not configured")

        headers = {"Content-Type": "application/json"}
        if self._bearer_token:
            headers["Authorization"] = f"Bearer {self._bearer_token}"
        payload = {
            "bgg_username": username,
            "library_id": str(tenant_id),
            "update_existing": False,
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload, headers=headers)
        except httpx.RequestError as e:
            raise PlayImportError(f"{type(e).__name__}: {e}") from e

        try:
            data: dict[str, Any] = response.json()
        except ValueError:
            data = {}

        if not data.get("success"):
            raise PlayImportError(str(data.get("error") or f"HTTP {response.status_code}"))

        imported = int(data.get("imported") or 0)
        logger.info(
            "plays_import_complete",
            tenant_id=str(tenant_id),
            username=username,
            imported=imported,
        )
        return imported
