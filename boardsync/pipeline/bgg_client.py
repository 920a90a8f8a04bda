"""
BoardSync — BGG XML API Client (Upstream Client)

Batched thing lookups (up to 20 ids per request) and per-status collection
partitions from the BoardGameGeek XML API 2.

The upstream answers 202 while it prepares a result and 429 when throttled.
Both are retried under a RetryPolicy; once retries are exhausted the call
degrades to an empty UpstreamResult carrying an error string. Nothing in
this module raises on upstream failure, so callers must tolerate partial
results.

Usage:
    async with BGGClient() as client:
        result = await client.fetch_batch([1, 2, 3])
        owned = await client.fetch_partition("alice", Partition.OWNED)
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

import httpx
import structlog

from boardsync.config import VerifiedType, settings
from boardsync.pipeline.bgg_xml import (
    CollectionItem,
    ThingRecord,
    extract_error_message,
    parse_collection_items,
    parse_thing_image,
    parse_thing_items,
    parse_thing_types,
)
from boardsync.utils.retry import RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Thing lookups default to the types the catalog accepts.
ALLOWED_THING_TYPES: tuple[str, ...] = (
    VerifiedType.BOARDGAME.value,
    VerifiedType.EXPANSION.value,
)


class Partition(str, Enum):
    """
    One status-filtered slice of a user's collection. The value is the
    query parameter the collection endpoint filters on; the upstream only
    accepts one such flag per request.
    """
    OWNED = "own"
    PREVIOUSLY_OWNED = "prevowned"
    FOR_TRADE = "trade"
    PREORDERED = "preordered"
    WISHLIST = "wishlist"
    WANT_TO_BUY = "wanttobuy"
    WANT_IN_TRADE = "want"
    WANT_TO_PLAY = "wanttoplay"


@dataclass
class UpstreamResult(Generic[T]):
    """Outcome of one upstream call. `error` is set when no usable data came back."""

    items: list[T] = field(default_factory=list)
    error: str | None = None
    status_code: int | None = None
    attempts: int = 0

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class _RawResponse:
    body: str | None
    error: str | None
    status_code: int | None
    attempts: int


class BGGClient:
    """
    Async client for the BGG XML API 2.

    Credentials are optional: without a bearer token or session cookie the
    requests simply go out unauthenticated.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        session_cookie: str | None = None,
        thing_policy: RetryPolicy | None = None,
        collection_policy: RetryPolicy | None = None,
        image_policy: RetryPolicy | None = None,
        timeout: float | None = None,
    ):
        self._base_url = base_url or settings.BGG_BASE_URL
        self._api_token = settings.BGG_API_TOKEN if api_token is None else api_token
        self._session_cookie = (
            settings.BGG_SESSION_COOKIE if session_cookie is None else session_cookie
        )
        self._thing_policy = thing_policy or RetryPolicy.for_thing_lookup()
        self._collection_policy = collection_policy or RetryPolicy.for_collection()
        self._image_policy = image_policy or RetryPolicy.for_image_lookup()
        self._timeout = timeout or settings.BGG_HTTP_TIMEOUT_SECONDS
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        headers = {
            "User-Agent": settings.BGG_USER_AGENT,
            "Accept": "application/xml",
            "Referer": f"{settings.BGG_SITE_URL}/",
            "Origin": settings.BGG_SITE_URL,
        }
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        if self._session_cookie:
            headers["Cookie"] = self._session_cookie
        return headers

    async def __aenter__(self) -> BGGClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers(),
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    async def _get(
        self,
        path: str,
        params: dict[str, Any],
        policy: RetryPolicy,
    ) -> _RawResponse:
        """GET with the given retry policy. Never raises on upstream failure."""
        assert self._client is not None, "Client not initialized. Use 'async with'."

        last_error: str | None = None
        last_status: int | None = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = await self._client.get(path, params=params)
            except httpx.RequestError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
                logger.warning(
                    "bgg_request_error",
                    path=path,
                    attempt=attempt,
                    error=str(e),
                )
                if policy.retry_on_network_error and policy.has_attempts_left(attempt):
                    await asyncio.sleep(policy.delay_for(attempt))
                    continue
                break

            last_status = response.status_code

            if policy.should_retry_status(response.status_code):
                last_error = f"HTTP {response.status_code} after {attempt} attempts"
                wait_time = policy.delay_for(attempt)
                logger.warning(
                    "bgg_retryable_status",
                    path=path,
                    status_code=response.status_code,
                    attempt=attempt,
                    wait_seconds=wait_time,
                )
                if policy.has_attempts_left(attempt):
                    await asyncio.sleep(wait_time)
                    continue
                break

            if not response.is_success:
                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.error(
                    "bgg_http_error",
                    path=path,
                    status_code=response.status_code,
                    attempt=attempt,
                )
                return _RawResponse(None, last_error, last_status, attempt)

            return _RawResponse(response.text, None, last_status, attempt)

        logger.error(
            "bgg_retries_exhausted",
            path=path,
            status_code=last_status,
            max_attempts=policy.max_attempts,
        )
        return _RawResponse(None, last_error, last_status, policy.max_attempts)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def fetch_batch(
        self,
        ids: Sequence[int | str],
        kinds: Sequence[str] | None = ALLOWED_THING_TYPES,
        stats: bool = True,
    ) -> UpstreamResult[ThingRecord]:
        """
        Look up to THING_BATCH_SIZE ids in one request.

        Args:
            ids: Upstream identifiers.
            kinds: Type filter sent upstream; None asks for every type.
            stats: Include ratings / weight.

        Returns:
            UpstreamResult with one ThingRecord per item the upstream returned.
        """
        if not ids:
            return UpstreamResult()
        if len(ids) > settings.THING_BATCH_SIZE:
            raise ValueError(
                f"fetch_batch accepts at most {settings.THING_BATCH_SIZE} ids, got {len(ids)}"
            )

        params: dict[str, Any] = {
            "id": ",".join(str(i) for i in ids),
            "stats": 1 if stats else 0,
        }
        if kinds:
            params["type"] = ",".join(kinds)

        raw = await self._get("/thing", params, self._thing_policy)
        if raw.body is None:
            return UpstreamResult(
                error=raw.error, status_code=raw.status_code, attempts=raw.attempts
            )

        records = parse_thing_items(raw.body)
        logger.info(
            "bgg_fetch_batch_complete",
            first_id=str(ids[0]),
            last_id=str(ids[-1]),
            requested=len(ids),
            returned=len(records),
        )
        return UpstreamResult(
            items=records, status_code=raw.status_code, attempts=raw.attempts
        )

    async def fetch_types(self, ids: Sequence[int | str]) -> UpstreamResult[tuple[str, str]]:
        """Return (bgg_id, item_type) pairs for ids, without any type filter."""
        if not ids:
            return UpstreamResult()
        params = {"id": ",".join(str(i) for i in ids), "stats": 0}
        raw = await self._get("/thing", params, self._thing_policy)
        if raw.body is None:
            return UpstreamResult(
                error=raw.error, status_code=raw.status_code, attempts=raw.attempts
            )
        return UpstreamResult(
            items=list(parse_thing_types(raw.body).items()),
            status_code=raw.status_code,
            attempts=raw.attempts,
        )

    async def fetch_partition(
        self,
        username: str,
        partition: Partition,
    ) -> UpstreamResult[CollectionItem]:
        """
        Fetch one status partition of a user's collection.

        An upstream <error> document (unknown user, private collection) is
        reported as a failed result rather than an empty partition.
        """
        params: dict[str, Any] = {
            "username": username,
            "stats": 1,
            partition.value: 1,
        }
        raw = await self._get("/collection", params, self._collection_policy)
        if raw.body is None:
            return UpstreamResult(
                error=raw.error, status_code=raw.status_code, attempts=raw.attempts
            )

        upstream_error = extract_error_message(raw.body)
        if upstream_error:
            logger.warning(
                "bgg_collection_error_document",
                username=username,
                partition=partition.value,
                message=upstream_error,
            )
            return UpstreamResult(
                error=upstream_error, status_code=raw.status_code, attempts=raw.attempts
            )

        items = parse_collection_items(raw.body)
        logger.info(
            "bgg_fetch_partition_complete",
            username=username,
            partition=partition.value,
            items=len(items),
        )
        return UpstreamResult(
            items=items, status_code=raw.status_code, attempts=raw.attempts
        )

    async def fetch_thing_image(self, bgg_id: str) -> str | None:
        """Best-effort detail lookup for a full-size image. None on any failure."""
        raw = await self._get("/thing", {"id": bgg_id}, self._image_policy)
        if raw.body is None:
            return None
        return parse_thing_image(raw.body)
