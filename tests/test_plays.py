"""
Tests for the play-history import delegate (boardsync/pipeline/plays.py).
"""

from __future__ import annotations

import json
import uuid

import httpx
import pytest
import respx

from boardsync.pipeline.plays import HttpPlayImporter, PlayImportError

PLAY_URL = "https://functions.example.test/bgg-play-import"


@pytest.mark.asyncio
async def test_play_import_posts_payload() -> None:
    tenant_id = uuid.uuid4()
    with respx.mock() as mock:
        route = mock.post(PLAY_URL).mock(
            return_value=httpx.Response(200, json={"success": True, "imported": 7})
        )
        importer = HttpPlayImporter(url=PLAY_URL, bearer_token="svc")
        imported = await importer(tenant_id, "alice")

    assert imported == 7
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer svc"
    assert json.loads(request.content) == {
        "bgg_username": "alice",
        "library_id": str(tenant_id),
        "update_existing": False,
    }


@pytest.mark.asyncio
async def test_play_import_reported_failure() -> None:
    with respx.mock() as mock:
        mock.post(PLAY_URL).mock(
            return_value=httpx.Response(200, json={"success": False, "error": "user not found"})
        )
        with pytest.raises(PlayImportError, match="user not found"):
            await HttpPlayImporter(url=PLAY_URL, bearer_token="")(uuid.uuid4(), "ghost")


@pytest.mark.asyncio
async def test_play_import_non_json_error() -> None:
    with respx.mock() as mock:
        mock.post(PLAY_URL).mock(return_value=httpx.Response(502, text="Bad gateway"))
        with pytest.raises(PlayImportError, match="HTTP 502"):
            await HttpPlayImporter(url=PLAY_URL, bearer_token="")(uuid.uuid4(), "alice")


@pytest.mark.asyncio
async def test_play_import_network_error() -> None:
    with respx.mock() as mock:
        mock.post(PLAY_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))
        with pytest.raises(PlayImportError, match="ConnectTimeout"):
            await HttpPlayImporter(url=PLAY_URL, bearer_token="")(uuid.uuid4(), "alice")


@pytest.mark.asyncio
async def test_play_import_unconfigured() -> None:
    with pytest.raises(PlayImportError):
        await HttpPlayImporter(url="", bearer_token="")(uuid.uuid4(), "alice")
