"""
Tests for the upstream client (boardsync/pipeline/bgg_client.py).

Covers:
- fetch_batch: query shape, parsing, batch size limit
- Retry on 202 / 429 then success; exhaustion degrades to a failed result
- Network errors are retried and never raised
- fetch_partition: status flag parameter, <error> documents
- fetch_types / fetch_thing_image
- Optional credentials on outgoing requests
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from boardsync.pipeline.bgg_client import BGGClient, Partition
from boardsync.utils.retry import RetryPolicy

BGG_BASE = "https://boardgamegeek.com/xmlapi2"

THING_XML = """<items>
  <item type="boardgame" id="1"><name type="primary" value="Die Macher" />
    <minplayers value="3" /><maxplayers value="5" />
    <link type="boardgamemechanic" id="1" value="Voting" />
  </item>
  <item type="boardgameexpansion" id="2"><name type="primary" value="Dragonmaster Expansion" /></item>
</items>"""

COLLECTION_XML = """<items totalitems="1">
  <item objecttype="thing" objectid="13" subtype="boardgame">
    <name sortindex="1">CATAN</name>
    <status own="1" prevowned="0" fortrade="0" want="0" wanttoplay="0" wanttobuy="0" wishlist="0" preordered="0" />
  </item>
</items>"""


def _client(**kwargs) -> BGGClient:
    policy = RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.01)
    return BGGClient(
        base_url=BGG_BASE,
        api_token="",
        session_cookie="",
        thing_policy=policy,
        collection_policy=policy,
        image_policy=RetryPolicy(max_attempts=2, base_delay=0.01, max_delay=0.01),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# fetch_batch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_batch_success() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(return_value=httpx.Response(200, text=THING_XML))

        async with _client() as client:
            result = await client.fetch_batch([1, 2])

    assert not result.failed
    assert [r.bgg_id for r in result.items] == ["1", "2"]
    assert result.items[0].mechanics == ["Voting"]
    params = route.calls.last.request.url.params
    assert params["id"] == "1,2"
    assert params["stats"] == "1"
    assert params["type"] == "boardgame,boardgameexpansion"


@pytest.mark.asyncio
async def test_fetch_batch_rejects_oversized_batch() -> None:
    async with _client() as client:
        with pytest.raises(ValueError):
            await client.fetch_batch(list(range(1, 22)))


@pytest.mark.asyncio
async def test_fetch_batch_empty_ids_skips_request() -> None:
    with respx.mock(base_url=BGG_BASE, assert_all_called=False) as mock:
        route = mock.get("/thing")
        async with _client() as client:
            result = await client.fetch_batch([])

    assert result.items == []
    assert not route.called


@pytest.mark.asyncio
async def test_fetch_batch_retries_throttle_then_succeeds() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(
            side_effect=[
                httpx.Response(429),
                httpx.Response(202),
                httpx.Response(200, text=THING_XML),
            ]
        )
        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            async with _client() as client:
                result = await client.fetch_batch([1, 2])

    assert route.call_count == 3
    assert mock_sleep.await_count == 2
    assert len(result.items) == 2
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_fetch_batch_exhausted_retries_return_error() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(return_value=httpx.Response(429))
        with patch("asyncio.sleep", new_callable=AsyncMock):
            async with _client() as client:
                result = await client.fetch_batch([1])

    assert route.call_count == 3
    assert result.failed
    assert result.items == []
    assert result.status_code == 429
    assert "429" in result.error


@pytest.mark.asyncio
async def test_fetch_batch_non_retryable_error() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(return_value=httpx.Response(400, text="bad request"))
        async with _client() as client:
            result = await client.fetch_batch([1])

    assert route.call_count == 1
    assert result.failed
    assert result.status_code == 400


@pytest.mark.asyncio
async def test_fetch_batch_network_error_is_not_raised() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(side_effect=httpx.ConnectError("connection refused"))
        with patch("asyncio.sleep", new_callable=AsyncMock):
            async with _client() as client:
                result = await client.fetch_batch([1])

    assert route.call_count == 3
    assert result.failed
    assert "ConnectError" in result.error


# ---------------------------------------------------------------------------
# fetch_partition
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_partition_sends_status_flag() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/collection").mock(
            return_value=httpx.Response(200, text=COLLECTION_XML)
        )
        async with _client() as client:
            result = await client.fetch_partition("alice", Partition.FOR_TRADE)

    params = route.calls.last.request.url.params
    assert params["username"] == "alice"
    assert params["trade"] == "1"
    assert params["stats"] == "1"
    assert [i.bgg_id for i in result.items] == ["13"]
    assert result.items[0].own is True


@pytest.mark.asyncio
async def test_fetch_partition_queued_then_ready() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        mock.get("/collection").mock(
            side_effect=[
                httpx.Response(202, text="<message>Your request has been accepted</message>"),
                httpx.Response(200, text=COLLECTION_XML),
            ]
        )
        with patch("asyncio.sleep", new_callable=AsyncMock):
            async with _client() as client:
                result = await client.fetch_partition("alice", Partition.OWNED)

    assert not result.failed
    assert len(result.items) == 1


@pytest.mark.asyncio
async def test_fetch_partition_error_document_is_failure() -> None:
    error_xml = "<errors><error><message>Invalid username specified</message></error></errors>"
    with respx.mock(base_url=BGG_BASE) as mock:
        mock.get("/collection").mock(return_value=httpx.Response(200, text=error_xml))
        async with _client() as client:
            result = await client.fetch_partition("nobody", Partition.OWNED)

    assert result.failed
    assert result.error == "Invalid username specified"


# ---------------------------------------------------------------------------
# fetch_types / fetch_thing_image
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_types_has_no_type_filter() -> None:
    xml = '<items><item type="videogame" id="5"></item><item type="boardgame" id="6"></item></items>'
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(return_value=httpx.Response(200, text=xml))
        async with _client() as client:
            result = await client.fetch_types([5, 6, 7])

    params = route.calls.last.request.url.params
    assert "type" not in params
    assert params["stats"] == "0"
    assert dict(result.items) == {"5": "videogame", "6": "boardgame"}


@pytest.mark.asyncio
async def test_fetch_thing_image() -> None:
    xml = '<items><item type="boardgame" id="5"><image>https://cf.geekdo-images.com/x__original.jpg</image></item></items>'
    with respx.mock(base_url=BGG_BASE) as mock:
        mock.get("/thing").mock(return_value=httpx.Response(200, text=xml))
        async with _client() as client:
            assert await client.fetch_thing_image("5") == "https://cf.geekdo-images.com/x__original.jpg"


@pytest.mark.asyncio
async def test_fetch_thing_image_failure_returns_none() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(return_value=httpx.Response(503))
        with patch("asyncio.sleep", new_callable=AsyncMock):
            async with _client() as client:
                assert await client.fetch_thing_image("5") is None

    assert route.call_count == 2


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_optional_credentials_are_sent() -> None:
    policy = RetryPolicy(max_attempts=1)
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(return_value=httpx.Response(200, text=THING_XML))
        async with BGGClient(
            base_url=BGG_BASE,
            api_token="tok",
            session_cookie="SessionID=abc",
            thing_policy=policy,
        ) as client:
            await client.fetch_batch([1])

    headers = route.calls.last.request.headers
    assert headers["Authorization"] == "Bearer tok"
    assert headers["Cookie"] == "SessionID=abc"
    assert headers["Accept"] == "application/xml"


@pytest.mark.asyncio
async def test_no_credentials_no_auth_headers() -> None:
    with respx.mock(base_url=BGG_BASE) as mock:
        route = mock.get("/thing").mock(return_value=httpx.Response(200, text=THING_XML))
        async with _client() as client:
            await client.fetch_batch([1])

    headers = route.calls.last.request.headers
    assert "Authorization" not in headers
    assert "Cookie" not in headers
