"""Tests for the scraper worker HTTP client."""

from __future__ import annotations

import httpx
import pytest

from app.services.sources import (
    NOT_SUPPORTED,
    JsonSourceClient,
    SourceAdapter,
    UpstreamFetchError,
    parse_records,
)


def build_client(handler, **kwargs) -> tuple[httpx.AsyncClient, JsonSourceClient]:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://hmm.internal"
    )
    kwargs.setdefault("retry_delay", 0)
    return http_client, JsonSourceClient("hmm", http_client, **kwargs)


def test_parse_records_drops_malformed_entries() -> None:
    """Entries missing a name should be dropped instead of raising."""

    records = parse_records(
        {
            "items": [
                {"id": "hmm-quiet-river", "name": "Quiet River"},
                {"id": "hmm-nameless"},
                "garbage",
                {"name": "Copper Field", "trendingRank": 4},
            ]
        },
        "hmm",
    )

    assert [record.id for record in records] == ["hmm-quiet-river", "hmm-copper-field"]
    assert records[1].rating_type == "trending"
    assert records[1].rating == 9.3


def test_client_satisfies_adapter_protocol() -> None:
    client = JsonSourceClient("hmm", httpx.AsyncClient())

    assert isinstance(client, SourceAdapter)


@pytest.mark.anyio("asyncio")
async def test_get_catalog_retries_server_errors() -> None:
    """Server faults are retried before the page is returned."""

    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) < 3:
            return httpx.Response(503)
        return httpx.Response(
            200, json=[{"id": "hmm-quiet-river", "name": "Quiet River", "poster": "p"}]
        )

    http_client, client = build_client(handler, max_retries=3)
    async with http_client:
        records = await client.get_catalog(2, genre="Drama", sort_hint="recent")

    assert len(requests) == 3
    assert requests[-1].url.params["page"] == "2"
    assert requests[-1].url.params["genre"] == "Drama"
    assert requests[-1].url.params["sort"] == "recent"
    assert records[0].source == "hmm"


@pytest.mark.anyio("asyncio")
async def test_exhausted_retries_raise_upstream_error() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(502)

    http_client, client = build_client(handler, max_retries=2)
    async with http_client:
        with pytest.raises(UpstreamFetchError) as excinfo:
            await client.get_catalog(1)

    assert calls == 3
    assert excinfo.value.status_code == 502
    assert excinfo.value.is_server_fault is True


@pytest.mark.anyio("asyncio")
async def test_client_errors_are_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(403)

    http_client, client = build_client(handler, max_retries=3)
    async with http_client:
        with pytest.raises(UpstreamFetchError) as excinfo:
            await client.search("river")

    assert calls == 1
    assert excinfo.value.is_server_fault is False


@pytest.mark.anyio("asyncio")
async def test_missing_endpoints_map_to_not_supported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/catalog/year/"):
            return httpx.Response(501)
        if request.url.path.startswith("/catalog/studio/"):
            return httpx.Response(
                200, json={"items": [{"id": "hmm-quiet-river", "name": "Quiet River"}]}
            )
        return httpx.Response(404)

    http_client, client = build_client(handler)
    async with http_client:
        assert await client.get_catalog_by_year(2020, 1) is NOT_SUPPORTED
        studio_records = await client.get_catalog_by_studio("Blue Lantern", 1)
        assert await client.get_metadata("hmm-unknown") is None

    assert [record.id for record in studio_records] == ["hmm-quiet-river"]


@pytest.mark.anyio("asyncio")
async def test_get_metadata_unwraps_meta_envelope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/meta/hmm-quiet-river"
        return httpx.Response(
            200,
            json={
                "meta": {
                    "id": "hmm-quiet-river",
                    "name": "Quiet River",
                    "episodes": [{"number": 1, "id": "hmm-quiet-river-ep-1"}],
                }
            },
        )

    http_client, client = build_client(handler)
    async with http_client:
        record = await client.get_metadata("hmm-quiet-river")

    assert record is not None
    assert record.episodes[0].id == "hmm-quiet-river-ep-1"


@pytest.mark.anyio("asyncio")
async def test_blank_search_skips_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    http_client, client = build_client(handler)
    async with http_client:
        assert await client.search("   ") == []


@pytest.mark.anyio("asyncio")
async def test_negative_retry_budget_still_makes_one_attempt() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    http_client, client = build_client(handler, max_retries=-2)
    async with http_client:
        with pytest.raises(UpstreamFetchError) as excinfo:
            await client.get_catalog(1)

    assert calls == 1
    assert excinfo.value.status_code == 503
