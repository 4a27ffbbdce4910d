from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import register_routes
from app.services.cache import TwoTierCache
from app.services.catalog_service import CatalogService
from app.services.sources import UpstreamFetchError

from fakes import FakeSource, make_record


def build_client(*sources) -> TestClient:
    app = FastAPI()
    register_routes(app)
    app.state.catalog_service = CatalogService(
        Settings(_env_file=None, PROVIDER_PRIORITY="hmm,htv,hse"),
        sources,
        TwoTierCache(None),
    )
    return TestClient(app)


def test_catalog_route_applies_blacklist() -> None:
    source = FakeSource(
        "hmm",
        {
            1: [
                make_record("hmm", "Quiet River", genres=["Drama"]),
                make_record("hmm", "Copper Field", genres=["Drama", "Horror"]),
            ]
        },
    )

    with build_client(source) as client:
        response = client.get(
            "/api/catalog/all", params={"limit": 5, "blacklistGenres": "horror"}
        )
        missing = client.get("/api/catalog/unknown")
        negative = client.get("/api/catalog/all", params={"skip": -1})

    assert response.status_code == 200
    assert [meta["name"] for meta in response.json()["metas"]] == ["Quiet River"]
    assert missing.status_code == 404
    assert negative.status_code == 400


def test_catalog_listing_route() -> None:
    with build_client() as client:
        response = client.get("/api/catalogs")

    assert response.status_code == 200
    catalogs = {item["id"]: item for item in response.json()}
    assert "top-rated" in catalogs
    assert "this week" in catalogs["recent"]["options"]


def test_meta_route_maps_upstream_failures() -> None:
    healthy = FakeSource(
        "hmm", metadata={"hmm-quiet-river": make_record("hmm", "Quiet River")}
    )
    broken = FakeSource(
        "htv", metadata_error=UpstreamFetchError("htv", "HTTP 500", status_code=500)
    )

    with build_client(healthy, broken) as client:
        found = client.get("/api/meta/hmm-quiet-river")
        missing = client.get("/api/meta/hmm-missing")
        failed = client.get("/api/meta/htv-quiet-river")

    assert found.status_code == 200
    assert found.json()["meta"]["providers"] == ["hmm"]
    assert missing.status_code == 404
    assert failed.status_code == 502


def test_search_and_stats_routes() -> None:
    source = FakeSource("hmm", search_results=[make_record("hmm", "Quiet River")])

    with build_client(source) as client:
        results = client.get("/api/search", params={"q": "quiet"})
        empty = client.get("/api/search", params={"q": ""})
        stats = client.get("/api/stats")
        health = client.get("/healthz")

    assert [meta["id"] for meta in results.json()["metas"]] == ["hmm-quiet-river"]
    assert empty.status_code == 422
    assert stats.json()["sources"] == ["hmm"]
    assert health.json() == {"status": "ok"}
