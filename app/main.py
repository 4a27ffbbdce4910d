"""Entry point for the FastAPI-powered catalog aggregator."""

from __future__ import annotations
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .catalogs import CATALOG_VIEWS, ContentFilter
from .config import Settings, settings
from .database import Database
from .services.background import BackgroundRefresher
from .services.cache import TwoTierCache
from .services.catalog_service import CatalogService
from .services.denylist import BrokenRecordDenylist
from .services.slug_registry import SlugRegistry
from .services.sources import JsonSourceClient, UpstreamFetchError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


async def build_sources(
    config: Settings, exit_stack: AsyncExitStack
) -> list[JsonSourceClient]:
    """Open one HTTP client per configured scraper worker."""

    sources: list[JsonSourceClient] = []
    for source, url in config.source_urls.items():
        http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=url,
                timeout=httpx.Timeout(config.upstream_timeout_seconds, connect=5.0),
            )
        )
        sources.append(
            JsonSourceClient(
                source,
                http_client,
                max_retries=config.upstream_max_retries,
                retry_delay=config.upstream_retry_delay_seconds,
                max_concurrency=config.per_host_concurrency,
            )
        )
    if not sources:
        logger.warning("No SOURCE_URLS configured; only seed data will be served")
    return sources


@asynccontextmanager
async def service_scope(
    config: Settings, *, schedule_refresh: bool = True
) -> AsyncIterator[CatalogService]:
    """Build a started :class:`CatalogService` and tear it down on exit."""

    exit_stack = AsyncExitStack()
    database = Database(config.database_url)
    await database.create_all()

    refresher = BackgroundRefresher(config.refresh_concurrency)
    cache = TwoTierCache(
        config.cache_dir,
        disk_multiplier=config.disk_ttl_multiplier,
        max_items=config.cache_max_items,
        refresher=refresher,
    )
    denylist = BrokenRecordDenylist(
        database.session_factory,
        failure_threshold=config.broken_failure_threshold,
        ttl_seconds=config.broken_ttl_seconds,
    )
    slug_registry = SlugRegistry(database.session_factory)
    try:
        sources = await build_sources(config, exit_stack)
        catalog_service = CatalogService(
            config,
            sources,
            cache,
            refresher=refresher,
            denylist=denylist,
            slug_registry=slug_registry,
        )
        await catalog_service.start(schedule_refresh=schedule_refresh)
        try:
            yield catalog_service
        finally:
            await catalog_service.stop()
    finally:
        await database.dispose()
        await exit_stack.aclose()


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    async with service_scope(settings) as catalog_service:
        fastapi_app.state.catalog_service = catalog_service
        if settings.bundle_path is not None:
            if settings.bundle_path.exists():
                await catalog_service.load_seed(settings.bundle_path)
            else:
                logger.warning("Bundle %s not found; starting empty", settings.bundle_path)
        yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Unified catalog aggregated from several listing sources",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_catalog_service(app: FastAPI) -> CatalogService:
    service = getattr(app.state, "catalog_service", None)
    if not isinstance(service, CatalogService):
        raise RuntimeError("Catalog service not initialised")
    return service


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/stats")
    async def stats() -> dict[str, Any]:
        return get_catalog_service(fastapi_app).stats()

    @fastapi_app.get("/api/catalogs")
    async def list_catalogs() -> list[dict[str, Any]]:
        return [
            {
                "id": view.key,
                "name": view.title,
                "filter": view.filter_kind,
                "options": list(view.options),
            }
            for view in CATALOG_VIEWS
        ]

    @fastapi_app.get("/api/catalog/{catalog_id}")
    async def catalog(
        catalog_id: str,
        filter: str | None = None,
        skip: int = 0,
        limit: int | None = Query(default=None, ge=1, le=200),
        blacklist_genres: str | None = Query(default=None, alias="blacklistGenres"),
        blacklist_studios: str | None = Query(default=None, alias="blacklistStudios"),
    ) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        content_filter = ContentFilter.from_values(blacklist_genres, blacklist_studios)
        try:
            metas = await service.get_catalog(
                catalog_id,
                filter,
                skip=skip,
                limit=limit,
                content_filter=content_filter,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"metas": metas}

    @fastapi_app.get("/api/meta/{record_id}")
    async def meta(record_id: str) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        try:
            record = await service.get_metadata(record_id)
        except UpstreamFetchError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if record is None:
            raise HTTPException(status_code=404, detail="Record not found")
        return {"meta": record.model_dump(mode="json", by_alias=True)}

    @fastapi_app.get("/api/search")
    async def search(
        q: str = Query(min_length=1),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        records = await service.search(q, limit)
        return {"metas": [record.to_meta_preview() for record in records]}


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
