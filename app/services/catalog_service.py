"""Process-level façade tying sources, caches and the accumulation engine."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from pathlib import Path
from typing import Any, Iterable, Mapping

from ..catalogs import ContentFilter
from ..config import Settings
from ..models import AggregatedRecord, CatalogBundle, SourceRecord
from ..utils import source_prefix
from .accumulation import AccumulationEngine, order_sources
from .background import BackgroundRefresher
from .bundle import (
    build_bundle,
    crawl_sources,
    load_bundle,
    snapshot_bundle,
    write_bundle,
)
from .cache import TwoTierCache
from .denylist import BrokenRecordDenylist
from .identity import IdentityResolver, normalize_name, similarity
from .merger import RecordMerger
from .ratings import RatingNormalizer
from .refresh import IncrementalRefresher, RefreshResult
from .slug_registry import SlugRegistry
from .sources import SourceAdapter, UpstreamFetchError

logger = logging.getLogger(__name__)


def search_rank(record: AggregatedRecord, query: str) -> tuple[int, float, str]:
    """Sort key placing exact, prefix and substring title matches first."""

    name = normalize_name(record.name)
    if name == query:
        tier = 0
    elif name.startswith(query):
        tier = 1
    elif query in name:
        tier = 2
    else:
        tier = 3
    return (tier, -similarity(name, query), record.name.casefold())


class CatalogService:
    """Serve merged catalogs, metadata and search results to the web layer."""

    def __init__(
        self,
        settings: Settings,
        sources: Iterable[SourceAdapter],
        cache: TwoTierCache,
        *,
        refresher: BackgroundRefresher | None = None,
        denylist: BrokenRecordDenylist | None = None,
        slug_registry: SlugRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._sources = order_sources(sources, settings.provider_priority)
        self._cache = cache
        self._refresher = refresher
        self._denylist = denylist or BrokenRecordDenylist(
            failure_threshold=settings.broken_failure_threshold,
            ttl_seconds=settings.broken_ttl_seconds,
        )
        self._slugs = slug_registry or SlugRegistry()
        ratings = RatingNormalizer(
            settings.provider_priority, min_votes=settings.min_vote_count
        )
        self._merger = RecordMerger(ratings, settings.primary_source)
        self._resolver = IdentityResolver(settings.match_threshold)
        self._bundle_resolver = IdentityResolver(settings.effective_bundle_threshold)
        self._engine = AccumulationEngine(
            self._sources.values(),
            self._merger,
            self._resolver,
            cache,
            denylist=self._denylist,
            state_ttl=settings.catalog_cache_seconds,
            page_ttl=settings.page_cache_seconds,
            fetch_concurrency=settings.fetch_concurrency,
            time_window_multiplier=settings.time_window_fetch_multiplier,
            max_pages=settings.max_accumulation_pages,
            stale_page_limit=settings.accumulation_stale_pages,
        )
        self._index: dict[str, AggregatedRecord] = {}
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def engine(self) -> AccumulationEngine:
        return self._engine

    @property
    def merger(self) -> RecordMerger:
        return self._merger

    @property
    def denylist(self) -> BrokenRecordDenylist:
        return self._denylist

    @property
    def slug_registry(self) -> SlugRegistry:
        return self._slugs

    async def start(self, *, schedule_refresh: bool = True) -> None:
        """Restore durable state and launch the periodic refresh loop."""

        await self._denylist.load()
        await self._slugs.load()
        interval = self._settings.refresh_interval_seconds
        if schedule_refresh and interval > 0 and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop(interval))

    async def stop(self) -> None:
        """Cancel background refreshes and flush durable state."""

        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        if self._refresher is not None:
            await self._refresher.shutdown()
        await self._denylist.stop()
        await self._slugs.stop()

    async def load_seed(self, path: Path | str) -> CatalogBundle:
        """Adopt a prebuilt bundle as the starting point of every catalog."""

        bundle = await asyncio.to_thread(load_bundle, path)
        self._engine.set_seed(bundle.catalog)
        self._slugs.seed(bundle.slug_registry)
        self._cache.enable_bulk_mode()
        self._remember(bundle.catalog)
        logger.info("Loaded seed bundle with %s series from %s", len(bundle.catalog), path)
        return bundle

    async def get_catalog(
        self,
        catalog_id: str,
        filter_value: str | None = None,
        skip: int = 0,
        limit: int | None = None,
        content_filter: ContentFilter | None = None,
    ) -> list[dict[str, object]]:
        records = await self._engine.serve(
            catalog_id,
            filter_value,
            skip=skip,
            limit=self._settings.catalog_page_size if limit is None else limit,
            content_filter=content_filter,
        )
        self._remember(records)
        return [record.to_meta_preview() for record in records]

    async def get_metadata(self, record_id: str) -> AggregatedRecord | None:
        """Return the merged metadata of every provider listing ``record_id``.

        Denylisted ids short-circuit to ``None``. Results are cached with
        stale-while-revalidate; upstream failures only surface when nothing is
        cached for the id yet.
        """

        if self._denylist.is_denied(record_id):
            return None
        key = self._cache.key("meta", record_id)

        async def _producer() -> dict[str, Any] | None:
            record = await self._fetch_metadata(record_id)
            if record is None:
                return None
            return record.model_dump(mode="json", by_alias=True)

        payload = await self._cache.wrap(
            key, self._settings.meta_cache_seconds, _producer
        )
        if payload is None:
            return None
        record = AggregatedRecord.model_validate(payload)
        self._remember([record])
        return record

    async def search(self, query: str, limit: int = 20) -> list[AggregatedRecord]:
        if limit < 1:
            raise ValueError("limit must be positive")
        normalized = normalize_name(query or "")
        if not normalized:
            return []
        key = self._cache.key("search", normalized)

        async def _producer() -> list[dict[str, Any]]:
            records = await self._search_all(normalized, query.strip())
            return [record.model_dump(mode="json", by_alias=True) for record in records]

        payload = await self._cache.wrap(
            key, self._settings.search_cache_seconds, _producer
        )
        denied = self._denylist.denied_ids()
        results = [
            record
            for record in (AggregatedRecord.model_validate(item) for item in payload)
            if denied.isdisjoint(record.provider_ids())
        ][:limit]
        self._remember(results)
        return results

    async def refresh_recent(self) -> RefreshResult:
        """Fold the newest upstream listings into the seed dataset."""

        refresher = IncrementalRefresher(
            self._sources.values(),
            self._merger,
            self._resolver,
            max_pages=self._settings.refresh_max_pages,
            consecutive_threshold=self._settings.refresh_consecutive_threshold,
            full_scan_source=self._settings.refresh_full_scan_source,
            enrich_concurrency=self._settings.refresh_concurrency,
        )
        result = await refresher.refresh(self._engine.seed)
        self._engine.set_seed(result.records)
        await self._engine.reset()
        self._remember(result.records)
        return result

    async def build_bundle(
        self, path: Path | str, *, max_pages: int | None = None
    ) -> CatalogBundle:
        """Crawl every source and write a seed bundle to ``path``."""

        records = await crawl_sources(
            self._sources.values(),
            max_pages=max_pages or self._settings.max_accumulation_pages,
            concurrency=self._settings.refresh_concurrency,
        )
        bundle = build_bundle(
            records,
            self._merger,
            self._bundle_resolver,
            providers_meta=self._providers_meta(),
            slug_registry=self._slugs,
        )
        await asyncio.to_thread(write_bundle, bundle, path)
        return bundle

    async def save_seed(self, path: Path | str) -> CatalogBundle:
        """Write the current seed dataset back out as a bundle."""

        bundle = snapshot_bundle(
            self._engine.seed,
            providers_meta=self._providers_meta(),
            slug_registry=self._slugs,
        )
        await asyncio.to_thread(write_bundle, bundle, path)
        logger.info("Saved %s seed series to %s", bundle.stats.total_series, path)
        return bundle

    def episode_slug(self, source: str, series_slug: str, episode: int) -> str:
        """Return the slug ``source`` uses for an episode, guessing when unknown."""

        return self._slugs.lookup(source, series_slug, episode) or (
            f"{series_slug}-episode-{episode}"
        )

    def stats(self) -> dict[str, Any]:
        return {
            "sources": list(self._sources),
            "seedSize": len(self._engine.seed),
            "pagesFetched": self._engine.pages_fetched,
            "cache": self._cache.snapshot(),
            "denylist": self._denylist.snapshot(),
            "slugRegistry": self._slugs.snapshot(),
        }

    def _providers_meta(self) -> dict[str, dict[str, Any]]:
        return {
            source: {"priority": position, "url": self._settings.source_urls.get(source)}
            for position, source in enumerate(self._sources)
        }

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if not self._engine.seed:
                logger.debug("Skipping scheduled refresh; no seed loaded")
                continue
            try:
                result = await self.refresh_recent()
                logger.info(
                    "Scheduled refresh added %s series and updated %s",
                    result.added,
                    result.merged,
                )
            except Exception as exc:
                logger.exception("Scheduled refresh failed: %s", exc)

    def _remember(self, records: Iterable[AggregatedRecord]) -> None:
        for record in records:
            for record_id in record.provider_ids():
                self._index[record_id] = record

    def _metadata_targets(self, record_id: str) -> list[tuple[SourceAdapter, str]]:
        known = self._index.get(record_id)
        if known is not None:
            ids: Mapping[str, str] = {
                source: f"{source}-{slug}"
                for source, slug in known.provider_slugs.items()
            }
        else:
            source = source_prefix(record_id)
            ids = {source: record_id} if source else {}
        return [
            (self._sources[source], ids[source])
            for source in self._sources
            if source in ids
        ]

    async def _fetch_metadata(self, record_id: str) -> AggregatedRecord | None:
        targets = self._metadata_targets(record_id)
        known = self._index.get(record_id)
        if not targets:
            return known

        async def _fetch(adapter: SourceAdapter, target_id: str) -> SourceRecord | None:
            return await adapter.get_metadata(target_id)

        outcomes = await asyncio.gather(
            *(_fetch(adapter, target_id) for adapter, target_id in targets),
            return_exceptions=True,
        )
        found: list[SourceRecord] = []
        errors: list[UpstreamFetchError] = []
        for outcome in outcomes:
            if isinstance(outcome, UpstreamFetchError):
                errors.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome is not None:
                found.append(outcome)

        if not found:
            if errors:
                if any(error.is_server_fault for error in errors):
                    self._denylist.record_failure(record_id, str(errors[0]))
                if known is None:
                    raise errors[0]
            return known

        self._denylist.record_success(record_id)
        for record in found:
            self._slugs.register_episodes(record)
        if known is None:
            merged = self._merger.from_source(found[0])
            found = found[1:]
        else:
            merged = known
        for record in found:
            merged = self._merger.merge(merged, record)
        return merged

    async def _search_all(self, normalized: str, query: str) -> list[AggregatedRecord]:
        async def _one(adapter: SourceAdapter) -> list[SourceRecord]:
            try:
                return await adapter.search(query)
            except UpstreamFetchError as exc:
                logger.warning("Search on %s failed: %s", adapter.source, exc)
                return []

        results = await asyncio.gather(*(_one(adapter) for adapter in self._sources.values()))
        remote = [record for records in results for record in records if record.is_servable()]
        local = [
            record
            for record in self._engine.seed
            if normalized in normalize_name(record.name)
        ]
        aggregated = self._merger.aggregate(remote, self._resolver, local)
        return sorted(aggregated.records, key=lambda record: search_rank(record, normalized))
