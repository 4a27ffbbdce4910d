"""Accumulating pagination over several upstream sources."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Iterable, Mapping, Sequence

from ..catalogs import (
    CatalogView,
    ContentFilter,
    clean_filter_value,
    filter_key,
    get_view,
    matches_genre,
    matches_studio,
    matches_year,
    sort_records,
    time_window_days,
    within_window,
)
from ..models import AccumulationState, AggregatedRecord, SourceRecord
from ..utils import parse_year, utcnow
from .cache import TwoTierCache
from .denylist import BrokenRecordDenylist
from .identity import IdentityResolver
from .merger import RecordMerger
from .sources import NOT_SUPPORTED, SourceAdapter, UpstreamFetchError, parse_records

logger = logging.getLogger(__name__)


STATE_PREFIX = "catalog:"


def state_key(catalog_id: str, filter_key_value: str) -> str:
    return f"{STATE_PREFIX}{catalog_id}:{filter_key_value}:accumulated"


def order_sources(
    sources: Iterable[SourceAdapter], priority: Sequence[str]
) -> dict[str, SourceAdapter]:
    """Key adapters by source, following the provider priority order."""

    by_source = {adapter.source: adapter for adapter in sources}
    ordered = {source: by_source[source] for source in priority if source in by_source}
    for source, adapter in by_source.items():
        ordered.setdefault(source, adapter)
    return ordered


class AccumulationEngine:
    """Grow per-view record lists lazily and serve filtered windows of them.

    Each ``(catalog, filter)`` pair owns an :class:`AccumulationState` stored in
    the two-tier cache. Requests only pull further upstream pages when the
    accumulated list is shorter than the requested window, and a per-key lock
    keeps concurrent requests from fetching the same page twice.
    """

    def __init__(
        self,
        sources: Iterable[SourceAdapter],
        merger: RecordMerger,
        resolver: IdentityResolver,
        cache: TwoTierCache,
        *,
        denylist: BrokenRecordDenylist | None = None,
        state_ttl: int = 1_800,
        page_ttl: int = 900,
        fetch_concurrency: int = 8,
        time_window_multiplier: int = 5,
        max_pages: int = 50,
        stale_page_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sources = order_sources(sources, merger.priority)
        self._merger = merger
        self._resolver = resolver
        self._cache = cache
        self._denylist = denylist
        self._state_ttl = state_ttl
        self._page_ttl = page_ttl
        self._semaphore = asyncio.Semaphore(fetch_concurrency)
        self._time_window_multiplier = time_window_multiplier
        self._max_pages = max_pages
        self._stale_page_limit = max(1, stale_page_limit)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._seed: list[AggregatedRecord] = []
        self.pages_fetched = 0

    @property
    def sources(self) -> Mapping[str, SourceAdapter]:
        return self._sources

    @property
    def seed(self) -> list[AggregatedRecord]:
        return list(self._seed)

    def set_seed(self, records: Iterable[AggregatedRecord]) -> None:
        """Start every new accumulation from a preloaded record set."""

        self._seed = list(records)

    async def reset(self) -> None:
        """Drop every accumulation state this engine has built."""

        removed = await self._cache.delete_prefix(STATE_PREFIX)
        logger.info("Dropped %s accumulated catalog states", removed)

    def target_count(
        self, view: CatalogView, filter_value: str | None, skip: int, limit: int
    ) -> int:
        multiplier = 1
        if time_window_days(view, filter_value) is not None:
            multiplier = self._time_window_multiplier
        return (skip + limit) * multiplier

    async def serve(
        self,
        catalog_id: str,
        filter_value: str | None = None,
        skip: int = 0,
        limit: int = 20,
        content_filter: ContentFilter | None = None,
    ) -> list[AggregatedRecord]:
        """Return ``limit`` records starting at ``skip`` for a catalog view."""

        if skip < 0:
            raise ValueError("skip must not be negative")
        if limit < 1:
            raise ValueError("limit must be positive")
        view = get_view(catalog_id)
        value = clean_filter_value(filter_value)
        target = self.target_count(view, value, skip, limit)
        state = await self.accumulate(view, value, target)
        items = self.apply_view(view, value, state.items, content_filter)
        return items[skip : skip + limit]

    async def accumulate(
        self, view: CatalogView, filter_value: str | None, target: int
    ) -> AccumulationState:
        key = state_key(view.key, filter_key(filter_value))
        async with self._hold(key):
            state = await self._load_state(key)
            while len(state.items) < target and not state.is_complete:
                state = await self._advance(key, view, filter_value, state)
                await self._cache.set(key, state, self._state_ttl)
            return state

    async def _advance(
        self,
        key: str,
        view: CatalogView,
        filter_value: str | None,
        state: AccumulationState,
    ) -> AccumulationState:
        cursor = state.next_page_cursor
        records = await self._fetch_page(view, filter_value, cursor)
        servable = [record for record in records if record.is_servable()]
        result = self._merger.aggregate(servable, self._resolver, state.items)
        if result.added + result.matched == 0:
            logger.info("Catalog %s exhausted after %s pages", key, cursor - 1)
            return state.model_copy(update={"is_complete": True})

        stale_pages = 0 if result.added else state.stale_pages + 1
        logger.debug(
            "Catalog %s page %s: %s new, %s already known",
            key,
            cursor,
            result.added,
            result.matched,
        )
        next_cursor = cursor + 1
        is_complete = next_cursor > self._max_pages
        if stale_pages >= self._stale_page_limit:
            logger.info(
                "Catalog %s stopped after %s pages without new series",
                key,
                stale_pages,
            )
            is_complete = True
        return state.model_copy(
            update={
                "items": result.records,
                "next_page_cursor": next_cursor,
                "is_complete": is_complete,
                "stale_pages": stale_pages,
            }
        )

    @asynccontextmanager
    async def _hold(self, key: str) -> AsyncIterator[None]:
        """Serialise work on ``key``; the lock is dropped once nobody uses it."""

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def apply_view(
        self,
        view: CatalogView,
        filter_value: str | None,
        items: Sequence[AggregatedRecord],
        content_filter: ContentFilter | None = None,
    ) -> list[AggregatedRecord]:
        """Filter and sort accumulated records for presentation."""

        records = list(items)
        if self._denylist is not None:
            denied = self._denylist.denied_ids()
            if denied:
                records = [
                    record
                    for record in records
                    if denied.isdisjoint(record.provider_ids())
                ]

        if filter_value:
            if view.filter_kind == "genre":
                records = [r for r in records if matches_genre(r, filter_value)]
            elif view.filter_kind == "studio":
                records = [r for r in records if matches_studio(r, filter_value)]
            elif view.filter_kind == "year":
                year = parse_year(filter_value)
                if year is not None:
                    records = [r for r in records if matches_year(r, year)]

        days = time_window_days(view, filter_value)
        if days is not None:
            now = self._clock()
            records = [r for r in records if within_window(r, days, now)]

        records = sort_records(records, view.sort)

        if content_filter is not None and not content_filter.is_empty:
            records = [r for r in records if content_filter.allows(r)]
        return records

    async def _load_state(self, key: str) -> AccumulationState:
        cached = await self._cache.get(key)
        if isinstance(cached, AccumulationState):
            return cached
        if isinstance(cached, dict):
            return AccumulationState.model_validate(cached)
        return AccumulationState(items=list(self._seed))

    async def _fetch_page(
        self, view: CatalogView, filter_value: str | None, page: int
    ) -> list[SourceRecord]:
        results = await asyncio.gather(
            *(
                self._fetch_source_page(adapter, view, filter_value, page)
                for adapter in self._sources.values()
            )
        )
        self.pages_fetched += 1
        return [record for records in results for record in records]

    async def _fetch_source_page(
        self,
        adapter: SourceAdapter,
        view: CatalogView,
        filter_value: str | None,
        page: int,
    ) -> list[SourceRecord]:
        key = self._cache.key(
            "page", adapter.source, view.key, filter_key(filter_value), page
        )

        async def _producer() -> list[dict[str, object]]:
            async with self._semaphore:
                records = await self._call_source(adapter, view, filter_value, page)
            return [record.model_dump(mode="json", by_alias=True) for record in records]

        try:
            payload = await self._cache.wrap(key, self._page_ttl, _producer)
        except UpstreamFetchError as exc:
            logger.warning(
                "Skipping %s page %s for %s: %s", adapter.source, page, view.key, exc
            )
            return []
        return parse_records(payload, adapter.source)

    @staticmethod
    async def _call_source(
        adapter: SourceAdapter,
        view: CatalogView,
        filter_value: str | None,
        page: int,
    ) -> list[SourceRecord]:
        if filter_value and view.filter_kind == "year":
            year = parse_year(filter_value)
            if year is not None:
                result = await adapter.get_catalog_by_year(year, page)
                if result is not NOT_SUPPORTED:
                    return list(result)
        elif filter_value and view.filter_kind == "studio":
            result = await adapter.get_catalog_by_studio(filter_value, page)
            if result is not NOT_SUPPORTED:
                return list(result)
        genre = filter_value if view.filter_kind == "genre" else None
        return await adapter.get_catalog(page, genre=genre, sort_hint=view.upstream_sort)
