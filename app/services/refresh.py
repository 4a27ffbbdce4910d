"""Incremental refresh of an existing record set from recent upstream pages."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from ..models import AggregatedRecord, SourceRecord
from .identity import IdentityResolver
from .merger import RecordMerger
from .sources import SourceAdapter, UpstreamFetchError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScanResult:
    source: str
    matched: list[SourceRecord] = field(default_factory=list)
    new: list[SourceRecord] = field(default_factory=list)
    pages: int = 0


@dataclass(slots=True)
class RefreshResult:
    records: list[AggregatedRecord]
    added: int = 0
    merged: int = 0
    scanned: dict[str, int] = field(default_factory=dict)


class IncrementalRefresher:
    """Pull the newest listings of each source into an existing record set.

    A source is scanned in most-recent order until ``consecutive_threshold``
    items in a row already match known records. The ``full_scan_source`` does
    not trust its own ordering, so exactly its first page is read in full.
    """

    def __init__(
        self,
        sources: Iterable[SourceAdapter],
        merger: RecordMerger,
        resolver: IdentityResolver,
        *,
        max_pages: int = 5,
        consecutive_threshold: int = 2,
        full_scan_source: str | None = None,
        enrich_concurrency: int = 4,
    ) -> None:
        self._sources = list(sources)
        self._merger = merger
        self._resolver = resolver
        self._max_pages = max_pages
        self._consecutive_threshold = consecutive_threshold
        self._full_scan_source = full_scan_source
        self._semaphore = asyncio.Semaphore(enrich_concurrency)

    async def refresh(self, existing: Sequence[AggregatedRecord]) -> RefreshResult:
        scans = await asyncio.gather(
            *(self.scan_source(adapter, existing) for adapter in self._sources)
        )
        adapters = {adapter.source: adapter for adapter in self._sources}
        updates: list[SourceRecord] = []
        for scan in scans:
            updates.extend(scan.matched)
            updates.extend(await self._enrich(adapters[scan.source], scan.new))
        updates = [record for record in updates if record.is_servable()]

        result = self._merger.aggregate(updates, self._resolver, existing)
        logger.info(
            "Incremental refresh added %s and updated %s records",
            result.added,
            result.merged,
        )
        return RefreshResult(
            records=result.records,
            added=result.added,
            merged=result.merged,
            scanned={scan.source: scan.pages for scan in scans},
        )

    async def scan_source(
        self, adapter: SourceAdapter, existing: Sequence[AggregatedRecord]
    ) -> ScanResult:
        full_scan = adapter.source == self._full_scan_source
        max_pages = 1 if full_scan else self._max_pages
        scan = ScanResult(source=adapter.source)
        consecutive = 0
        for page in range(1, max_pages + 1):
            try:
                records = await adapter.get_catalog(page, sort_hint="recent")
            except UpstreamFetchError as exc:
                logger.warning("Stopping %s scan at page %s: %s", adapter.source, page, exc)
                break
            scan.pages = page
            if not records:
                break
            for record in records:
                if self._resolver.find_match(record, existing) is None:
                    consecutive = 0
                    scan.new.append(record)
                    continue
                consecutive += 1
                scan.matched.append(record)
                if not full_scan and consecutive >= self._consecutive_threshold:
                    logger.debug(
                        "%s: %s consecutive known items on page %s",
                        adapter.source,
                        consecutive,
                        page,
                    )
                    return scan
        return scan

    async def _enrich(
        self, adapter: SourceAdapter, records: Sequence[SourceRecord]
    ) -> list[SourceRecord]:
        async def _one(record: SourceRecord) -> SourceRecord:
            async with self._semaphore:
                try:
                    detailed = await adapter.get_metadata(record.id)
                except UpstreamFetchError as exc:
                    logger.warning("Metadata for %s unavailable: %s", record.id, exc)
                    return record
            return detailed or record

        return list(await asyncio.gather(*(_one(record) for record in records)))
