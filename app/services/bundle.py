"""Offline catalog bundles built with the same merge logic as live serving."""

from __future__ import annotations

import asyncio
import gzip
import json
import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping

from ..models import AggregatedRecord, BundleStats, CatalogBundle, SourceRecord
from ..utils import utcnow
from .identity import IdentityResolver
from .merger import RecordMerger
from .slug_registry import SlugRegistry
from .sources import SourceAdapter, UpstreamFetchError

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 2
GZIP_MAGIC = b"\x1f\x8b"


def bundle_stats(
    catalog: Iterable[AggregatedRecord], *, duplicates_merged: int = 0
) -> BundleStats:
    records = list(catalog)
    by_provider: Counter[str] = Counter()
    for record in records:
        by_provider.update(record.providers)
    return BundleStats(
        total_series=len(records),
        total_episodes=sum(len(record.episodes) for record in records),
        with_rating=sum(1 for record in records if record.rating is not None),
        duplicates_merged=duplicates_merged,
        by_provider=dict(sorted(by_provider.items())),
    )


def build_bundle(
    records: Iterable[SourceRecord],
    merger: RecordMerger,
    resolver: IdentityResolver,
    *,
    providers_meta: Mapping[str, Mapping[str, Any]] | None = None,
    slug_registry: SlugRegistry | None = None,
    build_date: datetime | None = None,
) -> CatalogBundle:
    """Deduplicate ``records`` into a bundle document."""

    source_records = [record for record in records if record.is_servable()]
    result = merger.aggregate(source_records, resolver)
    if slug_registry is not None:
        for record in source_records:
            slug_registry.register_episodes(record)
    bundle = snapshot_bundle(
        result.records,
        providers_meta=providers_meta,
        slug_registry=slug_registry,
        build_date=build_date,
        duplicates_merged=len(source_records) - result.added,
    )
    logger.info(
        "Built bundle with %s series from %s listings (%s merged)",
        bundle.stats.total_series,
        len(source_records),
        bundle.stats.duplicates_merged,
    )
    return bundle


def snapshot_bundle(
    catalog: Iterable[AggregatedRecord],
    *,
    providers_meta: Mapping[str, Mapping[str, Any]] | None = None,
    slug_registry: SlugRegistry | None = None,
    build_date: datetime | None = None,
    duplicates_merged: int = 0,
) -> CatalogBundle:
    """Wrap already merged records in a bundle document."""

    records = sorted(catalog, key=lambda record: record.name.casefold())
    return CatalogBundle(
        version=BUNDLE_VERSION,
        build_date=build_date or utcnow(),
        providers_meta={key: dict(value) for key, value in (providers_meta or {}).items()},
        catalog=records,
        slug_registry=slug_registry.export() if slug_registry is not None else {},
        stats=bundle_stats(records, duplicates_merged=duplicates_merged),
    )


def write_bundle(bundle: CatalogBundle, path: Path | str) -> Path:
    """Write ``bundle`` as JSON, gzip-compressed when the path ends in ``.gz``."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(
        bundle.model_dump(mode="json", by_alias=True), ensure_ascii=False
    ).encode("utf-8")
    if target.suffix == ".gz":
        payload = gzip.compress(payload)
    target.write_bytes(payload)
    return target


def load_bundle(path: Path | str) -> CatalogBundle:
    raw = Path(path).read_bytes()
    if raw[:2] == GZIP_MAGIC:
        raw = gzip.decompress(raw)
    bundle = CatalogBundle.model_validate(json.loads(raw))
    if bundle.version != BUNDLE_VERSION:
        logger.warning(
            "Bundle %s has version %s, expected %s", path, bundle.version, BUNDLE_VERSION
        )
    return bundle


async def crawl_sources(
    sources: Iterable[SourceAdapter],
    *,
    max_pages: int,
    enrich: bool = True,
    concurrency: int = 4,
) -> list[SourceRecord]:
    """Collect every listing from the first ``max_pages`` pages of each source."""

    semaphore = asyncio.Semaphore(concurrency)

    async def _crawl(adapter: SourceAdapter) -> list[SourceRecord]:
        collected: list[SourceRecord] = []
        for page in range(1, max_pages + 1):
            try:
                async with semaphore:
                    records = await adapter.get_catalog(page, sort_hint="popular")
            except UpstreamFetchError as exc:
                logger.warning("Crawl of %s stopped at page %s: %s", adapter.source, page, exc)
                break
            if not records:
                break
            collected.extend(records)
        if not enrich:
            return collected
        return list(await asyncio.gather(*(_detail(adapter, r) for r in collected)))

    async def _detail(adapter: SourceAdapter, record: SourceRecord) -> SourceRecord:
        async with semaphore:
            try:
                detailed = await adapter.get_metadata(record.id)
            except UpstreamFetchError as exc:
                logger.warning("Metadata for %s unavailable: %s", record.id, exc)
                return record
        return detailed or record

    results = await asyncio.gather(*(_crawl(adapter) for adapter in sources))
    return [record for records in results for record in records]
