"""Field-by-field merging of records judged to be the same series."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from ..models import (
    NO_DESCRIPTION,
    AggregatedRecord,
    RatingEntry,
    SourceRecord,
)
from .descriptions import MIN_DESCRIPTION_LENGTH, clean_description, select_best
from .identity import IdentityResolver, normalize_name
from .ratings import RatingNormalizer

logger = logging.getLogger(__name__)


def metadata_score(record: SourceRecord, primary_source: str) -> int:
    """Heuristic completeness score used to pick a merge's primary side."""

    score = 0
    if record.source == primary_source:
        score += 10
    if record.rating is not None and record.rating_type == "direct":
        score += 5
        if record.rating >= 8:
            score += 2
    description = record.description or ""
    if len(description) > 20:
        score += 3
        if len(description) > 100:
            score += 1
    score += min(len(record.genres), 5)
    if record.year:
        score += 1
    if record.studio:
        score += 1
    if record.episodes:
        score += 2
    return score


def rating_entry(record: SourceRecord) -> RatingEntry | None:
    """Return the breakdown entry a source record contributes, if any."""

    if record.rating is not None:
        return RatingEntry(
            raw=record.rating, type=record.rating_type, vote_count=record.vote_count
        )
    if record.view_count is not None:
        return RatingEntry(raw=float(record.view_count), type="views")
    return None


def _merge_genres(
    primary: Sequence[str], secondary: Sequence[str], studio: str | None
) -> list[str]:
    merged: list[str] = []
    seen: set[str] = set()
    studio_key = studio.casefold() if studio else None
    for genre in [*primary, *secondary]:
        key = genre.casefold()
        if key in seen or key == studio_key:
            continue
        seen.add(key)
        merged.append(genre)
    return merged


def _merge_studio(primary: str | None, secondary: str | None) -> str | None:
    if not primary:
        return secondary
    if secondary and primary.isupper() and not secondary.isupper():
        return secondary
    return primary


@dataclass(slots=True)
class AggregationResult:
    """Outcome of reconciling a batch of source records."""

    records: list[AggregatedRecord]
    added: int = 0
    matched: int = 0
    merged: int = 0
    changed_ids: set[str] = field(default_factory=set)

    @property
    def changes(self) -> int:
        return self.added + self.merged


class RecordMerger:
    """Merge records into AggregatedRecords with a fixed trust configuration."""

    def __init__(self, ratings: RatingNormalizer, primary_source: str) -> None:
        self._ratings = ratings
        self._primary_source = primary_source

    @property
    def priority(self) -> tuple[str, ...]:
        return self._ratings.priority

    def score(self, record: SourceRecord) -> int:
        return metadata_score(record, self._primary_source)

    def from_source(self, record: SourceRecord) -> AggregatedRecord:
        """Create the first AggregatedRecord for an unmatched source record."""

        if isinstance(record, AggregatedRecord):
            return record
        breakdown: dict[str, RatingEntry] = {}
        entry = rating_entry(record)
        if entry is not None:
            breakdown[record.source] = entry
        payload = record.model_dump(by_alias=False)
        payload.update(
            description=select_best(
                {record.source: record.description}, self.priority
            ),
            genres=_merge_genres(record.genres, [], record.studio),
            providers=[record.source],
            provider_slugs={record.source: record.slug},
        )
        return self._finalise(payload, breakdown)

    def merge(
        self,
        existing: AggregatedRecord | SourceRecord,
        candidate: AggregatedRecord | SourceRecord,
    ) -> AggregatedRecord:
        """Return a new record combining two duplicates; inputs are untouched."""

        left = self.from_source(existing)
        right = self.from_source(candidate)
        if self.score(right) > self.score(left):
            primary, secondary = right, left
        else:
            primary, secondary = left, right

        providers = list(primary.providers)
        providers.extend(p for p in secondary.providers if p not in providers)

        provider_slugs = dict(primary.provider_slugs)
        for source, slug in secondary.provider_slugs.items():
            provider_slugs.setdefault(source, slug)

        breakdown = dict(primary.rating_breakdown)
        for source, entry in secondary.rating_breakdown.items():
            if source == secondary.source or source not in breakdown:
                breakdown[source] = entry

        description = self._merge_description(primary, secondary)
        studio = _merge_studio(primary.studio, secondary.studio)

        payload = primary.model_dump(by_alias=False)
        payload.update(
            description=description,
            poster=primary.poster or secondary.poster,
            genres=_merge_genres(primary.genres, secondary.genres, studio),
            studio=studio,
            year=primary.year or secondary.year,
            last_updated=self._latest(primary, secondary),
            episodes=(
                secondary.episodes
                if len(secondary.episodes) > len(primary.episodes)
                else primary.episodes
            ),
            providers=providers,
            provider_slugs=provider_slugs,
        )
        return self._finalise(payload, breakdown)

    def aggregate(
        self,
        records: Iterable[SourceRecord],
        resolver: IdentityResolver,
        existing: Sequence[AggregatedRecord] | None = None,
    ) -> AggregationResult:
        """Reconcile ``records`` against ``existing`` and each other, in order."""

        items = list(existing or [])
        index: dict[str, int] = {}
        for position, item in enumerate(items):
            index.setdefault(normalize_name(item.name), position)

        result = AggregationResult(records=items)
        for record in records:
            key = normalize_name(record.name)
            position = index.get(key)
            if position is None:
                position = resolver.find_match(record, items)
            if position is None:
                created = self.from_source(record)
                items.append(created)
                index.setdefault(key, len(items) - 1)
                result.added += 1
                result.changed_ids.add(created.id)
                continue
            result.matched += 1
            current = items[position]
            merged = self.merge(current, record)
            if merged != current:
                logger.debug("Merged %s into %s", record.id, current.id)
                items[position] = merged
                index.setdefault(normalize_name(merged.name), position)
                result.merged += 1
                result.changed_ids.add(merged.id)
        return result

    def _merge_description(
        self, primary: AggregatedRecord, secondary: AggregatedRecord
    ) -> str:
        primary_text = "" if primary.description == NO_DESCRIPTION else primary.description
        secondary_text = (
            "" if secondary.description == NO_DESCRIPTION else secondary.description
        )
        if (
            len(primary_text) < MIN_DESCRIPTION_LENGTH
            and len(secondary_text) > MIN_DESCRIPTION_LENGTH
        ):
            return clean_description(secondary_text)
        candidates = {primary.source: primary_text}
        candidates.setdefault(secondary.source, secondary_text)
        return select_best(candidates, self.priority)

    @staticmethod
    def _latest(
        primary: SourceRecord, secondary: SourceRecord
    ) -> datetime | None:
        values = [v for v in (primary.last_updated, secondary.last_updated) if v is not None]
        return max(values) if values else None

    def _finalise(
        self, payload: dict[str, Any], breakdown: dict[str, RatingEntry]
    ) -> AggregatedRecord:
        result = self._ratings.resolve(breakdown)
        payload["rating_breakdown"] = breakdown
        payload["rating"] = result.rating
        payload["rating_source"] = result.source
        payload["rating_is_na"] = result.is_na
        payload["vote_count"] = None
        if result.source is not None:
            payload["rating_type"] = breakdown[result.source].type
            payload["vote_count"] = breakdown[result.source].vote_count
        record = AggregatedRecord.model_validate(payload)
        record.metadata_score = self.score(record)
        return record
