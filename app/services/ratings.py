"""Rating normalisation across heterogeneous provider signals."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Mapping

from ..models import RatingEntry, RatingType

MIN_VOTE_COUNT = 10
VIEWS_THRESHOLD = 1_000
VIEWS_CEILING = 7.5
TRENDING_CEILING = 7.0
TRENDING_FLOOR = 5.0


@dataclass(frozen=True, slots=True)
class RatingResult:
    """Outcome of resolving a single display rating."""

    rating: float | None
    source: str | None
    is_na: bool


NO_RATING = RatingResult(rating=None, source=None, is_na=True)


def _clamp(value: float, low: float = 0.0, high: float = 10.0) -> float:
    return max(low, min(high, value))


def normalize_direct(value: float | None) -> float | None:
    """Clamp an explicit 0-10 score."""

    if value is None or math.isnan(value):
        return None
    return _clamp(float(value))


def normalize_views(views: float | None) -> float | None:
    """Map a view count onto a capped logarithmic score."""

    if views is None or math.isnan(views) or views < VIEWS_THRESHOLD:
        return None
    return round(min(VIEWS_CEILING, math.log10(views + 1) * 1.5), 1)


def trending_score_from_rank(position: int) -> float:
    """Convert a zero-based trending list position into a raw score."""

    return max(TRENDING_FLOOR, round(9.5 - position * 0.05, 1))


def normalize_trending(value: float | None) -> float | None:
    if value is None or math.isnan(value):
        return None
    return min(TRENDING_CEILING, _clamp(float(value)))


def normalize_rating(value: float | None, rating_type: RatingType) -> float | None:
    """Dispatch to the normaliser matching the signal type."""

    if rating_type == "views":
        return normalize_views(value)
    if rating_type == "trending":
        return normalize_trending(value)
    return normalize_direct(value)


def _ordered_sources(
    breakdown: Mapping[str, RatingEntry], priority: Iterable[str]
) -> list[str]:
    ordered = [source for source in priority if source in breakdown]
    ordered.extend(source for source in breakdown if source not in ordered)
    return ordered


def get_priority_rating(
    breakdown: Mapping[str, RatingEntry],
    fallback_vote_count: int | None = None,
    *,
    priority: Iterable[str],
    min_votes: int = MIN_VOTE_COUNT,
) -> RatingResult:
    """Return the first usable rating following the provider priority order.

    Direct ratings backed by fewer than ``min_votes`` votes are ignored so a
    handful of votes cannot outrank a better supported signal further down the
    order. Providers missing from ``priority`` are consulted last, in breakdown
    order.
    """

    for source in _ordered_sources(breakdown, priority):
        entry = breakdown[source]
        if entry.type == "direct":
            votes = entry.vote_count if entry.vote_count is not None else fallback_vote_count
            if votes is not None and votes < min_votes:
                continue
        normalized = normalize_rating(entry.raw, entry.type)
        if normalized is not None:
            return RatingResult(rating=normalized, source=source, is_na=False)
    return NO_RATING


class RatingNormalizer:
    """Binds the configured provider priority and vote floor."""

    def __init__(
        self, priority: Iterable[str], *, min_votes: int = MIN_VOTE_COUNT
    ) -> None:
        self._priority = tuple(priority)
        self._min_votes = min_votes

    @property
    def priority(self) -> tuple[str, ...]:
        return self._priority

    def resolve(
        self,
        breakdown: Mapping[str, RatingEntry],
        fallback_vote_count: int | None = None,
    ) -> RatingResult:
        return get_priority_rating(
            breakdown,
            fallback_vote_count,
            priority=self._priority,
            min_votes=self._min_votes,
        )
