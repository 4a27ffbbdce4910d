"""Catalog view definitions and the filters/sorts they apply."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Literal

from .models import AggregatedRecord
from .utils import normalize_label, strip_count_suffix

SortStrategy = Literal["recent", "rating", "alphabetical", "metadata"]
FilterKind = Literal["genre", "time_window", "studio", "year"]
UpstreamSort = Literal["popular", "recent", "rating", "alphabetical"]

TIME_WINDOWS: dict[str, int] = {
    "this week": 7,
    "this month": 30,
    "3 months": 90,
    "this year": 365,
}
ALL_FILTER = "all"


@dataclass(frozen=True)
class CatalogView:
    """Describes one browsable catalog and how its listing is shaped."""

    key: str
    title: str
    sort: SortStrategy
    upstream_sort: UpstreamSort
    filter_kind: FilterKind | None = None
    options: tuple[str, ...] = ()


CATALOG_VIEWS: tuple[CatalogView, ...] = (
    CatalogView(
        key="top-rated",
        title="Top Rated",
        sort="rating",
        upstream_sort="rating",
        filter_kind="genre",
    ),
    CatalogView(
        key="recent",
        title="Recently Updated",
        sort="recent",
        upstream_sort="recent",
        filter_kind="time_window",
        options=tuple(TIME_WINDOWS),
    ),
    CatalogView(
        key="studios",
        title="By Studio",
        sort="rating",
        upstream_sort="popular",
        filter_kind="studio",
    ),
    CatalogView(
        key="years",
        title="By Year",
        sort="recent",
        upstream_sort="recent",
        filter_kind="year",
    ),
    CatalogView(
        key="all",
        title="All Series",
        sort="alphabetical",
        upstream_sort="popular",
        filter_kind="genre",
    ),
    CatalogView(
        key="featured",
        title="Featured",
        sort="metadata",
        upstream_sort="popular",
    ),
)
CATALOG_VIEW_MAP: dict[str, CatalogView] = {view.key: view for view in CATALOG_VIEWS}


def get_view(catalog_id: str) -> CatalogView:
    try:
        return CATALOG_VIEW_MAP[catalog_id]
    except KeyError:
        raise KeyError(f"Unknown catalog {catalog_id}") from None


def clean_filter_value(value: str | None) -> str | None:
    """Strip count suffixes like ``"Action (12)"``; blank or ``all`` means none."""

    cleaned = strip_count_suffix(value or "")
    if not cleaned or cleaned.lower() == ALL_FILTER:
        return None
    return cleaned


def filter_key(value: str | None) -> str:
    cleaned = clean_filter_value(value)
    return cleaned.lower() if cleaned else ALL_FILTER


def time_window_days(view: CatalogView, value: str | None) -> int | None:
    if view.filter_kind != "time_window" or not value:
        return None
    return TIME_WINDOWS.get(value.lower())


def matches_genre(record: AggregatedRecord, genre: str) -> bool:
    """Match ``genre`` exactly or as the leading word of a longer tag."""

    wanted = genre.lower().strip()
    for candidate in record.genres:
        label = candidate.lower().strip()
        if label == wanted or label.startswith((f"{wanted} ", f"{wanted}-")):
            return True
    return False


def matches_studio(record: AggregatedRecord, studio: str) -> bool:
    if not record.studio:
        return False
    return record.studio.lower().strip() == studio.lower().strip()


def matches_year(record: AggregatedRecord, year: int) -> bool:
    if record.year == year:
        return True
    if record.last_updated is not None and record.last_updated.year == year:
        return True
    return any(
        episode.released is not None and episode.released.year == year
        for episode in record.episodes
    )


def within_window(
    record: AggregatedRecord, days: int, now: datetime | None = None
) -> bool:
    if record.last_updated is None:
        return False
    reference = now or datetime.now(timezone.utc)
    return record.last_updated >= reference - timedelta(days=days)


def _rating_key(record: AggregatedRecord) -> tuple[int, float, str]:
    rating = record.rating if record.rating is not None else -1.0
    return (0 if record.rating is not None else 1, -rating, record.name.casefold())


def sort_records(
    records: Iterable[AggregatedRecord], strategy: SortStrategy
) -> list[AggregatedRecord]:
    items = list(records)
    if strategy == "rating":
        return sorted(items, key=_rating_key)
    if strategy == "alphabetical":
        return sorted(items, key=lambda record: record.name.casefold())
    if strategy == "metadata":
        return sorted(
            items,
            key=lambda record: (
                -record.metadata_score,
                -len(record.providers),
                record.name.casefold(),
            ),
        )
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(
        items,
        key=lambda record: record.last_updated or epoch,
        reverse=True,
    )


@dataclass(frozen=True)
class ContentFilter:
    """Caller supplied genre and studio blacklist."""

    blacklist_genres: tuple[str, ...] = ()
    blacklist_studios: tuple[str, ...] = ()

    @classmethod
    def from_values(
        cls,
        genres: Iterable[str] | str | None = None,
        studios: Iterable[str] | str | None = None,
    ) -> "ContentFilter":
        def _clean(values: Iterable[str] | str | None) -> tuple[str, ...]:
            if values is None:
                return ()
            if isinstance(values, str):
                values = values.split(",")
            return tuple(
                label for label in (normalize_label(v) for v in values) if label
            )

        return cls(blacklist_genres=_clean(genres), blacklist_studios=_clean(studios))

    @property
    def is_empty(self) -> bool:
        return not self.blacklist_genres and not self.blacklist_studios

    def allows(self, record: AggregatedRecord) -> bool:
        if self.blacklist_genres:
            labels = {normalize_label(genre) for genre in record.genres}
            if labels.intersection(self.blacklist_genres):
                return False
        if self.blacklist_studios and record.studio:
            studio = normalize_label(record.studio)
            if not studio:
                return True
            for blocked in self.blacklist_studios:
                if blocked in studio or studio in blocked:
                    return False
        return True
