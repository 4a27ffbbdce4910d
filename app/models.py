"""Pydantic models describing source listings and aggregated records."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .utils import parse_timestamp, parse_year, source_prefix, strip_source_prefix

RatingType = Literal["direct", "views", "trending"]

NO_DESCRIPTION = "No Description"


class Episode(BaseModel):
    """Single episode entry attached to a series record."""

    model_config = ConfigDict(populate_by_name=True)

    number: int = Field(
        ge=0, validation_alias=AliasChoices("number", "episode", "episodeNumber")
    )
    id: str
    title: str | None = None
    poster: str | None = None
    released: datetime | None = None

    @field_validator("released", mode="before")
    @classmethod
    def _parse_released(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)


class RatingEntry(BaseModel):
    """Raw rating signal contributed by one provider."""

    model_config = ConfigDict(populate_by_name=True)

    raw: float
    type: RatingType
    vote_count: int | None = Field(default=None, alias="voteCount", ge=0)


class SourceRecord(BaseModel):
    """A single listing as reported by one upstream source."""

    model_config = ConfigDict(populate_by_name=True)

    source: str = ""
    id: str = Field(min_length=1)
    name: str
    poster: str = ""
    description: str = ""
    genres: list[str] = Field(default_factory=list)
    studio: str | None = None
    year: int | None = None
    rating: float | None = None
    rating_type: RatingType = Field(default="direct", alias="ratingType")
    vote_count: int | None = Field(default=None, alias="voteCount", ge=0)
    view_count: int | None = Field(default=None, alias="viewCount", ge=0)
    last_updated: datetime | None = Field(default=None, alias="lastUpdated")
    episodes: list[Episode] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _require_name(cls, value: str) -> str:
        cleaned = " ".join(value.split())
        if not cleaned:
            raise ValueError("name must not be blank")
        return cleaned

    @field_validator("poster", "description", mode="before")
    @classmethod
    def _default_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("genres", mode="before")
    @classmethod
    def _parse_genres(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        cleaned: list[str] = []
        for entry in value:
            text = str(entry).strip()
            if text and text not in cleaned:
                cleaned.append(text)
        return cleaned

    @field_validator("studio", mode="before")
    @classmethod
    def _parse_studio(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("year", mode="before")
    @classmethod
    def _parse_year(cls, value: Any) -> int | None:
        return parse_year(value)

    @field_validator("rating", mode="before")
    @classmethod
    def _parse_rating(cls, value: Any) -> float | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if math.isnan(number):
            return None
        return number

    @field_validator("vote_count", "view_count", mode="before")
    @classmethod
    def _parse_count(cls, value: Any) -> int | None:
        if value is None or value == "" or isinstance(value, bool):
            return None
        if isinstance(value, str):
            value = value.replace(",", "").strip()
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None

    @field_validator("last_updated", mode="before")
    @classmethod
    def _parse_last_updated(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @model_validator(mode="after")
    def _derive_source(self) -> "SourceRecord":
        """Fall back to the id prefix when no explicit source was given."""

        if not self.source:
            self.source = source_prefix(self.id) or ""
        self.source = self.source.lower()
        if not self.source:
            raise ValueError(f"Record {self.id} does not identify its source")
        return self

    @property
    def slug(self) -> str:
        return strip_source_prefix(self.id, self.source)

    def is_servable(self) -> bool:
        """Return whether the record carries enough data to be listed."""

        return bool(self.name and self.poster)


class AggregatedRecord(SourceRecord):
    """Merged view of one logical series across every source that lists it."""

    providers: list[str]
    provider_slugs: dict[str, str] = Field(default_factory=dict, alias="providerSlugs")
    rating_breakdown: dict[str, RatingEntry] = Field(
        default_factory=dict, alias="ratingBreakdown"
    )
    metadata_score: int = Field(default=0, alias="metadataScore")
    rating_source: str | None = Field(default=None, alias="ratingSource")
    rating_is_na: bool = Field(default=True, alias="ratingIsNA")

    @model_validator(mode="after")
    def _check_invariants(self) -> "AggregatedRecord":
        if not self.providers:
            raise ValueError("providers must not be empty")
        if len(set(self.providers)) != len(self.providers):
            raise ValueError("providers must be unique")
        known = set(self.providers)
        if not set(self.rating_breakdown).issubset(known):
            raise ValueError("rating breakdown references unknown providers")
        if not set(self.provider_slugs).issubset(known):
            raise ValueError("provider slugs reference unknown providers")
        if (self.rating is None) != self.rating_is_na:
            raise ValueError("rating_is_na must be set exactly when rating is missing")
        return self

    def provider_ids(self) -> list[str]:
        """Return the source-prefixed id this series has at every provider."""

        ids = [self.id]
        for source, slug in self.provider_slugs.items():
            candidate = f"{source}-{slug}"
            if candidate not in ids:
                ids.append(candidate)
        return ids

    def display_rating(self) -> str:
        if self.rating is None:
            return "N/A"
        return f"{self.rating:.1f}"

    def to_meta_preview(self) -> dict[str, object]:
        """Return the listing projection served to catalog clients."""

        meta: dict[str, object] = {
            "id": self.id,
            "type": "series",
            "name": self.name,
            "poster": self.poster,
            "description": self.description,
            "genres": list(self.genres),
            "rating": self.display_rating(),
            "providers": list(self.providers),
        }
        if self.studio:
            meta["studio"] = self.studio
        if self.year:
            meta["year"] = self.year
            meta["releaseInfo"] = str(self.year)
        if self.episodes:
            meta["episodes"] = [
                episode.model_dump(mode="json", exclude_none=True)
                for episode in self.episodes
            ]
        return meta


class AccumulationState(BaseModel):
    """Progress of one catalog view's accumulated listing."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[AggregatedRecord] = Field(default_factory=list)
    next_page_cursor: int = Field(default=1, alias="nextPage", ge=1)
    is_complete: bool = Field(default=False, alias="isComplete")
    stale_pages: int = Field(default=0, alias="stalePages", ge=0)


class CacheEntry(BaseModel):
    """On-disk representation of a cached value."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    value: Any = None
    memory_expires_at: float = Field(alias="memoryExpiresAt")
    disk_expires_at: float = Field(alias="diskExpiresAt")
    created_at: float = Field(alias="createdAt")


class BundleStats(BaseModel):
    """Summary counters stored alongside an offline bundle."""

    model_config = ConfigDict(populate_by_name=True)

    total_series: int = Field(default=0, alias="totalSeries")
    total_episodes: int = Field(default=0, alias="totalEpisodes")
    with_rating: int = Field(default=0, alias="withRating")
    duplicates_merged: int = Field(default=0, alias="duplicatesMerged")
    by_provider: dict[str, int] = Field(default_factory=dict, alias="byProvider")


class CatalogBundle(BaseModel):
    """Prebuilt catalog snapshot shipped as a seed dataset."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = 2
    build_date: datetime = Field(alias="buildDate")
    providers_meta: dict[str, dict[str, Any]] = Field(
        default_factory=dict, alias="providers"
    )
    catalog: list[AggregatedRecord] = Field(default_factory=list)
    slug_registry: dict[str, str] = Field(default_factory=dict, alias="slugRegistry")
    stats: BundleStats = Field(default_factory=BundleStats)
