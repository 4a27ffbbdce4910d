"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Iterable, Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_PROVIDER_PRIORITY: tuple[str, ...] = ("hmm", "htv", "hse")


def _split_values(value: object, *, name: str) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    if isinstance(value, Iterable):
        return [str(part).strip() for part in value]
    raise TypeError(f"{name} must be a string or iterable of strings")


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="unicat", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=7000, alias="PORT")

    provider_priority: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_PROVIDER_PRIORITY, alias="PROVIDER_PRIORITY"
    )
    primary_source: str = Field(default="hmm", alias="PRIMARY_SOURCE")
    source_urls: Annotated[dict[str, str], NoDecode] = Field(
        default_factory=dict, alias="SOURCE_URLS"
    )

    match_threshold: float = Field(
        default=0.90, alias="MATCH_THRESHOLD", ge=0.5, le=1.0
    )
    bundle_match_threshold: float | None = Field(
        default=None, alias="BUNDLE_MATCH_THRESHOLD", ge=0.5, le=1.0
    )
    min_vote_count: int = Field(default=10, alias="MIN_VOTE_COUNT", ge=0)

    catalog_cache_seconds: int = Field(
        default=1_800,
        alias="CACHE_TTL_CATALOG",
        validation_alias=AliasChoices("CACHE_TTL_CATALOG", "CACHE_TTL"),
        ge=1,
    )
    meta_cache_seconds: int = Field(default=3_600, alias="CACHE_TTL_META", ge=1)
    search_cache_seconds: int = Field(default=600, alias="CACHE_TTL_SEARCH", ge=1)
    page_cache_seconds: int = Field(default=900, alias="CACHE_TTL_PAGE", ge=1)
    disk_ttl_multiplier: int = Field(
        default=6, alias="CACHE_DISK_MULTIPLIER", ge=1, le=100
    )
    cache_max_items: int = Field(default=500, alias="CACHE_MAX_ITEMS", ge=1)
    cache_dir: Path = Field(default=Path(".cache/unicat"), alias="CACHE_DIR")

    fetch_concurrency: int = Field(default=8, alias="FETCH_CONCURRENCY", ge=1, le=64)
    per_host_concurrency: int = Field(
        default=5, alias="PER_HOST_CONCURRENCY", ge=1, le=64
    )
    refresh_concurrency: int = Field(
        default=4, alias="REFRESH_CONCURRENCY", ge=1, le=64
    )
    upstream_timeout_seconds: float = Field(
        default=10.0, alias="SCRAPER_TIMEOUT", gt=0, le=120
    )
    upstream_max_retries: int = Field(
        default=3, alias="SCRAPER_MAX_RETRIES", ge=0, le=10
    )
    upstream_retry_delay_seconds: float = Field(
        default=1.0, alias="SCRAPER_RETRY_DELAY", ge=0, le=60
    )

    catalog_page_size: int = Field(default=20, alias="CATALOG_PAGE_SIZE", ge=1, le=200)
    time_window_fetch_multiplier: int = Field(
        default=5, alias="TIME_WINDOW_FETCH_MULTIPLIER", ge=1, le=20
    )
    max_accumulation_pages: int = Field(
        default=50, alias="MAX_ACCUMULATION_PAGES", ge=1, le=1_000
    )
    accumulation_stale_pages: int = Field(
        default=5, alias="ACCUMULATION_STALE_PAGES", ge=1, le=50
    )

    broken_failure_threshold: int = Field(
        default=2, alias="BROKEN_FAILURE_THRESHOLD", ge=1, le=50
    )
    broken_ttl_seconds: int = Field(
        default=21_600, alias="BROKEN_TTL_SECONDS", ge=60
    )

    refresh_max_pages: int = Field(default=5, alias="REFRESH_MAX_PAGES", ge=1, le=50)
    refresh_consecutive_threshold: int = Field(
        default=2, alias="REFRESH_CONSECUTIVE_THRESHOLD", ge=1, le=50
    )
    refresh_full_scan_source: str | None = Field(
        default="htv", alias="REFRESH_FULL_SCAN_SOURCE"
    )
    refresh_interval_seconds: float = Field(
        default=21_600, alias="REFRESH_INTERVAL_SECONDS", ge=0
    )

    bundle_path: Path | None = Field(default=None, alias="BUNDLE_PATH")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./unicat.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("provider_priority", mode="before")
    @classmethod
    def _parse_provider_priority(cls, value: object) -> tuple[str, ...]:
        """Normalise provider priority lists from environment values."""

        if value is None:
            return DEFAULT_PROVIDER_PRIORITY
        cleaned: list[str] = []
        for entry in _split_values(value, name="PROVIDER_PRIORITY"):
            slug = entry.lower()
            if slug and slug not in cleaned:
                cleaned.append(slug)
        if not cleaned:
            return DEFAULT_PROVIDER_PRIORITY
        return tuple(cleaned)

    @field_validator("source_urls", mode="before")
    @classmethod
    def _parse_source_urls(cls, value: object) -> dict[str, str]:
        """Accept ``hmm=https://...,htv=https://...`` style mappings."""

        if value is None or value == "":
            return {}
        if isinstance(value, dict):
            return {
                str(key).strip().lower(): str(url).strip()
                for key, url in value.items()
                if str(url).strip()
            }
        mapping: dict[str, str] = {}
        for entry in _split_values(value, name="SOURCE_URLS"):
            if not entry:
                continue
            source, separator, url = entry.partition("=")
            if not separator or not source.strip() or not url.strip():
                raise ValueError("SOURCE_URLS entries must look like source=url")
            mapping[source.strip().lower()] = url.strip().rstrip("/")
        return mapping

    @field_validator("primary_source", "refresh_full_scan_source", mode="before")
    @classmethod
    def _lower_source(cls, value: object) -> object:
        if isinstance(value, str):
            cleaned = value.strip().lower()
            return cleaned or None
        return value

    @model_validator(mode="after")
    def _check_primary_source(self) -> "Settings":
        """Ensure the primary trust tier is part of the priority order."""

        if self.primary_source not in self.provider_priority:
            raise ValueError("PRIMARY_SOURCE must appear in PROVIDER_PRIORITY")
        return self

    @property
    def effective_bundle_threshold(self) -> float:
        """Return the threshold used when building offline bundles."""

        if self.bundle_match_threshold is None:
            return self.match_threshold
        return self.bundle_match_threshold

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
