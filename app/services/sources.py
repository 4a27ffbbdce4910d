"""Upstream source adapters and the HTTP client for scraper workers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Final, Iterable, Literal, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from ..models import SourceRecord
from ..utils import slugify
from .ratings import trending_score_from_rank

logger = logging.getLogger(__name__)

SortHint = Literal["popular", "recent", "rating", "alphabetical"]


class _NotSupported:
    """Marker returned when a source cannot serve a filtered listing."""

    def __repr__(self) -> str:
        return "NOT_SUPPORTED"


NOT_SUPPORTED: Final = _NotSupported()


class _Unsupported(Exception):
    """Internal signal for endpoints a worker does not implement."""


class UpstreamFetchError(Exception):
    """A source request failed after exhausting its retry budget."""

    def __init__(
        self, source: str, message: str, *, status_code: int | None = None
    ) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code

    @property
    def is_server_fault(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


@runtime_checkable
class SourceAdapter(Protocol):
    """Contract every upstream source collaborator fulfils."""

    source: str

    async def get_catalog(
        self, page: int, genre: str | None = None, sort_hint: SortHint = "popular"
    ) -> list[SourceRecord]: ...

    async def get_metadata(self, record_id: str) -> SourceRecord | None: ...

    async def search(self, query: str) -> list[SourceRecord]: ...

    async def get_catalog_by_year(
        self, year: int, page: int
    ) -> list[SourceRecord] | _NotSupported: ...

    async def get_catalog_by_studio(
        self, studio: str, page: int
    ) -> list[SourceRecord] | _NotSupported: ...


def parse_record(payload: Any, source: str) -> SourceRecord | None:
    """Validate one raw listing, returning ``None`` when it is malformed."""

    if not isinstance(payload, dict):
        return None
    data = dict(payload)
    data.setdefault("source", source)
    if not data.get("id") and isinstance(data.get("name"), str):
        slug = slugify(data["name"])
        if slug:
            data["id"] = f"{source}-{slug}"
    rank = data.pop("trendingRank", None)
    if isinstance(rank, int) and data.get("rating") is None:
        data["rating"] = trending_score_from_rank(rank)
        data["ratingType"] = "trending"
    try:
        return SourceRecord.model_validate(data)
    except ValidationError as exc:
        logger.debug(
            "Dropping malformed %s record %s: %s",
            source,
            data.get("id"),
            exc.errors(include_url=False),
        )
        return None


def parse_records(payload: Any, source: str) -> list[SourceRecord]:
    """Validate a listing payload (a list or ``{"items": [...]}``)."""

    if isinstance(payload, dict):
        payload = payload.get("items") or payload.get("metas") or []
    if not isinstance(payload, list):
        return []
    records: list[SourceRecord] = []
    for entry in payload:
        record = parse_record(entry, source)
        if record is not None:
            records.append(record)
    return records


class JsonSourceClient:
    """Client for a scraper worker that exposes listings as JSON."""

    def __init__(
        self,
        source: str,
        http_client: httpx.AsyncClient,
        *,
        base_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_concurrency: int = 5,
    ) -> None:
        self.source = source
        self._client = http_client
        self._base_url = (base_url or "").rstrip("/")
        self._max_retries = max(0, max_retries)
        self._retry_delay = retry_delay
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def get_catalog(
        self, page: int, genre: str | None = None, sort_hint: SortHint = "popular"
    ) -> list[SourceRecord]:
        params: dict[str, Any] = {"page": page, "sort": sort_hint}
        if genre:
            params["genre"] = genre
        payload = await self._get_json("/catalog", params=params)
        return parse_records(payload, self.source)

    async def get_metadata(self, record_id: str) -> SourceRecord | None:
        try:
            payload = await self._get_json(
                f"/meta/{quote(record_id, safe='')}", unsupported_statuses=(404,)
            )
        except _Unsupported:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("meta"), dict):
            payload = payload["meta"]
        return parse_record(payload, self.source)

    async def search(self, query: str) -> list[SourceRecord]:
        cleaned = (query or "").strip()
        if not cleaned:
            return []
        payload = await self._get_json("/search", params={"q": cleaned})
        return parse_records(payload, self.source)

    async def get_catalog_by_year(
        self, year: int, page: int
    ) -> list[SourceRecord] | _NotSupported:
        return await self._get_optional(f"/catalog/year/{year}", page)

    async def get_catalog_by_studio(
        self, studio: str, page: int
    ) -> list[SourceRecord] | _NotSupported:
        return await self._get_optional(
            f"/catalog/studio/{quote(studio, safe='')}", page
        )

    async def _get_optional(
        self, path: str, page: int
    ) -> list[SourceRecord] | _NotSupported:
        try:
            payload = await self._get_json(
                path, params={"page": page}, unsupported_statuses=(404, 501)
            )
        except _Unsupported:
            return NOT_SUPPORTED
        return parse_records(payload, self.source)

    async def _get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        unsupported_statuses: Iterable[int] = (),
    ) -> Any:
        url = f"{self._base_url}{path}"
        unsupported = set(unsupported_statuses)
        attempts = self._max_retries + 1
        last_error = UpstreamFetchError(self.source, f"no response for {path}")
        for attempt in range(1, attempts + 1):
            try:
                async with self._semaphore:
                    response = await self._client.get(url, params=params)
                if response.status_code in unsupported:
                    raise _Unsupported()
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                last_error = UpstreamFetchError(
                    self.source, f"HTTP {status} for {path}", status_code=status
                )
                if 400 <= status < 500 and status not in {408, 429}:
                    break
            except httpx.HTTPError as exc:
                last_error = UpstreamFetchError(self.source, f"{exc!r} for {path}")
            except ValueError as exc:
                last_error = UpstreamFetchError(self.source, f"invalid JSON for {path}")
                logger.debug("Invalid JSON from %s: %s", self.source, exc)
                break
            if attempt < attempts:
                logger.warning(
                    "Request to %s failed (attempt %s/%s): %s",
                    self.source,
                    attempt,
                    attempts,
                    last_error,
                )
                await asyncio.sleep(self._retry_delay)
        raise last_error
