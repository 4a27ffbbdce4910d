"""Utility helpers for the unicat service."""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any


SOURCE_PREFIX_RE = re.compile(r"^([a-z0-9]+)-")
COUNT_SUFFIX_RE = re.compile(r"\s*\(\d+\)\s*$")


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower()


def source_prefix(record_id: str) -> str | None:
    """Return the source prefix encoded in an id like ``hmm-some-title``."""

    match = SOURCE_PREFIX_RE.match(record_id or "")
    if not match:
        return None
    return match.group(1)


def strip_source_prefix(record_id: str, source: str | None = None) -> str:
    """Return the id without its ``<source>-`` prefix."""

    prefix = source or source_prefix(record_id)
    if prefix and record_id.startswith(f"{prefix}-"):
        return record_id[len(prefix) + 1 :]
    return record_id


def strip_count_suffix(value: str) -> str:
    """Drop a trailing ``" (12)"`` item count from a filter option label."""

    return COUNT_SUFFIX_RE.sub("", value or "").strip()


def normalize_label(value: str) -> str:
    """Lowercase a genre or studio label and drop spaces and dashes."""

    return re.sub(r"[\s\-]+", "", (value or "").lower())


def parse_timestamp(value: Any) -> datetime | None:
    """Parse epoch seconds/milliseconds or ISO strings into aware datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_timestamp(int(text))
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parse_timestamp(parsed)
    return None


def parse_year(value: Any) -> int | None:
    """Extract a four digit year from loosely formatted values."""

    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 1900 <= value <= 2100 else None
    match = re.search(r"(19|20)\d{2}", str(value))
    if not match:
        return None
    return int(match.group(0))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
