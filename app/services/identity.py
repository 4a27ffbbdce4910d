"""Identity resolution for near-duplicate titles across sources."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Protocol, Sequence

from rapidfuzz.distance import Levenshtein

DEFAULT_THRESHOLD = 0.90
MAX_LENGTH_DELTA = 0.4

_DISALLOWED_RE = re.compile(r"[^\w\s-]|_")
_WHITESPACE_RE = re.compile(r"\s+")
_LEADING_ARTICLE_RE = re.compile(r"^(?:the|a|an)\s+")
_TRAILING_TOKEN_RE = re.compile(
    r"\s*\b(?:episode|ep|series|season|ova|the animation|animation)(?:\s*\d+)?$"
)


class Named(Protocol):
    name: str


@lru_cache(maxsize=16_384)
def normalize_name(name: str) -> str:
    """Reduce a title to the form used for identity comparisons."""

    value = (name or "").lower().strip()
    value = _DISALLOWED_RE.sub("", value)
    value = _WHITESPACE_RE.sub(" ", value).strip()
    value = _LEADING_ARTICLE_RE.sub("", value)
    value = _TRAILING_TOKEN_RE.sub("", value)
    return value.strip()


def levenshtein_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def _normalized_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein_distance(a, b)) / longest


def similarity(a: str, b: str) -> float:
    """Return the edit-distance similarity of two titles in ``[0, 1]``."""

    return _normalized_similarity(normalize_name(a), normalize_name(b))


def _title(value: str | Named) -> str:
    if isinstance(value, str):
        return value
    return value.name


def is_duplicate(
    a: str | Named, b: str | Named, threshold: float = DEFAULT_THRESHOLD
) -> bool:
    """Return whether two titles (or records) denote the same series."""

    left = normalize_name(_title(a))
    right = normalize_name(_title(b))
    if left == right:
        return True
    longest = max(len(left), len(right))
    if abs(len(left) - len(right)) > longest * MAX_LENGTH_DELTA:
        return False
    return _normalized_similarity(left, right) >= threshold


class IdentityResolver:
    """Threshold-bound duplicate detection over candidate lists."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD) -> None:
        if not 0.0 < threshold <= 1.0:
            raise ValueError("threshold must be within (0, 1]")
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    def is_duplicate(self, a: str | Named, b: str | Named) -> bool:
        return is_duplicate(a, b, self._threshold)

    def find_match(
        self, record: str | Named, candidates: Sequence[str | Named]
    ) -> int | None:
        """Return the index of the first candidate matching ``record``."""

        target = normalize_name(_title(record))
        for index, candidate in enumerate(candidates):
            if normalize_name(_title(candidate)) == target:
                return index
        for index, candidate in enumerate(candidates):
            if is_duplicate(record, candidate, self._threshold):
                return index
        return None
