"""Promotional text detection and description quality scoring."""

from __future__ import annotations

import re
from typing import Iterable, Mapping

from ..models import NO_DESCRIPTION

MIN_DESCRIPTION_LENGTH = 30
MAX_DESCRIPTION_LENGTH = 500
ELLIPSIS = "..."

PROMOTIONAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^watch\s+.+?\s+on\s+\S+\.(?:com|tv|net|org)",
        r"^watch\s+.+?\s+subbed\s+for\s+free",
        r"^watch\s+.+?\s+online\s+for\s+free",
        r"^(?:watch|stream)\s+.+?\s+episode\s+\d+",
        r"in\s+best\s+hd\s+quality\s+and\s+fast\s+servers",
        r"thousands\s+of\s+(?:\w+\s+)?videos",
        r"stream\s+and\s+download\s+.+?\s+in\s+hd",
        r"watch\s+online\s+.+?\s+in\s+hd",
        r"watch\s+all\s+\d+\s+episodes?\s+in\s+hd\s+quality",
        r"^.+?\s+episode\s+\d+\s+is:\s*$",
        r"(?:download|watch|stream)\s+for\s+free",
        r"best\s+quality\s+streaming",
        r"streaming\s+in\s+hd",
        r"subbed\s+and\s+dubbed",
        r"click\s+here\s+to\s+watch",
        r"subscribe\s+to\s+our",
        r"join\s+our\s+discord",
        r"support\s+us\s+on\s+patreon",
    )
)

PROMOTIONAL_KEYWORDS: tuple[str, ...] = (
    "watch online",
    "stream free",
    "hd quality",
    "for free",
    "fast servers",
    "subbed",
)
PROMOTIONAL_KEYWORD_SPAN = 150

PLOT_WORDS: tuple[str, ...] = (
    "story",
    "protagonist",
    "main character",
    "discovers",
    "finds",
    "becomes",
    "must",
    "journey",
    "adventure",
    "relationship",
)
PROMO_VOCABULARY: tuple[str, ...] = ("watch", "stream", "download", "free", "hd", "subbed")

EPISODE_PREFIX_RE = re.compile(r"^.+?\s+episode\s+\d+\s+is:\s*", re.IGNORECASE)
URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
WHITESPACE_RE = re.compile(r"\s+")
CAPITALISED_NAME_RE = re.compile(r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?")


def is_promotional(text: str | None) -> bool:
    """Return ``True`` when the text is boilerplate rather than a synopsis."""

    if not text:
        return True
    trimmed = text.strip()
    if len(trimmed) < MIN_DESCRIPTION_LENGTH:
        return True
    if any(pattern.search(trimmed) for pattern in PROMOTIONAL_PATTERNS):
        return True
    lowered = trimmed.lower()
    hits = sum(1 for keyword in PROMOTIONAL_KEYWORDS if keyword in lowered)
    return hits >= 2 and len(trimmed) < PROMOTIONAL_KEYWORD_SPAN


def _truncate(text: str) -> str:
    if len(text) <= MAX_DESCRIPTION_LENGTH:
        return text
    limit = MAX_DESCRIPTION_LENGTH - len(ELLIPSIS)
    cut = text[:limit]
    last_space = cut.rfind(" ")
    if last_space > limit - 50:
        cut = cut[:last_space]
    return cut.rstrip() + ELLIPSIS


def clean_description(text: str | None) -> str:
    """Strip boilerplate from a description, or return the sentinel."""

    if not text:
        return NO_DESCRIPTION
    cleaned = EPISODE_PREFIX_RE.sub("", text.strip())
    cleaned = URL_RE.sub("", cleaned)
    cleaned = WHITESPACE_RE.sub(" ", cleaned).strip()
    if not cleaned or is_promotional(cleaned):
        return NO_DESCRIPTION
    return _truncate(cleaned)


def score_description(text: str | None) -> int:
    """Score a description between 0 and 100; promotional text scores 0."""

    if not text:
        return 0
    cleaned = text.strip()
    if is_promotional(cleaned):
        return 0

    score = 0
    length = len(cleaned)
    if length >= 100:
        score += 20
    if length >= 200:
        score += 10
    if length >= 300:
        score += 10
    if length < 50:
        score -= 10
    if cleaned[0].isupper():
        score += 5
    if CAPITALISED_NAME_RE.search(cleaned):
        score += 15
    lowered = cleaned.lower()
    if any(word in lowered for word in PLOT_WORDS):
        score += 20
    if not any(word in lowered for word in PROMO_VOCABULARY):
        score += 10
    return max(0, min(100, score))


def select_best(candidates: Mapping[str, str | None], priority: Iterable[str]) -> str:
    """Pick the description to keep from per-source candidates.

    The first source in ``priority`` with a positive score wins; sources
    outside the priority order are only considered by the highest-score
    fallback.
    """

    for source in priority:
        text = candidates.get(source)
        if text and score_description(text) > 0:
            return clean_description(text)

    best_text: str | None = None
    best_score = 0
    for text in candidates.values():
        score = score_description(text)
        if score > best_score:
            best_text, best_score = text, score
    if best_text is None:
        return NO_DESCRIPTION
    return clean_description(best_text)
