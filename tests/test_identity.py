from __future__ import annotations

import pytest

from app.services.identity import (
    IdentityResolver,
    is_duplicate,
    levenshtein_distance,
    normalize_name,
    similarity,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("  The Silver Harbor ", "silver harbor"),
        ("Silver Harbor: Episode 3", "silver harbor"),
        ("Silver Harbor OVA", "silver harbor"),
        ("An Evening Tide Season 2", "evening tide"),
        ("Glass_Garden!!", "glassgarden"),
        ("Night   Market  The Animation", "night market"),
    ],
)
def test_normalize_name(raw: str, expected: str) -> None:
    assert normalize_name(raw) == expected


def test_equal_normal_forms_are_duplicates() -> None:
    pairs = [
        ("The Silver Harbor", "silver harbor"),
        ("Silver Harbor Episode 1", "SILVER HARBOR"),
        ("Glass Garden!", "glass garden"),
    ]
    for left, right in pairs:
        assert normalize_name(left) == normalize_name(right)
        assert is_duplicate(left, right)
        assert is_duplicate(left, right, threshold=1.0)


def test_similarity_of_identical_titles_is_one() -> None:
    for title in ("Silver Harbor", "x", "Glass Garden 2"):
        assert similarity(title, title) == 1.0


def test_hyphenated_slug_matches_title() -> None:
    assert levenshtein_distance("silver harbor", "silver-harbor") == 1
    assert is_duplicate("Silver Harbor", "silver-harbor")


def test_length_gap_short_circuits() -> None:
    assert not is_duplicate("Harbor", "Harbor Lights Over the Silver Bay")


def test_threshold_controls_fuzzy_matches() -> None:
    strict = IdentityResolver(0.95)
    lenient = IdentityResolver(0.85)

    assert not strict.is_duplicate("Glass Gardens", "Glass Garden")
    assert lenient.is_duplicate("Glass Gardens", "Glass Garden")


def test_resolver_rejects_invalid_threshold() -> None:
    with pytest.raises(ValueError):
        IdentityResolver(0)


def test_find_match_prefers_exact_normal_form() -> None:
    resolver = IdentityResolver(0.85)
    candidates = ["Glass Gardens", "Silver Harbor", "Glass Garden"]

    assert resolver.find_match("The Glass Garden", candidates) == 2
    assert resolver.find_match("Copper Field", candidates) is None
