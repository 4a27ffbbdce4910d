from __future__ import annotations

from datetime import datetime, timezone

from app.utils import (
    normalize_label,
    parse_timestamp,
    parse_year,
    slugify,
    source_prefix,
    strip_count_suffix,
    strip_source_prefix,
)


def test_slugify_strips_accents_and_symbols() -> None:
    assert slugify("Café  Étoile: Night!") == "cafe-etoile-night"


def test_source_prefix_helpers() -> None:
    assert source_prefix("hmm-quiet-river") == "hmm"
    assert source_prefix("Quiet River") is None
    assert strip_source_prefix("htv-quiet-river") == "quiet-river"
    assert strip_source_prefix("quiet-river", "htv") == "quiet-river"


def test_strip_count_suffix() -> None:
    assert strip_count_suffix("Action (12)") == "Action"
    assert strip_count_suffix("Slice of Life") == "Slice of Life"


def test_normalize_label_ignores_case_spaces_and_dashes() -> None:
    assert normalize_label("Slice-of Life") == normalize_label("slice of life")


def test_parse_timestamp_accepts_epoch_and_iso() -> None:
    expected = datetime(2024, 3, 1, tzinfo=timezone.utc)

    assert parse_timestamp(expected.timestamp()) == expected
    assert parse_timestamp(int(expected.timestamp() * 1000)) == expected
    assert parse_timestamp("2024-03-01T00:00:00Z") == expected
    assert parse_timestamp("not a date") is None


def test_parse_year_extracts_four_digits() -> None:
    assert parse_year("Released 2019-04") == 2019
    assert parse_year(1850) is None
    assert parse_year(None) is None
