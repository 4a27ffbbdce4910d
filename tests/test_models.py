from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.models import AggregatedRecord, CacheEntry, SourceRecord


def test_source_record_derives_source_from_id_prefix() -> None:
    record = SourceRecord.model_validate(
        {"id": "hse-amber-lantern", "name": "  Amber   Lantern ", "poster": None}
    )
    explicit = SourceRecord.model_validate(
        {"id": "amber-lantern", "source": "HSE", "name": "Amber Lantern"}
    )

    assert record.source == "hse"
    assert explicit.source == "hse"
    assert explicit.slug == "amber-lantern"
    assert record.name == "Amber Lantern"
    assert record.poster == ""
    assert record.is_servable() is False


def test_source_record_parses_loose_fields() -> None:
    record = SourceRecord.model_validate(
        {
            "id": "hmm-amber-lantern",
            "name": "Amber Lantern",
            "genres": "Drama, Comedy,Drama",
            "studio": " ",
            "year": "2021-05-01",
            "rating": "NaN",
            "viewCount": "12,345",
            "lastUpdated": 1_700_000_000_000,
            "episodes": [{"episode": 1, "id": "hmm-amber-lantern-episode-1"}],
        }
    )

    assert record.genres == ["Drama", "Comedy"]
    assert record.studio is None
    assert record.year == 2021
    assert record.rating is None
    assert record.view_count == 12_345
    assert record.last_updated is not None
    assert record.episodes[0].number == 1
    assert record.slug == "amber-lantern"


def test_source_record_requires_name_and_source() -> None:
    with pytest.raises(ValidationError):
        SourceRecord.model_validate({"id": "hmm-x", "name": "   "})
    with pytest.raises(ValidationError):
        SourceRecord.model_validate({"id": "no_prefix", "name": "Untagged"})


def test_aggregated_record_enforces_invariants() -> None:
    base = {"id": "hmm-amber-lantern", "name": "Amber Lantern", "providers": ["hmm"]}

    with pytest.raises(ValidationError):
        AggregatedRecord.model_validate({**base, "providers": []})
    with pytest.raises(ValidationError):
        AggregatedRecord.model_validate(
            {**base, "ratingBreakdown": {"htv": {"raw": 1.0, "type": "direct"}}}
        )
    with pytest.raises(ValidationError):
        AggregatedRecord.model_validate({**base, "rating": 7.0})


def test_meta_preview_projection() -> None:
    record = AggregatedRecord.model_validate(
        {
            "id": "hmm-amber-lantern",
            "name": "Amber Lantern",
            "poster": "https://img.example.com/a.jpg",
            "year": 2020,
            "providers": ["hmm", "htv"],
            "providerSlugs": {"hmm": "amber-lantern", "htv": "amber-lantern-ova"},
        }
    )

    preview = record.to_meta_preview()

    assert preview["rating"] == "N/A"
    assert preview["releaseInfo"] == "2020"
    assert "studio" not in preview
    assert record.provider_ids() == ["hmm-amber-lantern", "htv-amber-lantern-ova"]


def test_cache_entry_uses_camel_case_keys() -> None:
    entry = CacheEntry(
        key="k", value=[1], memory_expires_at=1.0, disk_expires_at=6.0, created_at=0.0
    )

    dumped = entry.model_dump(by_alias=True)

    assert dumped["memoryExpiresAt"] == 1.0
    assert CacheEntry.model_validate(dumped) == entry
