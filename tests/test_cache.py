"""Two-tier cache behaviour tests."""

from __future__ import annotations

import asyncio
import hashlib
import json

import pytest

from app.services.background import BackgroundRefresher
from app.services.cache import TwoTierCache


class Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cache_file(directory, key: str):
    return directory / f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"


def test_set_writes_both_tiers_with_disk_multiplier(tmp_path) -> None:
    """The disk copy should outlive the memory copy by the multiplier."""

    clock = Clock()
    cache = TwoTierCache(tmp_path, disk_multiplier=6, clock=clock)

    async def runner() -> None:
        await cache.set("catalog:top-rated:all:accumulated", {"items": []}, 10)
        payload = json.loads(
            _cache_file(tmp_path, "catalog:top-rated:all:accumulated").read_text()
        )
        assert payload["memoryExpiresAt"] == pytest.approx(1_010.0)
        assert payload["diskExpiresAt"] == pytest.approx(1_060.0)
        assert payload["createdAt"] == pytest.approx(1_000.0)

        cache.clear_memory()
        assert await cache.get("catalog:top-rated:all:accumulated") == {"items": []}
        assert cache.stats.disk_hits == 1

        clock.now = 1_020.0
        cache.clear_memory()
        assert await cache.get("catalog:top-rated:all:accumulated") is None

    asyncio.run(runner())


def test_set_rejects_non_positive_ttl(tmp_path) -> None:
    cache = TwoTierCache(tmp_path)

    with pytest.raises(ValueError):
        asyncio.run(cache.set("k", 1, 0))


def test_cold_wrap_invokes_producer_once() -> None:
    """Concurrent cold lookups share one producer call."""

    cache = TwoTierCache(None)
    calls = 0

    async def producer() -> list[str]:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return ["value"]

    async def runner() -> None:
        results = await asyncio.gather(
            *(cache.wrap("search:river", 60, producer) for _ in range(5))
        )
        assert results == [["value"]] * 5
        assert await cache.wrap("search:river", 60, producer) == ["value"]

    asyncio.run(runner())
    assert calls == 1


def test_cold_wrap_propagates_producer_errors(tmp_path) -> None:
    cache = TwoTierCache(tmp_path)

    async def producer() -> None:
        raise RuntimeError("upstream down")

    with pytest.raises(RuntimeError, match="upstream down"):
        asyncio.run(cache.wrap("meta:hmm-x", 60, producer))


def test_wrap_does_not_store_none(tmp_path) -> None:
    cache = TwoTierCache(tmp_path)
    calls = 0

    async def producer() -> None:
        nonlocal calls
        calls += 1
        return None

    async def runner() -> None:
        assert await cache.wrap("meta:missing", 60, producer) is None
        assert await cache.wrap("meta:missing", 60, producer) is None

    asyncio.run(runner())
    assert calls == 2
    assert list(tmp_path.iterdir()) == []


def test_stale_entry_served_with_single_background_refresh(tmp_path) -> None:
    """Expired entries inside the disk window are served while one refresh runs."""

    clock = Clock()
    refresher = BackgroundRefresher()
    cache = TwoTierCache(tmp_path, disk_multiplier=6, refresher=refresher, clock=clock)
    calls = 0

    async def runner() -> None:
        nonlocal calls
        release = asyncio.Event()

        async def producer() -> str:
            nonlocal calls
            calls += 1
            await release.wait()
            return "fresh"

        await cache.set("meta:hmm-quiet-river", "stale", 10)
        cache.clear_memory()
        clock.now += 30

        first, second = await asyncio.gather(
            cache.wrap("meta:hmm-quiet-river", 10, producer),
            cache.wrap("meta:hmm-quiet-river", 10, producer),
        )
        assert first == second == "stale"
        assert cache.is_refreshing("meta:hmm-quiet-river")

        release.set()
        await refresher.join()
        assert await cache.get("meta:hmm-quiet-river") == "fresh"

    asyncio.run(runner())
    assert calls == 1
    assert cache.stats.stale_served == 2
    assert cache.stats.refreshes == 1


def test_failed_refresh_keeps_stale_value(tmp_path) -> None:
    clock = Clock()
    refresher = BackgroundRefresher()
    cache = TwoTierCache(tmp_path, refresher=refresher, clock=clock)

    async def producer() -> str:
        raise RuntimeError("still down")

    async def runner() -> None:
        await cache.set("page:hmm:1", ["a"], 10)
        cache.clear_memory()
        clock.now += 20
        assert await cache.wrap("page:hmm:1", 10, producer) == ["a"]
        await refresher.join()
        assert refresher.failed == 1
        assert await cache.wrap("page:hmm:1", 10, producer) == ["a"]
        await refresher.join()

    asyncio.run(runner())
    assert refresher.failed == 2


def test_entries_past_disk_retention_are_removed(tmp_path) -> None:
    clock = Clock()
    cache = TwoTierCache(tmp_path, disk_multiplier=2, clock=clock)

    async def producer() -> str:
        return "new"

    async def runner() -> None:
        await cache.set("k", "old", 10)
        cache.clear_memory()
        clock.now += 25
        assert await cache.wrap("k", 10, producer) == "new"

    asyncio.run(runner())
    payload = json.loads(_cache_file(tmp_path, "k").read_text())
    assert payload["value"] == "new"


def test_corrupt_disk_entry_is_a_miss(tmp_path) -> None:
    cache = TwoTierCache(tmp_path)
    _cache_file(tmp_path, "k").write_text("{not json", encoding="utf-8")

    assert asyncio.run(cache.get("k")) is None
    assert cache.stats.io_errors == 1


def test_bulk_mode_disables_disk_tier(tmp_path) -> None:
    cache = TwoTierCache(tmp_path)
    cache.enable_bulk_mode()

    async def runner() -> None:
        await cache.set("k", "v", 10)
        assert await cache.get("k") == "v"

    asyncio.run(runner())
    assert list(tmp_path.iterdir()) == []
    assert cache.snapshot()["disk_enabled"] is False


def test_memory_tier_is_bounded() -> None:
    cache = TwoTierCache(None, max_items=2)

    async def runner() -> None:
        for key in ("a", "b", "c"):
            await cache.set(key, key, 10)
        assert await cache.get("a") is None
        assert await cache.get("c") == "c"

    asyncio.run(runner())
    assert cache.snapshot()["memory_items"] == 2


def test_delete_prefix_clears_both_tiers(tmp_path) -> None:
    cache = TwoTierCache(tmp_path, clock=Clock())

    async def runner() -> int:
        await cache.set("catalog:all:all:accumulated", {"items": []}, 10)
        await cache.set("catalog:recent:this-week:accumulated", {"items": []}, 10)
        await cache.set("meta:hmm-quiet-river", {"id": "hmm-quiet-river"}, 10)
        cache.clear_memory()
        await cache.set("catalog:featured:all:accumulated", {"items": []}, 10)
        return await cache.delete_prefix("catalog:")

    removed = asyncio.run(runner())

    assert removed == 3
    assert not _cache_file(tmp_path, "catalog:all:all:accumulated").exists()
    assert not _cache_file(tmp_path, "catalog:featured:all:accumulated").exists()
    assert _cache_file(tmp_path, "meta:hmm-quiet-river").exists()
    assert asyncio.run(cache.get("meta:hmm-quiet-river")) == {"id": "hmm-quiet-river"}


def test_memory_only_cache_never_touches_disk_paths() -> None:
    cache = TwoTierCache(None)

    async def runner() -> int:
        await cache.set("catalog:all:all:accumulated", {"items": []}, 10)
        await cache.delete("meta:missing")
        return await cache.delete_prefix("catalog:")

    assert asyncio.run(runner()) == 1
    with pytest.raises(RuntimeError):
        cache._path("meta:missing")
