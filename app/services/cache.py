"""Memory plus disk cache with stale-while-revalidate semantics."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from ..models import CacheEntry
from .background import BackgroundRefresher

logger = logging.getLogger(__name__)

Producer = Callable[[], Awaitable[Any]]


class CacheIOError(Exception):
    """Raised internally when a disk cache entry cannot be read or written."""


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    disk_hits: int = 0
    misses: int = 0
    stale_served: int = 0
    refreshes: int = 0
    io_errors: int = 0


class TwoTierCache:
    """Bounded in-memory LRU backed by one JSON file per key on disk.

    Disk entries outlive their memory TTL by ``disk_multiplier`` so that an
    expired value can still be served while a background refresh runs.
    """

    def __init__(
        self,
        directory: Path | str | None,
        *,
        disk_multiplier: int = 6,
        max_items: int = 500,
        refresher: BackgroundRefresher | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if disk_multiplier < 1:
            raise ValueError("disk_multiplier must be at least 1")
        self._directory = Path(directory) if directory is not None else None
        self._disk_multiplier = disk_multiplier
        self._max_items = max_items
        self._refresher = refresher or BackgroundRefresher()
        self._clock = clock
        self._memory: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._inflight: dict[str, asyncio.Task[Any]] = {}
        self._bulk_mode = False
        self.stats = CacheStats()

    @staticmethod
    def key(namespace: str, *parts: object) -> str:
        """Build a namespaced key such as ``meta:hmm-title``."""

        return ":".join([namespace, *(str(part) for part in parts)])

    @property
    def disk_enabled(self) -> bool:
        return self._directory is not None and not self._bulk_mode

    @property
    def bulk_mode(self) -> bool:
        return self._bulk_mode

    def enable_bulk_mode(self) -> None:
        """Stop using the disk tier once a full dataset is held in memory."""

        if not self._bulk_mode:
            logger.info("Cache bulk mode enabled; disk tier disabled")
        self._bulk_mode = True

    async def get(self, key: str) -> Any | None:
        """Return a fresh value from memory or disk, or ``None``."""

        value = self._memory_get(key)
        if value is not None:
            self.stats.hits += 1
            return value
        entry = await self._read_disk(key)
        if entry is not None and entry.memory_expires_at > self._clock():
            self.stats.disk_hits += 1
            self._memory_put(key, entry.value, entry.memory_expires_at)
            return entry.value
        self.stats.misses += 1
        return None

    async def set(self, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` in both tiers; the disk copy lives longer."""

        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = self._clock()
        memory_expires_at = now + ttl
        self._memory_put(key, value, memory_expires_at)
        if not self.disk_enabled:
            return
        entry = CacheEntry(
            key=key,
            value=value,
            memory_expires_at=memory_expires_at,
            disk_expires_at=now + ttl * self._disk_multiplier,
            created_at=now,
        )
        await self._write_disk(entry)

    async def delete(self, key: str) -> None:
        self._memory.pop(key, None)
        if self._directory is None:
            return
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            self.stats.io_errors += 1
            logger.warning("Failed to delete cache file for %s: %s", key, exc)

    async def delete_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix`` from both tiers."""

        keys = {key for key in self._memory if key.startswith(prefix)}
        if self._directory is not None:
            try:
                keys.update(
                    await asyncio.to_thread(self._scan_keys, self._directory, prefix)
                )
            except OSError as exc:
                self.stats.io_errors += 1
                logger.warning("Failed to scan cache directory for %s: %s", prefix, exc)
        for key in keys:
            await self.delete(key)
        return len(keys)

    def clear_memory(self) -> None:
        self._memory.clear()

    async def wrap(self, key: str, ttl: float, producer: Producer) -> Any:
        """Return the cached value for ``key``, producing it when necessary.

        Expired disk entries that are still within their retention window are
        returned immediately while a single background refresh is scheduled.
        Producer errors only propagate when no cached value exists at all.
        """

        value = self._memory_get(key)
        if value is not None:
            self.stats.hits += 1
            return value

        entry = await self._read_disk(key)
        if entry is not None:
            if entry.memory_expires_at > self._clock():
                self.stats.disk_hits += 1
                self._memory_put(key, entry.value, entry.memory_expires_at)
                return entry.value
            self.stats.stale_served += 1
            self._schedule_refresh(key, ttl, producer)
            return entry.value

        self.stats.misses += 1
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._produce(key, ttl, producer))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def is_refreshing(self, key: str) -> bool:
        return self._refresher.is_running(self._refresh_key(key))

    def snapshot(self) -> dict[str, Any]:
        """Return counters for diagnostics endpoints."""

        return {
            **asdict(self.stats),
            "memory_items": len(self._memory),
            "bulk_mode": self._bulk_mode,
            "disk_enabled": self.disk_enabled,
            "pending_refreshes": self._refresher.pending,
        }

    async def _produce(self, key: str, ttl: float, producer: Producer) -> Any:
        value = await producer()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    @staticmethod
    def _refresh_key(key: str) -> str:
        return f"cache:{key}"

    def _schedule_refresh(self, key: str, ttl: float, producer: Producer) -> None:
        async def _refresh() -> None:
            value = await producer()
            if value is not None:
                await self.set(key, value, ttl)
            self.stats.refreshes += 1

        if self._refresher.submit(self._refresh_key(key), _refresh):
            logger.debug("Serving stale value for %s while refreshing", key)

    def _memory_get(self, key: str) -> Any | None:
        item = self._memory.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at <= self._clock():
            del self._memory[key]
            return None
        self._memory.move_to_end(key)
        return value

    def _memory_put(self, key: str, value: Any, expires_at: float) -> None:
        self._memory[key] = (expires_at, value)
        self._memory.move_to_end(key)
        while len(self._memory) > self._max_items:
            self._memory.popitem(last=False)

    def _path(self, key: str) -> Path:
        if self._directory is None:
            raise RuntimeError("cache has no disk directory configured")
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._directory / f"{digest}.json"

    async def _read_disk(self, key: str) -> CacheEntry | None:
        if not self.disk_enabled:
            return None
        path = self._path(key)
        try:
            entry = await asyncio.to_thread(self._read_file, path)
        except CacheIOError as exc:
            self.stats.io_errors += 1
            logger.warning("Ignoring unreadable cache entry for %s: %s", key, exc)
            return None
        if entry is None or entry.key != key:
            return None
        if entry.disk_expires_at <= self._clock():
            await self.delete(key)
            return None
        return entry

    async def _write_disk(self, entry: CacheEntry) -> None:
        path = self._path(entry.key)
        payload = entry.model_dump(mode="json", by_alias=True)
        try:
            await asyncio.to_thread(self._write_file, path, payload)
        except CacheIOError as exc:
            self.stats.io_errors += 1
            logger.warning("Failed to persist cache entry for %s: %s", entry.key, exc)

    @staticmethod
    def _read_file(path: Path) -> CacheEntry | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheIOError(str(exc)) from exc
        try:
            return CacheEntry.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            raise CacheIOError(f"corrupt cache file {path.name}") from exc

    @staticmethod
    def _write_file(path: Path, payload: dict[str, Any]) -> None:
        temp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(payload), encoding="utf-8")
            os.replace(temp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            raise CacheIOError(str(exc)) from exc

    @classmethod
    def _scan_keys(cls, directory: Path, prefix: str) -> list[str]:
        if not directory.is_dir():
            return []
        keys: list[str] = []
        for path in directory.glob("*.json"):
            try:
                entry = cls._read_file(path)
            except CacheIOError:
                continue
            if entry is not None and entry.key.startswith(prefix):
                keys.append(entry.key)
        return keys
