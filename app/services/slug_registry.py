"""Registry of real episode slugs discovered while fetching metadata."""

from __future__ import annotations

import logging
import re
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import SlugRecord
from ..models import SourceRecord
from ..utils import strip_source_prefix

logger = logging.getLogger(__name__)

_ANIMATION_SUFFIX_RE = re.compile(r"-the-animation$")
_EPISODE_SUFFIX_RE = re.compile(r"-episode-\d+$")


def normalize_series_slug(series_slug: str, source: str) -> str:
    value = (series_slug or "").strip().lower()
    value = strip_source_prefix(value, source)
    value = _ANIMATION_SUFFIX_RE.sub("", value)
    value = _EPISODE_SUFFIX_RE.sub("", value)
    return value


def registry_key(source: str, series_slug: str, episode: int | str) -> str:
    return f"{source}:{normalize_series_slug(series_slug, source)}:{episode}"


class SlugRegistry:
    """Maps ``(source, series, episode)`` to the slug the source really uses.

    Only slugs that differ from the guessable ``<series>-episode-<n>`` form are
    stored. Once seeded from a bundle the registry stops writing to the
    database.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory
        self._slugs: dict[str, str] = {}
        self._dirty: set[str] = set()
        self._bundle_mode = False
        self.hits = 0
        self.misses = 0
        self.stores = 0

    def __len__(self) -> int:
        return len(self._slugs)

    @property
    def bundle_mode(self) -> bool:
        return self._bundle_mode

    def register(
        self, source: str, series_slug: str, episode: int | str, slug: str
    ) -> bool:
        if not (source and series_slug and slug) or episode in (None, ""):
            return False
        guessed = f"{series_slug}-episode-{episode}"
        if slug == guessed:
            return False
        key = registry_key(source, series_slug, episode)
        if self._slugs.get(key) == slug:
            return False
        self._slugs[key] = slug
        self._dirty.add(key)
        self.stores += 1
        logger.debug("Registered slug %s -> %s", key, slug)
        return True

    def register_episodes(self, record: SourceRecord) -> int:
        """Store the episode slugs carried by one source's metadata record."""

        stored = 0
        for episode in record.episodes:
            slug = strip_source_prefix(episode.id, record.source)
            if self.register(record.source, record.slug, episode.number, slug):
                stored += 1
        return stored

    def lookup(self, source: str, series_slug: str, episode: int | str) -> str | None:
        slug = self._slugs.get(registry_key(source, series_slug, episode))
        if slug is None:
            self.misses += 1
            return None
        self.hits += 1
        return slug

    def seed(self, mapping: Mapping[str, str]) -> None:
        """Adopt a bundle's registry; later discoveries stay in memory only."""

        self._slugs.update(mapping)
        self._dirty.clear()
        self._bundle_mode = True
        logger.info("Slug registry seeded with %s entries", len(mapping))

    def export(self) -> dict[str, str]:
        return dict(sorted(self._slugs.items()))

    def snapshot(self) -> dict[str, int | bool]:
        return {
            "size": len(self._slugs),
            "hits": self.hits,
            "misses": self.misses,
            "stores": self.stores,
            "bundle_mode": self._bundle_mode,
        }

    async def load(self) -> None:
        if self._session_factory is None or self._bundle_mode:
            return
        async with self._session_factory() as session:
            result = await session.execute(select(SlugRecord))
            for row in result.scalars().all():
                self._slugs.setdefault(row.key, row.slug)
        logger.info("Loaded %s slug registry entries", len(self._slugs))

    async def flush(self) -> None:
        if self._session_factory is None or self._bundle_mode or not self._dirty:
            return
        async with self._session_factory() as session:
            for key in self._dirty:
                slug = self._slugs.get(key)
                if slug is not None:
                    await session.merge(SlugRecord(key=key, slug=slug))
            await session.commit()
        self._dirty.clear()

    async def stop(self) -> None:
        await self.flush()
