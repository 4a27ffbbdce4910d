"""Keyed background task runner used for cache revalidation."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class BackgroundRefresher:
    """Run at most one background job per key under a concurrency cap.

    Failures are logged and discarded; callers that scheduled a job never see
    its outcome.
    """

    def __init__(self, max_concurrency: int = 4) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._jobs: dict[str, asyncio.Task[None]] = {}
        self._closed = False
        self.completed = 0
        self.failed = 0

    def is_running(self, key: str) -> bool:
        job = self._jobs.get(key)
        return job is not None and not job.done()

    @property
    def pending(self) -> int:
        return sum(1 for job in self._jobs.values() if not job.done())

    def submit(self, key: str, factory: Callable[[], Awaitable[object]]) -> bool:
        """Schedule ``factory()`` unless a job for ``key`` is already running."""

        if self._closed or self.is_running(key):
            return False

        async def _runner() -> None:
            try:
                async with self._semaphore:
                    await factory()
                self.completed += 1
            except Exception as exc:
                self.failed += 1
                logger.exception("Background refresh for %s failed: %s", key, exc)
            finally:
                self._jobs.pop(key, None)

        self._jobs[key] = asyncio.create_task(_runner())
        return True

    async def join(self) -> None:
        """Wait for every job scheduled so far to finish."""

        while self._jobs:
            await asyncio.gather(*list(self._jobs.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding jobs and refuse new ones."""

        self._closed = True
        jobs = list(self._jobs.values())
        for job in jobs:
            job.cancel()
        for job in jobs:
            with suppress(asyncio.CancelledError):
                await job
        self._jobs.clear()
