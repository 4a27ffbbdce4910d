"""Time-bounded denylist for records whose metadata keeps failing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import DenylistEntry
from ..utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _FailureState:
    failures: int = 0
    denied_until: datetime | None = None
    last_error: str | None = None


def _to_naive(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BrokenRecordDenylist:
    """Counts server-side metadata failures and hides repeat offenders."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        failure_threshold: int = 2,
        ttl_seconds: int = 21_600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._session_factory = session_factory
        self._failure_threshold = failure_threshold
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: dict[str, _FailureState] = {}
        self._dirty: set[str] = set()
        self._removed: set[str] = set()

    def __len__(self) -> int:
        return sum(1 for record_id in self._entries if self.is_denied(record_id))

    def record_failure(self, record_id: str, reason: str | None = None) -> bool:
        """Count a failure; return ``True`` when the id becomes denied."""

        state = self._entries.setdefault(record_id, _FailureState())
        state.failures += 1
        state.last_error = reason
        self._mark_dirty(record_id)
        if state.failures < self._failure_threshold:
            return False
        state.denied_until = self._clock() + self._ttl
        logger.warning(
            "Denylisting %s until %s after %s failures: %s",
            record_id,
            state.denied_until.isoformat(),
            state.failures,
            reason,
        )
        return True

    def record_success(self, record_id: str) -> None:
        if self._entries.pop(record_id, None) is not None:
            self._dirty.discard(record_id)
            self._removed.add(record_id)

    def is_denied(self, record_id: str) -> bool:
        state = self._entries.get(record_id)
        if state is None or state.denied_until is None:
            return False
        if state.denied_until <= self._clock():
            self.record_success(record_id)
            return False
        return True

    def denied_ids(self) -> set[str]:
        return {
            record_id for record_id in list(self._entries) if self.is_denied(record_id)
        }

    def snapshot(self) -> dict[str, int]:
        return {"tracked": len(self._entries), "denied": len(self)}

    def _mark_dirty(self, record_id: str) -> None:
        self._dirty.add(record_id)
        self._removed.discard(record_id)

    async def load(self) -> None:
        """Restore unexpired entries from the database."""

        if self._session_factory is None:
            return
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(select(DenylistEntry))
            rows = result.scalars().all()
        for row in rows:
            denied_until = _to_aware(row.denied_until)
            if denied_until is not None and denied_until <= now:
                self._removed.add(row.record_id)
                continue
            self._entries[row.record_id] = _FailureState(
                failures=row.failures,
                denied_until=denied_until,
                last_error=row.last_error,
            )
        logger.info("Loaded %s denylist entries", len(self._entries))

    async def flush(self) -> None:
        """Write pending changes to the database."""

        if self._session_factory is None or not (self._dirty or self._removed):
            return
        async with self._session_factory() as session:
            if self._removed:
                await session.execute(
                    delete(DenylistEntry).where(
                        DenylistEntry.record_id.in_(list(self._removed))
                    )
                )
            for record_id in self._dirty:
                state = self._entries.get(record_id)
                if state is None:
                    continue
                await session.merge(
                    DenylistEntry(
                        record_id=record_id,
                        failures=state.failures,
                        denied_until=_to_naive(state.denied_until),
                        last_error=state.last_error,
                    )
                )
            await session.commit()
        self._dirty.clear()
        self._removed.clear()

    async def stop(self) -> None:
        await self.flush()
