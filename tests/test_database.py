from __future__ import annotations

import asyncio
from datetime import datetime

from sqlalchemy import inspect, select

from app.database import Database
from app.db_models import DenylistEntry, SlugRecord


def test_create_all_creates_state_tables(tmp_path) -> None:
    """Both durable state tables should exist after initialisation."""

    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")

    async def runner() -> tuple[set[str], set[str]]:
        await database.create_all()
        try:
            async with database.engine.connect() as connection:
                tables = await connection.run_sync(
                    lambda sync_conn: set(inspect(sync_conn).get_table_names())
                )
                columns = await connection.run_sync(
                    lambda sync_conn: {
                        column["name"]
                        for column in inspect(sync_conn).get_columns("broken_records")
                    }
                )
            return tables, columns
        finally:
            await database.dispose()

    tables, columns = asyncio.run(runner())

    assert {"broken_records", "slug_registry"} <= tables
    assert {"record_id", "failures", "denied_until", "last_error", "updated_at"} <= columns


def test_session_scope_persists_rows(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")

    async def runner() -> tuple[DenylistEntry | None, SlugRecord | None]:
        await database.create_all()
        try:
            async with database.session() as session:
                session.add(
                    DenylistEntry(
                        record_id="hmm-quiet-river",
                        failures=2,
                        denied_until=datetime(2024, 6, 1, 18),
                        last_error="HTTP 500",
                    )
                )
                session.add(SlugRecord(key="htv:quiet-river:2", slug="quiet-river-finale"))
                await session.commit()

            async with database.session() as session:
                entry = await session.get(DenylistEntry, "hmm-quiet-river")
                slug = (
                    await session.execute(
                        select(SlugRecord).where(SlugRecord.key == "htv:quiet-river:2")
                    )
                ).scalar_one_or_none()
            return entry, slug
        finally:
            await database.dispose()

    entry, slug = asyncio.run(runner())

    assert entry is not None
    assert entry.failures == 2
    assert entry.updated_at is not None
    assert slug is not None
    assert slug.slug == "quiet-river-finale"
