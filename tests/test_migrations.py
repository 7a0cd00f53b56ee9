"""
Tests for the versioned schema migrations.
"""

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import text

from src.db.base import DatabaseManager
from src.db.migrations import MIGRATIONS, Migration, run_migrations, table_exists, table_has_column
from src.errors import MigrationError


def run(coro):
    return asyncio.run(coro)


async def _open(path, disable_fts=False):
    manager = DatabaseManager(path, disable_fts=disable_fts)
    await manager.init()
    return manager


def test_fresh_store_applies_all_migrations(tmp_path):
    async def scenario():
        manager = await _open(str(tmp_path / 'wacli.db'))
        try:
            assert manager.applied_migrations == [m.version for m in MIGRATIONS]
            assert await manager.health_check() is True
            async with manager.engine.connect() as conn:
                for column in ('display_text', 'reaction_to_id', 'reaction_emoji',
                               'reply_to_id', 'reply_to_display'):
                    assert await table_has_column(conn, 'messages', column)
                result = await conn.execute(text("SELECT version, name FROM schema_migrations ORDER BY version"))
                rows = result.all()
            assert [r[0] for r in rows] == [1, 2, 3, 4, 5]
            assert rows[0][1] == 'core schema'
        finally:
            await manager.close()

    run(scenario())


def test_reopen_applies_nothing(tmp_path):
    async def scenario():
        path = str(tmp_path / 'wacli.db')
        first = await _open(path)
        await first.close()

        second = await _open(path)
        try:
            assert second.applied_migrations == []
            assert await run_migrations(second.engine) == []
        finally:
            await second.close()

    run(scenario())


def test_failing_migration_rolls_back_and_is_not_recorded(tmp_path):
    async def broken(conn):
        await conn.execute(text("CREATE TABLE half_done (id INTEGER)"))
        await conn.execute(text("THIS IS NOT SQL"))

    async def scenario():
        manager = await _open(str(tmp_path / 'wacli.db'))
        try:
            with pytest.raises(MigrationError, match="apply migration 006 broken step"):
                await run_migrations(manager.engine, MIGRATIONS + [Migration(6, 'broken step', broken)])

            async with manager.engine.connect() as conn:
                assert not await table_exists(conn, 'half_done')
                result = await conn.execute(text("SELECT MAX(version) FROM schema_migrations"))
                assert result.scalar() == 5
        finally:
            await manager.close()

    run(scenario())


def test_later_steps_not_attempted_after_failure(tmp_path):
    calls = []

    async def broken(conn):
        raise RuntimeError("boom")

    async def later(conn):
        calls.append('later')

    async def scenario():
        manager = await _open(str(tmp_path / 'wacli.db'))
        try:
            with pytest.raises(MigrationError):
                await run_migrations(manager.engine, [
                    Migration(7, 'later', later),
                    Migration(6, 'broken', broken),
                ])
        finally:
            await manager.close()

    run(scenario())
    assert calls == []


def test_missing_fts_module_degrades_to_substring_search(tmp_path):
    async def scenario():
        with patch(
            'src.db.migrations.FTS_CREATE_SQL',
            "CREATE VIRTUAL TABLE messages_fts USING no_such_fts_module(text)",
        ):
            manager = await _open(str(tmp_path / 'wacli.db'))
        try:
            # The step itself is still recorded as applied
            assert 3 in manager.applied_migrations
            assert manager.fts_enabled is False
            async with manager.engine.connect() as conn:
                assert not await table_exists(conn, 'messages_fts')
        finally:
            await manager.close()

    run(scenario())


def test_disable_fts_forces_substring_search(tmp_path):
    async def scenario():
        manager = await _open(str(tmp_path / 'wacli.db'), disable_fts=True)
        try:
            assert manager.fts_enabled is False
        finally:
            await manager.close()

    run(scenario())


def test_empty_path_rejected():
    with pytest.raises(ValueError, match="db path is required"):
        DatabaseManager('  ')
