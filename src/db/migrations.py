"""
Versioned schema migrations for the WhatsApp Archive store.

Each migration is a numbered, forward-only step. The runner applies every
step whose version is missing from the schema_migrations ledger, in
ascending order, each inside its own transaction together with its ledger
row. A failing step aborts store initialization and is retried on the next
start, never recorded as applied.

Usage:
    from src.db.migrations import run_migrations

    applied = await run_migrations(engine)
"""

import logging
import time
from typing import Awaitable, Callable, List, NamedTuple, Set

from sqlalchemy import insert, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..errors import MigrationError
from .models import SchemaMigration

logger = logging.getLogger(__name__)


class Migration(NamedTuple):
    version: int
    name: str
    upgrade: Callable[[AsyncConnection], Awaitable[None]]


LEDGER_DDL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        applied_at INTEGER NOT NULL
    )
"""

CORE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS chats (
        jid TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        name TEXT,
        last_message_ts INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        jid TEXT PRIMARY KEY,
        phone TEXT,
        push_name TEXT,
        full_name TEXT,
        first_name TEXT,
        business_name TEXT,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS groups (
        jid TEXT PRIMARY KEY,
        name TEXT,
        owner_jid TEXT,
        created_ts INTEGER,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_participants (
        group_jid TEXT NOT NULL,
        user_jid TEXT NOT NULL,
        role TEXT,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (group_jid, user_jid),
        FOREIGN KEY (group_jid) REFERENCES groups(jid) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_aliases (
        jid TEXT PRIMARY KEY,
        alias TEXT NOT NULL,
        notes TEXT,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_tags (
        jid TEXT NOT NULL,
        tag TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (jid, tag)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        chat_jid TEXT NOT NULL,
        chat_name TEXT,
        msg_id TEXT NOT NULL,
        sender_jid TEXT,
        sender_name TEXT,
        ts INTEGER NOT NULL,
        from_me INTEGER NOT NULL,
        text TEXT,
        media_type TEXT,
        media_caption TEXT,
        filename TEXT,
        mime_type TEXT,
        direct_path TEXT,
        media_key BLOB,
        file_sha256 BLOB,
        file_enc_sha256 BLOB,
        file_length INTEGER,
        local_path TEXT,
        downloaded_at INTEGER,
        UNIQUE(chat_jid, msg_id),
        FOREIGN KEY (chat_jid) REFERENCES chats(jid) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat_ts ON messages(chat_jid, ts)",
    "CREATE INDEX IF NOT EXISTS idx_messages_ts ON messages(ts)",
]

FTS_COLUMNS = ('text', 'media_caption', 'filename', 'chat_name', 'sender_name', 'display_text')

FTS_CREATE_SQL = f"CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5({', '.join(FTS_COLUMNS)})"

_FTS_NEW_VALUES = ', '.join(f"COALESCE(new.{col},'')" for col in FTS_COLUMNS)

FTS_TRIGGERS = [
    "DROP TRIGGER IF EXISTS messages_ai",
    "DROP TRIGGER IF EXISTS messages_ad",
    "DROP TRIGGER IF EXISTS messages_au",
    f"""
    CREATE TRIGGER messages_ai AFTER INSERT ON messages BEGIN
        INSERT INTO messages_fts(rowid, {', '.join(FTS_COLUMNS)})
        VALUES (new.rowid, {_FTS_NEW_VALUES});
    END
    """,
    """
    CREATE TRIGGER messages_ad AFTER DELETE ON messages BEGIN
        DELETE FROM messages_fts WHERE rowid = old.rowid;
    END
    """,
    f"""
    CREATE TRIGGER messages_au AFTER UPDATE ON messages BEGIN
        DELETE FROM messages_fts WHERE rowid = old.rowid;
        INSERT INTO messages_fts(rowid, {', '.join(FTS_COLUMNS)})
        VALUES (new.rowid, {_FTS_NEW_VALUES});
    END
    """,
]

FTS_BACKFILL_SQL = f"""
    INSERT INTO messages_fts(rowid, {', '.join(FTS_COLUMNS)})
    SELECT rowid, {', '.join(f"COALESCE({col},'')" for col in FTS_COLUMNS)}
    FROM messages
"""


async def table_exists(conn: AsyncConnection, table: str) -> bool:
    """Check sqlite_master for a table or view with this name."""
    result = await conn.execute(
        text("SELECT 1 FROM sqlite_master WHERE name = :name AND type IN ('table','view')"),
        {'name': table},
    )
    return result.first() is not None


async def table_has_column(conn: AsyncConnection, table: str, column: str) -> bool:
    """Check whether a table already has a column (case-insensitive)."""
    result = await conn.execute(text(f"PRAGMA table_info({table})"))
    return any(str(row[1]).lower() == column.lower() for row in result)


async def _add_columns(conn: AsyncConnection, table: str, columns: List[tuple]) -> None:
    for column, column_type in columns:
        if not await table_has_column(conn, table, column):
            await conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}"))


async def migrate_core_schema(conn: AsyncConnection) -> None:
    for statement in CORE_SCHEMA:
        await conn.execute(text(statement))


async def migrate_messages_display_text(conn: AsyncConnection) -> None:
    await _add_columns(conn, 'messages', [('display_text', 'TEXT')])


async def migrate_messages_fts(conn: AsyncConnection) -> None:
    """
    Create the full-text shadow index and the triggers that keep it in sync.

    An older index without the display_text column is rebuilt. If the FTS5
    module is not available the step still succeeds and search falls back
    to substring matching.
    """
    fts_exists = await table_exists(conn, 'messages_fts')
    if fts_exists and not await table_has_column(conn, 'messages_fts', 'display_text'):
        await conn.execute(text("DROP TABLE IF EXISTS messages_fts"))
        fts_exists = False

    try:
        async with conn.begin_nested():
            created = False
            if not fts_exists:
                await conn.execute(text(FTS_CREATE_SQL))
                created = True
            for statement in FTS_TRIGGERS:
                await conn.execute(text(statement))
            if created:
                await conn.execute(text(FTS_BACKFILL_SQL))
    except OperationalError as e:
        logger.warning(f"Full-text search unavailable, falling back to LIKE search: {e}")


async def migrate_messages_reaction(conn: AsyncConnection) -> None:
    await _add_columns(conn, 'messages', [('reaction_to_id', 'TEXT'), ('reaction_emoji', 'TEXT')])


async def migrate_messages_reply(conn: AsyncConnection) -> None:
    await _add_columns(conn, 'messages', [('reply_to_id', 'TEXT'), ('reply_to_display', 'TEXT')])


MIGRATIONS: List[Migration] = [
    Migration(1, 'core schema', migrate_core_schema),
    Migration(2, 'messages display_text column', migrate_messages_display_text),
    Migration(3, 'messages fts', migrate_messages_fts),
    Migration(4, 'messages reaction columns', migrate_messages_reaction),
    Migration(5, 'messages reply columns', migrate_messages_reply),
]


async def applied_versions(engine: AsyncEngine) -> Set[int]:
    """Create the ledger if needed and return the recorded versions."""
    async with engine.begin() as conn:
        await conn.execute(text(LEDGER_DDL))
        result = await conn.execute(select(SchemaMigration.version))
        return {row[0] for row in result}


async def run_migrations(engine: AsyncEngine, migrations: List[Migration] = None) -> List[int]:
    """
    Apply every pending migration in ascending version order.

    Args:
        engine: Async engine bound to the store database
        migrations: Migration list override (defaults to MIGRATIONS)

    Returns:
        Versions applied by this call, in order

    Raises:
        MigrationError: If any step fails; later steps are not attempted
    """
    migrations = sorted(migrations if migrations is not None else MIGRATIONS, key=lambda m: m.version)
    try:
        applied = await applied_versions(engine)
    except Exception as e:
        raise MigrationError(f"load applied migrations: {e}") from e

    newly_applied = []
    for migration in migrations:
        if migration.version in applied:
            continue
        try:
            async with engine.begin() as conn:
                await migration.upgrade(conn)
                await conn.execute(
                    insert(SchemaMigration).values(
                        version=migration.version,
                        name=migration.name,
                        applied_at=int(time.time()),
                    )
                )
        except Exception as e:
            raise MigrationError(
                f"apply migration {migration.version:03d} {migration.name}: {e}"
            ) from e
        logger.info(f"Applied migration {migration.version:03d} {migration.name}")
        newly_applied.append(migration.version)

    return newly_applied
