"""
Database package for WhatsApp Archive.

Provides async SQLite access using SQLAlchemy, with versioned migrations
and an optional FTS5 search index.

Usage:
    # Open the store (runs pending migrations)
    from src.db import create_adapter

    db = await create_adapter('/data/wacli/wacli.db')

    # Use the adapter
    await db.upsert_chat('123@s.whatsapp.net', 'dm', 'Alice', None)
    chats = await db.list_chats()

    await db.close()
"""

from .models import (
    Base, SchemaMigration, Chat, Contact, Group, GroupParticipant,
    ContactAlias, ContactTag, Message
)
from .base import DatabaseManager, init_database
from .adapter import DatabaseAdapter
from .migrations import MIGRATIONS, Migration, run_migrations

__all__ = [
    # Models
    'Base',
    'SchemaMigration',
    'Chat',
    'Contact',
    'Group',
    'GroupParticipant',
    'ContactAlias',
    'ContactTag',
    'Message',
    # Database management
    'DatabaseManager',
    'init_database',
    # Adapter
    'DatabaseAdapter',
    'create_adapter',
    # Migrations
    'MIGRATIONS',
    'Migration',
    'run_migrations',
]


async def create_adapter(database_path: str, disable_fts: bool = False) -> DatabaseAdapter:
    """
    Open the store at database_path and return an adapter for it.

    Args:
        database_path: SQLite file path or URL
        disable_fts: Force substring search

    Returns:
        New DatabaseAdapter instance
    """
    db_manager = await init_database(database_path, disable_fts=disable_fts)
    return DatabaseAdapter(db_manager)
