"""
Database engine and session management for async SQLAlchemy.

The store is a single SQLite file per store directory. Concurrent readers
are allowed (WAL); writers are serialized by SQLite itself.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional, AsyncGenerator, List

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine
)
from sqlalchemy import event, text
from sqlalchemy.pool import NullPool

from .migrations import run_migrations, table_exists

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages the async SQLite connection for one store directory.

    Initialization opens the engine, applies SQLite PRAGMAs on every new
    connection and runs pending schema migrations.
    """

    def __init__(self, database_path: str, disable_fts: bool = False):
        """
        Initialize database manager.

        Args:
            database_path: Path to the SQLite file, or a sqlite:// URL.
                           Sync URLs are converted to the aiosqlite driver.
            disable_fts: Force substring search even if the FTS index exists

        Raises:
            ValueError: If no path is given
        """
        if not database_path or not database_path.strip():
            raise ValueError("db path is required")
        self.database_url = self._convert_to_async_url(database_path.strip())
        self.engine: Optional[AsyncEngine] = None
        self.async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self.disable_fts = disable_fts
        self.fts_enabled = False
        self.applied_migrations: List[int] = []

    def _convert_to_async_url(self, path_or_url: str) -> str:
        """Convert a path or sync sqlite URL to an aiosqlite URL."""
        if path_or_url.startswith('sqlite+aiosqlite://'):
            return path_or_url
        if path_or_url.startswith('sqlite:///'):
            return path_or_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        db_dir = os.path.dirname(path_or_url)
        if db_dir:
            os.makedirs(db_dir, mode=0o700, exist_ok=True)
        return f"sqlite+aiosqlite:///{path_or_url}"

    async def init(self) -> None:
        """Initialize the database engine and apply migrations."""
        logger.info(f"Initializing database: {self.database_url}")

        # NullPool: each session gets its own aiosqlite connection
        self.engine = create_async_engine(
            self.database_url,
            echo=os.getenv('DB_ECHO', 'false').lower() == 'true',
            poolclass=NullPool,
        )
        self._setup_sqlite_pragmas()

        self.async_session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        try:
            self.applied_migrations = await run_migrations(self.engine)
            async with self.engine.connect() as conn:
                fts_table = await table_exists(conn, 'messages_fts')
        except Exception:
            await self.engine.dispose()
            raise

        self.fts_enabled = fts_table and not self.disable_fts
        if not self.fts_enabled:
            logger.warning("Full-text search index unavailable; search uses substring matching")

        logger.info(
            f"Database initialized successfully "
            f"({len(self.applied_migrations)} migrations applied, fts={self.fts_enabled})"
        )

    def _setup_sqlite_pragmas(self) -> None:
        """Set up SQLite PRAGMA settings and explicit transaction control."""

        @event.listens_for(self.engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself so DDL participates in transactions
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            # WAL mode for better concurrent read/write
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA temp_store=MEMORY")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(self.engine.sync_engine, "begin")
        def do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session that commits on success.

        Usage:
            async with db_manager.get_session() as session:
                await session.execute(...)
        """
        if not self.async_session_factory:
            raise RuntimeError("Database not initialized. Call init() first.")

        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            logger.info("Database connections closed")

    async def health_check(self) -> bool:
        """Check if database is accessible."""
        try:
            async with self.async_session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


async def init_database(database_path: str, disable_fts: bool = False) -> DatabaseManager:
    """
    Create and initialize a database manager.

    Args:
        database_path: SQLite path or URL
        disable_fts: Force degraded search mode

    Returns:
        Initialized DatabaseManager instance
    """
    db_manager = DatabaseManager(database_path, disable_fts=disable_fts)
    await db_manager.init()
    return db_manager
