"""
Database infrastructure with SQLite and async support.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import aiosqlite


logger = logging.getLogger(__name__)


# Ordered schema migrations; the index + 1 is the schema version.
MIGRATIONS: Sequence[str] = (
    """
    CREATE TABLE IF NOT EXISTS seen_items (
        id TEXT PRIMARY KEY,
        manga_id TEXT,
        first_seen TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_seen_items_manga ON seen_items (manga_id);
    CREATE INDEX IF NOT EXISTS idx_seen_items_first_seen ON seen_items (first_seen);
    CREATE TABLE IF NOT EXISTS baselines (
        scope TEXT PRIMARY KEY,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS tracked_manga (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        added_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS manga_channels (
        manga_id TEXT NOT NULL REFERENCES tracked_manga (id) ON DELETE CASCADE,
        channel TEXT NOT NULL,
        PRIMARY KEY (manga_id, channel)
    );
    """,
)


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: str = "db/mangadex_bot.db"):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        # Serialises every statement with open transactions on the shared connection
        self._tx_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        if self._connection:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode; multi-statement writes go through transaction()
        self._connection = await aiosqlite.connect(self.db_path, timeout=30, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row
        # Improve concurrency: use WAL journal mode and set busy timeout (ms)
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA busy_timeout=30000;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @asynccontextmanager
    async def transaction(self):
        """Context manager for database transactions.

        Rolls back on any exception, including task cancellation.
        """
        if not self._connection:
            await self.connect()

        async with self._tx_lock:
            await self._connection.execute("BEGIN")
            try:
                yield self._connection
            except BaseException:
                await self._connection.rollback()
                raise
            else:
                await self._connection.commit()

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement outside any open transaction."""
        if not self._connection:
            await self.connect()
        async with self._tx_lock:
            return await self._connection.execute(sql, params)

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        """Fetch one row."""
        if not self._connection:
            await self.connect()
        async with self._tx_lock:
            cursor = await self._connection.execute(sql, params)
            return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        """Fetch all rows."""
        if not self._connection:
            await self.connect()
        async with self._tx_lock:
            cursor = await self._connection.execute(sql, params)
            return await cursor.fetchall()

    async def _run_migrations(self) -> None:
        """Run database migrations."""
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor = await self._connection.execute("SELECT MAX(version) FROM migrations")
        row = await cursor.fetchone()
        current = row[0] or 0

        for version, script in enumerate(MIGRATIONS, start=1):
            if version <= current:
                continue
            await self._connection.executescript(
                f"BEGIN;\n{script}\nINSERT INTO migrations (version) VALUES ({version});\nCOMMIT;"
            )
            logger.info("Applied database migration %d", version)
