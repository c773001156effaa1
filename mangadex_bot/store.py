"""
Persistent state: the seen-set and the tracked manga, both on SQLite.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .clock import Clock
from .errors import PersistenceFailure
from .infra.db import Database
from .interfaces import SeenStore
from .models import SeenRecord, TrackedManga

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    """Timestamps are stored as UTC ISO-8601 so they sort lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SqliteSeenStore(SeenStore):
    """Seen-set backed by the ``seen_items`` table.

    Single writer (the watcher's commit step); lookups may run at any time.
    """

    def __init__(self, db: Database, clock: Optional[Clock] = None):
        self.db = db
        self._clock = clock or Clock()

    async def contains(self, item_id: str) -> bool:
        row = await self.db.fetch_one("SELECT 1 FROM seen_items WHERE id = ?", (item_id,))
        return row is not None

    async def mark_seen(
        self, item_id: str, timestamp: datetime, manga_id: Optional[str] = None
    ) -> None:
        await self.mark_many([SeenRecord(id=item_id, first_seen=timestamp, manga_id=manga_id)])

    async def mark_many(
        self, records: Iterable[SeenRecord], initialized: Iterable[str] = ()
    ) -> int:
        rows = [(r.id, r.manga_id, _ts(r.first_seen)) for r in records]
        now = _ts(self._clock.now())
        scopes = [(scope, now) for scope in dict.fromkeys(initialized)]
        if not rows and not scopes:
            return 0
        try:
            async with self.db.transaction() as conn:
                before = conn.total_changes
                await conn.executemany(
                    """
                    INSERT INTO seen_items (id, manga_id, first_seen)
                    VALUES (?, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                    """,
                    rows,
                )
                inserted = conn.total_changes - before
                await conn.executemany(
                    "INSERT INTO baselines (scope, created_at) VALUES (?, ?) ON CONFLICT(scope) DO NOTHING",
                    scopes,
                )
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailure(f"Failed to commit {len(rows)} seen record(s): {e}") from e
        logger.debug("Committed %d seen record(s), %d new", len(rows), inserted)
        return inserted

    async def prune(self, older_than: datetime) -> int:
        try:
            cursor = await self.db.execute(
                "DELETE FROM seen_items WHERE first_seen < ?", (_ts(older_than),)
            )
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailure(f"Failed to prune seen records: {e}") from e
        removed = cursor.rowcount
        if removed:
            logger.info("Pruned %d seen record(s) older than %s", removed, older_than.isoformat())
        return removed

    async def clear_baseline(self, manga_id: str) -> None:
        """Send ``manga_id`` back into cold start; its next fetch is recorded silently."""
        try:
            await self.db.execute("DELETE FROM baselines WHERE scope = ?", (manga_id,))
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailure(f"Failed to reset the baseline of {manga_id}: {e}") from e

    async def is_empty(self, manga_id: Optional[str] = None) -> bool:
        """True until a baseline was committed for ``manga_id``.

        Without a scope the store is empty when it holds neither records nor
        baselines. Pruning never clears a baseline, so a manga that simply has
        no chapters yet does not fall back into cold start.
        """
        if manga_id is None:
            row = await self.db.fetch_one(
                "SELECT 1 FROM seen_items UNION ALL SELECT 1 FROM baselines LIMIT 1"
            )
        else:
            row = await self.db.fetch_one(
                "SELECT 1 FROM baselines WHERE scope = ?", (manga_id,)
            )
        return row is None

    async def count(self) -> int:
        row = await self.db.fetch_one("SELECT COUNT(*) AS count FROM seen_items")
        return int(row["count"])

    async def get(self, item_id: str) -> Optional[SeenRecord]:
        row = await self.db.fetch_one(
            "SELECT id, manga_id, first_seen FROM seen_items WHERE id = ?", (item_id,)
        )
        if row is None:
            return None
        return SeenRecord(id=row["id"], manga_id=row["manga_id"], first_seen=_parse_ts(row["first_seen"]))


class TrackingRepository:
    """Which manga are tracked, and by which channels."""

    def __init__(self, db: Database):
        self.db = db

    async def list(self) -> List[TrackedManga]:
        rows = await self.db.fetch_all(
            """
            SELECT m.id, m.title, m.added_at, c.channel
              FROM tracked_manga m
              LEFT JOIN manga_channels c ON c.manga_id = m.id
             ORDER BY m.added_at, m.id, c.channel
            """
        )
        result: dict[str, TrackedManga] = {}
        for row in rows:
            manga = result.get(row["id"])
            if manga is None:
                manga = TrackedManga(
                    id=row["id"], title=row["title"], added_at=_parse_ts(row["added_at"])
                )
                result[manga.id] = manga
            if row["channel"] is not None:
                manga.channels.append(row["channel"])
        return list(result.values())

    async def get(self, manga_id: str) -> Optional[TrackedManga]:
        for manga in await self.list():
            if manga.id == manga_id:
                return manga
        return None

    async def upsert(self, manga: TrackedManga) -> None:
        async with self.db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO tracked_manga (id, title, added_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET title = excluded.title
                """,
                (manga.id, manga.title, _ts(manga.added_at)),
            )
            await conn.executemany(
                "INSERT INTO manga_channels (manga_id, channel) VALUES (?, ?) ON CONFLICT DO NOTHING",
                [(manga.id, channel) for channel in manga.channels],
            )

    async def track(self, manga_id: str, title: str, channel: str) -> bool:
        """Add ``channel`` to the manga's channels. False if it was already there."""
        existing = await self.get(manga_id)
        if existing and channel in existing.channels:
            return False
        await self.upsert(TrackedManga(id=manga_id, title=title, channels=[channel]))
        logger.info("Channel %s now tracks %s (%s)", channel, title, manga_id)
        return True

    async def untrack(self, manga_id: str, channel: str) -> bool:
        """Remove ``channel``; the manga itself is dropped once no channel is left."""
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM manga_channels WHERE manga_id = ? AND channel = ?", (manga_id, channel)
            )
            removed = cursor.rowcount > 0
            await conn.execute(
                """
                DELETE FROM tracked_manga
                 WHERE id = ?
                   AND NOT EXISTS (SELECT 1 FROM manga_channels WHERE manga_id = ?)
                """,
                (manga_id, manga_id),
            )
        return removed
