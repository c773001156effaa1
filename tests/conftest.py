from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional, Tuple, Union

import pytest

from mangadex_bot.clock import Clock
from mangadex_bot.detector import ChangeDetector
from mangadex_bot.infra.db import Database
from mangadex_bot.interfaces import CatalogSource, Sink
from mangadex_bot.models import CatalogItem
from mangadex_bot.notifier import Notifier
from mangadex_bot.store import SqliteSeenStore, TrackingRepository
from mangadex_bot.watcher import Watcher

START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
MANGA_A = "a96676e5-8ae2-425e-b549-7f15dd34a6d8"
MANGA_B = "32d76d19-8a05-4db0-9fc2-e0b0648fe9d0"


class FakeClock(Clock):
    """Simulated time: sleeps are recorded and advance ``now`` instantly."""

    def __init__(self, start: datetime = START):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=max(0.0, seconds))
        await asyncio.sleep(0)


class BlockingClock(FakeClock):
    """Every sleep blocks until cancelled."""

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.Event().wait()


Outcome = Union[List[CatalogItem], Exception]


class FakeSource(CatalogSource):
    """In-memory catalog. Queued outcomes win over the static catalogue."""

    name = "fake"

    def __init__(self):
        self.catalog: Dict[str, List[CatalogItem]] = defaultdict(list)
        self.queued: Dict[str, Deque[Outcome]] = defaultdict(deque)
        self.calls: List[str] = []

    def publish(self, *items: CatalogItem) -> None:
        for item in items:
            self.catalog[item.manga_id].append(item)

    def fail(self, manga_id: str, *errors: Exception) -> None:
        self.queued[manga_id].extend(errors)

    async def fetch_recent(self, manga_id: str, limit: int, cursor: Optional[int] = None) -> List[CatalogItem]:
        self.calls.append(manga_id)
        await asyncio.sleep(0)
        if self.queued[manga_id]:
            outcome = self.queued[manga_id].popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        items = sorted(self.catalog[manga_id], key=lambda item: item.published_at)
        return items[-limit:]


class RecordingSink(Sink):
    """Records sends; queued errors for a target are raised first."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []
        self.errors: Dict[str, Deque[Exception]] = defaultdict(deque)
        self.always_fail: Dict[str, Exception] = {}

    @property
    def name(self) -> str:
        return "recording"

    def fail(self, target: str, *errors: Exception) -> None:
        self.errors[target].extend(errors)

    async def send(self, target: str, text: str) -> None:
        await asyncio.sleep(0)
        if target in self.always_fail:
            raise self.always_fail[target]
        if self.errors[target]:
            raise self.errors[target].popleft()
        self.sent.append((target, text))

    def texts_for(self, target: str) -> List[str]:
        return [text for sent_to, text in self.sent if sent_to == target]


def make_item(
    number: int,
    manga_id: str = MANGA_A,
    published_at: Optional[datetime] = None,
    title: Optional[str] = None,
) -> CatalogItem:
    chapter_id = f"{manga_id[:8]}-chapter-{number:04d}"
    return CatalogItem(
        id=chapter_id,
        manga_id=manga_id,
        published_at=published_at or START + timedelta(hours=number),
        title=f"Ch. {number}",
        url=f"https://mangadex.org/chapter/{chapter_id}",
        chapter=str(number),
        chapter_title=title,
        language="en",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "seen.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def store(db) -> SqliteSeenStore:
    return SqliteSeenStore(db)


@pytest.fixture
def tracking(db) -> TrackingRepository:
    return TrackingRepository(db)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_watcher(source, store, tracking, sink, clock):
    def _make(
        *,
        deliver_backlog: bool = False,
        max_backlog: Optional[int] = 25,
        max_attempts: int = 3,
        store_override=None,
        clock_override: Optional[Clock] = None,
        retention_days: Optional[int] = None,
    ) -> Watcher:
        watcher_clock = clock_override or clock
        return Watcher(
            source,
            store_override or store,
            tracking,
            ChangeDetector(deliver_backlog=deliver_backlog, max_backlog=max_backlog),
            Notifier(sink, max_attempts=max_attempts, base_delay=0.01, clock=watcher_clock),
            fetch_limit=10,
            backoff_cooldown=300,
            retention_days=retention_days,
            clock=watcher_clock,
        )

    return _make
