"""
Poll-cycle driver: fetch → diff → notify → commit, one cycle at a time.

The watcher is the only writer of the seen-set during normal operation. A
cycle commits once, after every delivery of the batch has reached a terminal
status, so a crash or cancellation before that point simply means the batch is
announced again next time (at-least-once delivery).
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .clock import Clock
from .detector import ChangeDetector
from .errors import FatalError, PersistenceFailure, RateLimitedError, TransientError
from .interfaces import CatalogSource, SeenStore
from .models import (
    CatalogItem,
    CycleOutcome,
    NotificationTask,
    PollCycle,
    SeenRecord,
    TaskStatus,
    TrackedManga,
)
from .notifier import Notifier, format_message
from .store import TrackingRepository

logger = logging.getLogger(__name__)


class WatcherState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    NOTIFYING = "notifying"
    COMMITTING = "committing"
    BACKOFF = "backoff"


class Watcher:
    """Runs poll cycles over every tracked manga."""

    def __init__(
        self,
        source: CatalogSource,
        store: SeenStore,
        tracking: TrackingRepository,
        detector: ChangeDetector,
        notifier: Notifier,
        *,
        fetch_limit: int = 10,
        backoff_cooldown: float = 300.0,
        retention_days: Optional[int] = 180,
        clock: Optional[Clock] = None,
    ):
        self.source = source
        self.store = store
        self.tracking = tracking
        self.detector = detector
        self.notifier = notifier
        self.fetch_limit = fetch_limit
        self.backoff_cooldown = backoff_cooldown
        self.retention_days = retention_days
        self._clock = clock or Clock()

        self.state = WatcherState.IDLE
        self.last_cycle: Optional[PollCycle] = None
        self._lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._cancelled_by_shutdown = False

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def _set_state(self, state: WatcherState) -> None:
        if state is not self.state:
            logger.debug("Watcher %s -> %s", self.state.value, state.value)
            self.state = state

    def _horizon(self):
        if not self.retention_days:
            return None
        return self._clock.now() - timedelta(days=self.retention_days)

    # ------------------------------------------------------------------ #
    # Cycle
    # ------------------------------------------------------------------ #
    async def run_cycle(self) -> PollCycle:
        """Run one poll cycle; a trigger that arrives mid-cycle is skipped."""
        if self._stopping.is_set() or self._lock.locked():
            now = self._clock.now()
            cycle = PollCycle(started_at=now, finished_at=now, outcome=CycleOutcome.SKIPPED)
            logger.info(
                "Poll cycle skipped: %s",
                "shutting down" if self._stopping.is_set() else "previous cycle still running",
            )
            return cycle

        async with self._lock:
            cycle = PollCycle(started_at=self._clock.now())
            self._task = asyncio.ensure_future(self._run(cycle))
            try:
                await self._task
            except asyncio.CancelledError:
                cycle.outcome = CycleOutcome.FAILURE
                cycle.error = "cancelled"
                logger.warning("Poll cycle cancelled in state %s", self.state.value)
                if not self._cancelled_by_shutdown:
                    raise
            except Exception as e:
                cycle.outcome = CycleOutcome.FAILURE
                cycle.error = str(e) or type(e).__name__
                logger.exception("Poll cycle failed")
            finally:
                self._task = None
                self._set_state(WatcherState.IDLE)
                cycle.finished_at = self._clock.now()
                self.last_cycle = cycle

        self._log_summary(cycle)
        return cycle

    async def _run(self, cycle: PollCycle) -> None:
        tracked = [manga for manga in await self.tracking.list() if manga.channels]
        if not tracked:
            logger.info("No tracked manga; nothing to poll")
            return

        # FETCHING
        self._set_state(WatcherState.FETCHING)
        batches: List[Tuple[TrackedManga, List[CatalogItem]]] = []
        cooldown: Optional[float] = None
        for manga in tracked:
            if self._stopping.is_set():
                break
            try:
                items = await self.source.fetch_recent(manga.id, self.fetch_limit)
            except RateLimitedError as e:
                cooldown = e.retry_after if e.retry_after is not None else self.backoff_cooldown
                cycle.error = str(e)
                logger.warning("Rate limited while fetching %s (%s): %s", manga.title, manga.id, e)
                break
            except TransientError as e:
                cooldown = self.backoff_cooldown
                cycle.error = str(e)
                logger.warning("Fetching %s (%s) failed after retries: %s", manga.title, manga.id, e)
                break
            except FatalError as e:
                cycle.outcome = CycleOutcome.FAILURE
                cycle.error = str(e)
                logger.error("Fetching %s (%s) failed, aborting cycle: %s", manga.title, manga.id, e)
                return
            cycle.fetched.extend(items)
            batches.append((manga, items))

        if cooldown is not None:
            cycle.outcome = CycleOutcome.PARTIAL if batches else CycleOutcome.FAILURE

        # DIFFING
        self._set_state(WatcherState.DIFFING)
        horizon = self._horizon()
        baseline: List[CatalogItem] = []
        initialized: List[str] = []
        tasks: List[NotificationTask] = []
        for manga, items in batches:
            result = await self.detector.diff(items, self.store, scope=manga.id, horizon=horizon)
            if result.cold_start:
                initialized.append(manga.id)
            baseline.extend(result.baseline)
            for item in result.new:
                cycle.new_items.append(item)
                text = format_message(item, manga.title)
                tasks.extend(
                    NotificationTask(item=item, target=channel, text=text)
                    for channel in manga.channels
                )

        # NOTIFYING
        if tasks:
            self._set_state(WatcherState.NOTIFYING)
            await self.notifier.deliver_batch(tasks)

        # COMMITTING
        self._set_state(WatcherState.COMMITTING)
        records, unsettled = self._settled_records(baseline, cycle.new_items, tasks)
        try:
            cycle.committed = await self.store.mark_many(records, initialized=initialized)
        except PersistenceFailure as e:
            cycle.outcome = CycleOutcome.FAILURE
            cycle.error = str(e)
            logger.error("Commit failed; %d item(s) will be announced again: %s", len(cycle.new_items), e)
            return

        failed = [task for task in tasks if task.status is TaskStatus.FAILED_TRANSIENT]
        if unsettled:
            cycle.outcome = CycleOutcome.PARTIAL
            logger.warning(
                "%d item(s) left unseen after %d failed deliveries; retrying next cycle",
                unsettled,
                len(failed),
            )
            cooldown = max(cooldown or 0.0, self.backoff_cooldown)

        # BACKOFF
        if cooldown is not None and cooldown > 0:
            await self._backoff(cooldown)

    def _settled_records(
        self,
        baseline: List[CatalogItem],
        new_items: List[CatalogItem],
        tasks: List[NotificationTask],
    ) -> Tuple[List[SeenRecord], int]:
        """Records safe to commit, and how many new items stay unseen.

        A new item is committed once every one of its deliveries succeeded or
        failed for good.
        """
        now = self._clock.now()
        by_item: Dict[str, List[NotificationTask]] = defaultdict(list)
        for task in tasks:
            by_item[task.item.id].append(task)

        records = [SeenRecord(id=item.id, manga_id=item.manga_id, first_seen=now) for item in baseline]
        unsettled = 0
        for item in new_items:
            if all(task.committable for task in by_item[item.id]):
                records.append(SeenRecord(id=item.id, manga_id=item.manga_id, first_seen=now))
            else:
                unsettled += 1
        return records, unsettled

    async def _backoff(self, seconds: float) -> None:
        """Cool down before the next cycle; returns early on shutdown."""
        self._set_state(WatcherState.BACKOFF)
        logger.info("Backing off for %.1fs", seconds)
        sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
        stopper = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (sleeper, stopper):
                waiter.cancel()
        if self._stopping.is_set():
            logger.info("Backoff interrupted by shutdown")

    def _log_summary(self, cycle: PollCycle) -> None:
        duration = (cycle.finished_at - cycle.started_at).total_seconds()
        level = logging.INFO if cycle.outcome is CycleOutcome.SUCCESS else logging.WARNING
        logger.log(
            level,
            "Poll cycle %s in %.1fs: %d fetched, %d new, %d committed%s",
            cycle.outcome.value,
            duration,
            len(cycle.fetched),
            len(cycle.new_items),
            cycle.committed,
            f" ({cycle.error})" if cycle.error else "",
        )

    # ------------------------------------------------------------------ #
    # Lifecycle and housekeeping
    # ------------------------------------------------------------------ #
    async def shutdown(self, grace: float = 5.0) -> None:
        """Stop accepting cycles and wind down the running one.

        A cycle in backoff stops at once; any other state gets ``grace`` seconds
        to finish before it is cancelled. The commit is a single transaction, so
        cancelling never leaves half a batch behind.
        """
        self._stopping.set()
        task = self._task
        if task is None or task.done():
            return

        logger.info("Waiting up to %.1fs for the running poll cycle (%s)", grace, self.state.value)
        done, _ = await asyncio.wait({task}, timeout=grace)
        if done:
            return

        logger.warning("Poll cycle did not finish within %.1fs; cancelling", grace)
        self._cancelled_by_shutdown = True
        task.cancel()
        await asyncio.wait({task})

    async def seed(self, manga_id: str) -> int:
        """Record the current chapters of a newly tracked manga as its baseline.

        Also runs for a manga tracked again after an untrack, so chapters released
        while nobody followed it are not announced.
        """
        items = await self.source.fetch_recent(manga_id, self.fetch_limit)
        now = self._clock.now()
        records = [SeenRecord(id=item.id, manga_id=manga_id, first_seen=now) for item in items]
        inserted = await self.store.mark_many(records, initialized=[manga_id])
        logger.info("Seeded %d chapter(s) for manga %s", len(records), manga_id)
        return inserted

    async def prune(self) -> int:
        """Drop seen records older than the retention window."""
        horizon = self._horizon()
        if horizon is None:
            return 0
        try:
            return await self.store.prune(horizon)
        except PersistenceFailure as e:
            logger.error("Pruning the seen-set failed: %s", e)
            return 0
