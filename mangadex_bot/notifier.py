"""
Notifier: delivers one message per (new chapter, channel) with retries.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from .clock import Clock
from .errors import FatalDeliveryError, TransientDeliveryError
from .interfaces import Sink
from .models import CatalogItem, NotificationTask, TaskStatus

logger = logging.getLogger(__name__)


def format_message(item: CatalogItem, manga_title: Optional[str] = None) -> str:
    """Announcement text for one chapter."""
    manga = manga_title or "a tracked manga"
    if item.chapter and item.chapter_title:
        message = f"New chapter!\n{manga} ch. {item.chapter}: {item.chapter_title}"
    elif item.chapter:
        message = f"New chapter!\n{manga} ch. {item.chapter}"
    else:
        message = f"New chapter for {manga}!"
    return f"{message}\n{item.url}"


class Notifier:
    """Sends NotificationTasks through a Sink.

    Tasks for the same target are sent one after another in the order given;
    different targets are served concurrently, at most ``concurrency`` at a time.
    """

    def __init__(
        self,
        sink: Sink,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        concurrency: int = 4,
        clock: Optional[Clock] = None,
    ):
        self.sink = sink
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.concurrency = max(1, concurrency)
        self._clock = clock or Clock()

    def _backoff(self, attempt: int, error: TransientDeliveryError) -> float:
        if error.retry_after is not None:
            return error.retry_after
        exponential = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        return exponential + random.uniform(0, self.base_delay)

    async def deliver(self, task: NotificationTask) -> NotificationTask:
        """Run one task to a terminal status. Never raises delivery errors."""
        while task.status is TaskStatus.PENDING:
            task.attempts += 1
            try:
                await self.sink.send(task.target, task.text)
            except FatalDeliveryError as e:
                task.status = TaskStatus.FAILED_FATAL
                task.error = str(e)
                logger.error(
                    "Delivery of %s to %s failed permanently: %s", task.item.id, task.target, e
                )
            except Exception as e:
                if not isinstance(e, TransientDeliveryError):
                    logger.exception("Unexpected error from %s", self.sink.name)
                    e = TransientDeliveryError(f"{type(e).__name__}: {e}")
                task.error = str(e)
                if task.attempts >= self.max_attempts:
                    task.status = TaskStatus.FAILED_TRANSIENT
                    logger.error(
                        "Giving up on %s to %s after %d attempts: %s",
                        task.item.id,
                        task.target,
                        task.attempts,
                        e,
                    )
                    break
                delay = self._backoff(task.attempts, e)
                logger.warning(
                    "Delivery of %s to %s failed (attempt %d/%d – will retry in %.1fs): %s",
                    task.item.id,
                    task.target,
                    task.attempts,
                    self.max_attempts,
                    delay,
                    e,
                )
                await self._clock.sleep(delay)
            else:
                task.status = TaskStatus.DELIVERED
                task.error = None
                logger.info("Announced %s (%s) to %s", task.item.id, task.item.title, task.target)
        return task

    async def deliver_batch(self, tasks: Sequence[NotificationTask]) -> List[NotificationTask]:
        """Deliver every task; returns once all of them are terminal."""
        by_target: Dict[str, List[NotificationTask]] = OrderedDict()
        for task in tasks:
            by_target.setdefault(task.target, []).append(task)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _drain(queue: List[NotificationTask]) -> None:
            async with semaphore:
                for task in queue:
                    await self.deliver(task)

        await asyncio.gather(*(_drain(queue) for queue in by_target.values()))
        return list(tasks)
