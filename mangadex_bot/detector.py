"""
Change detection: which fetched items were never announced before.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from .interfaces import SeenStore
from .models import CatalogItem

logger = logging.getLogger(__name__)


@dataclass
class DiffResult:
    """Outcome of one diff.

    ``new`` must be notified, in order. ``baseline`` is recorded as seen without
    any notification (cold start seeding and flood overflow).
    """

    new: List[CatalogItem] = field(default_factory=list)
    baseline: List[CatalogItem] = field(default_factory=list)
    cold_start: bool = False


def dedupe(batch: Sequence[CatalogItem]) -> List[CatalogItem]:
    """Drop repeated ids, keeping the first occurrence and the order."""
    seen = set()
    unique: List[CatalogItem] = []
    for item in batch:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


class ChangeDetector:
    """Diffs a fetched batch against the seen-set."""

    def __init__(self, *, deliver_backlog: bool = False, max_backlog: Optional[int] = 25):
        self.deliver_backlog = deliver_backlog
        self.max_backlog = max_backlog

    async def diff(
        self,
        batch: Sequence[CatalogItem],
        store: SeenStore,
        scope: Optional[str] = None,
        horizon: Optional[datetime] = None,
    ) -> DiffResult:
        """Split ``batch`` into new items and silently seeded ones.

        ``scope`` narrows the cold-start check to one manga; when omitted the
        whole store must be empty for the batch to count as a cold start.
        Unseen items published before ``horizon`` are dropped: their records may
        have been pruned, and announcing them again would be a duplicate.
        """
        items = dedupe(batch)
        cold_start = await store.is_empty(scope)
        if not items:
            return DiffResult(cold_start=cold_start)

        if cold_start:
            if not self.deliver_backlog:
                logger.info(
                    "Cold start%s: seeding %d item(s) without notifying",
                    f" for {scope}" if scope else "",
                    len(items),
                )
                return DiffResult(baseline=items, cold_start=True)
            new = list(items)
        else:
            new = [item for item in items if not await store.contains(item.id)]
            if horizon is not None:
                stale = [item for item in new if item.published_at < horizon]
                if stale:
                    logger.debug("Ignoring %d unseen item(s) older than %s", len(stale), horizon)
                    new = [item for item in new if item.published_at >= horizon]

        result = DiffResult(new=new, cold_start=cold_start)
        if self.max_backlog is not None and len(new) > self.max_backlog:
            # Only the newest items are announced; older overflow is seeded
            overflow = len(new) - self.max_backlog
            logger.warning(
                "%d new item(s)%s exceed the backlog cap of %d; seeding the %d oldest silently",
                len(new),
                f" for {scope}" if scope else "",
                self.max_backlog,
                overflow,
            )
            result.baseline = new[:overflow]
            result.new = new[overflow:]
        return result
