"""
Clock abstraction so backoff and scheduling can be simulated in tests.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone


class Clock:
    """Wall-clock time and sleeping."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
