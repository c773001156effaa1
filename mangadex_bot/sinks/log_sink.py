"""
Log-only sink used for dry runs.
"""

import logging

from ..interfaces import Sink

logger = logging.getLogger(__name__)


class LogSink(Sink):
    """Writes each message to the log instead of sending it."""

    @property
    def name(self) -> str:
        return "LogSink"

    async def send(self, target: str, text: str) -> None:
        logger.info("[DRY RUN] Would send to %s:\n%s", target, text)
