"""
Webhook sink – posts announcements to Discord-compatible webhook URLs.
"""

import logging
from typing import Optional

from ..errors import (
    FatalDeliveryError,
    FatalError,
    RateLimitedError,
    TransientDeliveryError,
    TransientError,
)
from ..infra.http import HttpClient
from ..interfaces import Sink

logger = logging.getLogger(__name__)


class WebhookSink(Sink):
    """Targets are webhook URLs; the payload is ``{"content": text}``."""

    def __init__(
        self,
        http: Optional[HttpClient] = None,
        username: Optional[str] = "MangaDex",
        max_length: int = 2000,
    ):
        # The notifier owns retries, so the client makes exactly one attempt
        self.http = http or HttpClient(max_retries=1, max_rate_limit_waits=0)
        self.username = username
        self.max_length = max_length

    @property
    def name(self) -> str:
        return "WebhookSink"

    async def send(self, target: str, text: str) -> None:
        if not target.startswith(("http://", "https://")):
            raise FatalDeliveryError(f"Not a webhook URL: {target!r}")

        if len(text) > self.max_length:
            text = text[: self.max_length - 3] + "..."
        payload = {"content": text}
        if self.username:
            payload["username"] = self.username

        try:
            await self.http.post_json(target, payload)
        except RateLimitedError as e:
            raise TransientDeliveryError(str(e), retry_after=e.retry_after) from e
        except TransientError as e:
            raise TransientDeliveryError(str(e)) from e
        except FatalError as e:
            raise FatalDeliveryError(str(e)) from e

        logger.debug("Posted message to webhook")

    async def close(self) -> None:
        await self.http.close()
