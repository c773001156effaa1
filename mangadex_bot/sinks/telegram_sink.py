"""
Telegram sink for sending announcements to Telegram chats.
"""

import logging
from datetime import timedelta
from typing import Optional

from telegram import Bot
from telegram.error import BadRequest, Forbidden, InvalidToken, NetworkError, RetryAfter, TelegramError

from ..errors import ConfigError, FatalDeliveryError, TransientDeliveryError
from ..interfaces import Sink


logger = logging.getLogger(__name__)


class TelegramSink(Sink):
    """Sink that sends notifications to Telegram chats. Targets are chat ids."""

    def __init__(self, bot_token: Optional[str] = None, bot: Optional[Bot] = None):
        if bot is None and not bot_token:
            raise ConfigError("A Telegram bot token is required for the telegram backend")
        self.bot = bot or Bot(token=bot_token)
        self._initialized = False

    @property
    def name(self) -> str:
        return "TelegramSink"

    async def send(self, target: str, text: str) -> None:
        try:
            if not self._initialized:
                await self.bot.initialize()
                self._initialized = True
            await self.bot.send_message(chat_id=target, text=text)
        # BadRequest is a NetworkError subclass, so the fatal cases go first
        except (Forbidden, BadRequest, InvalidToken) as e:
            raise FatalDeliveryError(f"Telegram rejected message for {target}: {e}") from e
        except RetryAfter as e:
            retry_after = e.retry_after
            if isinstance(retry_after, timedelta):
                retry_after = retry_after.total_seconds()
            raise TransientDeliveryError(str(e), retry_after=float(retry_after)) from e
        except NetworkError as e:
            raise TransientDeliveryError(f"Telegram network error: {e}") from e
        except TelegramError as e:
            raise FatalDeliveryError(f"Telegram error for {target}: {e}") from e

        logger.debug("Sent message to Telegram chat %s", target)

    async def close(self) -> None:
        if self._initialized:
            await self.bot.shutdown()
            self._initialized = False
