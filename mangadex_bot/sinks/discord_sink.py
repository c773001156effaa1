"""
Discord sink for sending chapter announcements to Discord channels.
"""

import asyncio
import logging
from typing import Optional

import aiohttp
import discord

from ..errors import FatalDeliveryError, TransientDeliveryError
from ..interfaces import Sink

logger = logging.getLogger(__name__)


class DiscordSink(Sink):
    """Sink that posts to a Discord channel through a connected bot client.

    Targets are channel ids.
    """

    def __init__(self, client: Optional[discord.Client] = None, max_length: int = 2000):
        self.client = client
        self.max_length = max_length

    @property
    def name(self) -> str:
        return "DiscordSink"

    async def _resolve_channel(self, channel_id: int):
        channel = self.client.get_channel(channel_id)
        if channel is None:
            channel = await self.client.fetch_channel(channel_id)
        return channel

    async def send(self, target: str, text: str) -> None:
        """Send ``text`` to the channel ``target``."""
        if self.client is None or not self.client.is_ready():
            raise TransientDeliveryError("Discord client is not connected yet")

        try:
            channel_id = int(target)
        except ValueError:
            raise FatalDeliveryError(f"Invalid Discord channel id: {target!r}")

        if len(text) > self.max_length:
            text = text[: self.max_length - 3] + "..."

        try:
            channel = await self._resolve_channel(channel_id)
            await channel.send(text)
        except (discord.NotFound, discord.Forbidden) as e:
            raise FatalDeliveryError(f"Discord channel {channel_id} unavailable: {e}") from e
        except discord.HTTPException as e:
            if e.status == 429 or e.status >= 500:
                raise TransientDeliveryError(f"Discord returned {e.status}: {e}") from e
            raise FatalDeliveryError(f"Discord rejected message for {channel_id}: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientDeliveryError(f"Network error talking to Discord: {e}") from e

        logger.debug(f"Sent message to Discord channel {channel_id}")
