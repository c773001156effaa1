"""
Notification backends, selected by configuration.
"""

from typing import Optional

import discord

from ..errors import ConfigError
from ..interfaces import Sink
from .discord_sink import DiscordSink
from .log_sink import LogSink
from .telegram_sink import TelegramSink
from .webhook_sink import WebhookSink

BACKENDS = ("discord", "webhook", "telegram", "log")


def create_sink(
    backend: str,
    *,
    discord_client: Optional[discord.Client] = None,
    telegram_token: Optional[str] = None,
) -> Sink:
    """Build the sink named by ``backend``."""
    if backend == "discord":
        if discord_client is None:
            raise ConfigError("The discord backend needs a Discord client (set DISCORD_TOKEN)")
        return DiscordSink(discord_client)
    if backend == "webhook":
        return WebhookSink()
    if backend == "telegram":
        return TelegramSink(bot_token=telegram_token)
    if backend == "log":
        return LogSink()
    raise ConfigError(f"Unknown notifier backend {backend!r}; expected one of {', '.join(BACKENDS)}")


__all__ = ["BACKENDS", "DiscordSink", "LogSink", "TelegramSink", "WebhookSink", "create_sink"]
