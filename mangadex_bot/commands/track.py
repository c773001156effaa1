"""
Slash commands that manage which manga a channel follows.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

import discord
from discord import app_commands

from ..errors import BotError
from ..interfaces import DiscordCommands
from ..mangadex import MangaDexClient, parse_manga_id
from ..store import TrackingRepository

if TYPE_CHECKING:
    from discord.ext.commands import Bot

    from ..watcher import Watcher

logger = logging.getLogger(__name__)

INVALID_ID = "Please specify a valid manga id or url."


class TrackCommands(DiscordCommands):
    """``/track``, ``/untrack`` and ``/tracked``."""

    def __init__(self, client: MangaDexClient, tracking: TrackingRepository, watcher: Watcher):
        self.client = client
        self.tracking = tracking
        self.watcher = watcher

    async def track(self, url: str, channel: str) -> str:
        """Track ``url`` in ``channel``; returns the reply for the user."""
        manga_id = parse_manga_id(url)
        if manga_id is None:
            logger.info("Rejected /track argument %r", url)
            return INVALID_ID

        existing = await self.tracking.get(manga_id)
        if existing is not None:
            if channel in existing.channels:
                return "This manga is already tracked by this channel."
            await self.tracking.track(manga_id, existing.title, channel)
            return f"Now tracking {existing.title}."

        title = await self.client.manga_title(manga_id) or manga_id
        # Baseline first so the first poll does not announce the back catalogue
        await self.watcher.seed(manga_id)
        await self.tracking.track(manga_id, title, channel)
        return f"Now tracking {title}."

    async def untrack(self, url: str, channel: str) -> str:
        manga_id = parse_manga_id(url)
        if manga_id is None:
            return INVALID_ID
        existing = await self.tracking.get(manga_id)
        if not await self.tracking.untrack(manga_id, channel):
            return "This manga is not tracked by this channel."
        return f"Stopped tracking {existing.title if existing else manga_id}."

    async def tracked(self, channel: str) -> str:
        titles: List[str] = [
            manga.title for manga in await self.tracking.list() if channel in manga.channels
        ]
        if not titles:
            return "This channel does not track any manga."
        content = "\n".join(f"• {title}" for title in titles)
        return f"Tracked in this channel:\n{content}"[:2000]

    def register(self, bot: Bot) -> None:
        @bot.tree.command(name="track", description="Track updates for a given manga.")
        @app_commands.describe(url="Manga URL or Id.")
        async def track_command(interaction: discord.Interaction, url: str):
            await interaction.response.defer(thinking=True)
            await interaction.followup.send(
                await self._reply(self.track, url, interaction.channel_id)
            )

        @bot.tree.command(name="untrack", description="Stop tracking a manga in this channel.")
        @app_commands.describe(url="Manga URL or Id.")
        async def untrack_command(interaction: discord.Interaction, url: str):
            await interaction.response.defer(thinking=True)
            await interaction.followup.send(
                await self._reply(self.untrack, url, interaction.channel_id)
            )

        @bot.tree.command(name="tracked", description="List the manga tracked in this channel.")
        async def tracked_command(interaction: discord.Interaction):
            await interaction.response.defer(thinking=True)
            await interaction.followup.send(await self.tracked(str(interaction.channel_id)))

    async def _reply(self, handler, url: str, channel_id: Optional[int]) -> str:
        logger.info("Handling %s for %r in channel %s", handler.__name__, url, channel_id)
        try:
            return await handler(url, str(channel_id))
        except BotError as e:
            logger.error("%s %r failed: %s", handler.__name__, url, e)
            return f"Something went wrong talking to MangaDex: {e}"
